"""
T-SQL 文本工具（forcetrunc.utils.tsql）
- quote_name：等价于 QUOTENAME()，右方括号加倍
- n_literal：N'...' 字面量，单引号加倍
- bit / hex_literal：BIT 与 VARBINARY 字面量
"""

from __future__ import annotations

from typing import Optional


def quote_name(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def qualified(schema: str, name: str) -> str:
    """[schema].[name]"""
    return f"{quote_name(schema)}.{quote_name(name)}"


def n_literal(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


def bit(value: bool) -> str:
    return "1" if value else "0"


def hex_literal(value: Optional[bytes]) -> str:
    if value is None:
        return "NULL"
    return "0x" + value.hex().upper()
