"""
结构化日志扩展：事件埋点 + 进度百分比 + SQL 执行日志
- truncate.*：阶段切换、扫描、对账、命令执行、事务边界、进度
- sql.*：命令执行结果（INFO）与完整语句（DEBUG）

说明：进度日志仅用于观测，不参与任何流程控制。
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

# 事件名常量（集中管理，避免魔法字符串散落各处）
EVENT_RUN_BEGIN = "truncate.run.begin"
EVENT_RUN_END = "truncate.run.end"
EVENT_PHASE_ENTER = "truncate.phase.enter"
EVENT_SELECTOR_RESOLVED = "truncate.selector.resolved"
EVENT_ROWCOUNT_BATCH = "truncate.rowcount.batch"
EVENT_SCAN = "truncate.scan"
EVENT_LEDGER_CHECK = "truncate.ledger.check"
EVENT_LEDGER_MISMATCH = "truncate.ledger.mismatch"
EVENT_COMMAND_EXECUTE = "truncate.command.execute"
EVENT_COMMAND_FAILED = "truncate.command.failed"
EVENT_COMMAND_RENDER = "truncate.command.render"
EVENT_TXN_BEGIN = "truncate.txn.begin"
EVENT_TXN_COMMIT = "truncate.txn.commit"
EVENT_TXN_ROLLBACK = "truncate.txn.rollback"
EVENT_STEP_RECOVERED = "truncate.step.recovered"
EVENT_IRREPRODUCIBLE = "truncate.irreproducible"
EVENT_PROGRESS = "truncate.progress"
EVENT_SUMMARY = "truncate.summary"
EVENT_SQL_SUCCESS = "sql.execution.success"
EVENT_SQL_FAILED = "sql.execution.failed"
EVENT_SQL_STATEMENT = "sql.statement.debug"


def sanitize_value(value: Any, max_length: int = 100) -> str:
    """
    清理和格式化值用于日志记录

    Args:
        value: 要记录的值
        max_length: 最大长度

    Returns:
        清理后的字符串
    """
    if value is None:
        return "None"
    if isinstance(value, (str, int, float, bool)):
        str_val = str(value)
        if len(str_val) > max_length:
            return str_val[:max_length] + "..."
        return str_val
    if isinstance(value, (list, tuple, set, frozenset)):
        return f"{type(value).__name__}(len={len(value)})"
    if isinstance(value, dict):
        return f"dict(keys={len(value)})"
    return f"{type(value).__name__}(...)"


def summarize_sql(sql: str, mode: str = "full", max_length: int = 2000) -> Optional[str]:
    """按 logging.sql.text 模式裁剪 SQL 文本：full 原样、summary 截断、none 不输出"""
    if mode == "none":
        return None
    text = " ".join(sql.split())
    if mode == "summary" and len(text) > max_length:
        return text[:max_length] + "..."
    return text


class ProgressLogger:
    """
    百分比进度记录器

    每跨过一个 step_percent 档位输出一次 truncate.progress 事件；
    WhatIf 模式下可关闭（enabled=False）。
    """

    def __init__(
        self,
        operation: str,
        total: int,
        logger: Optional[logging.Logger] = None,
        step_percent: int = 10,
        enabled: bool = True,
    ):
        self.operation = operation
        self.total = max(0, total)
        self.logger = logger or logging.getLogger(__name__)
        self.step_percent = max(1, step_percent)
        self.enabled = enabled and self.total > 0
        self.current = 0
        self.last_reported = 0
        self.start_time = time.time()

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return (self.current * 100) // self.total

    def update(self, count: int = 1) -> None:
        self.current += count
        if not self.enabled or self.current >= self.total:
            return
        pct = self.percent
        if pct - self.last_reported >= self.step_percent:
            self.last_reported = pct - (pct % self.step_percent)
            self.logger.info(
                f"{self.operation}: {pct} percent processed.",
                extra={
                    "event": EVENT_PROGRESS,
                    "extra": {
                        "operation": self.operation,
                        "current": self.current,
                        "total": self.total,
                        "percent": pct,
                        "elapsed_ms": round((time.time() - self.start_time) * 1000, 2),
                    },
                },
            )


def log_sql_execution(
    sql_type: str,
    sql_summary: str,
    execution_time_ms: float,
    object_name: str = "",
    error: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """
    记录SQL执行日志

    Args:
        sql_type: SQL类型（DDL/TRUNCATE/EXEC/SELECT/TCL）
        sql_summary: SQL语句摘要
        execution_time_ms: 执行耗时（毫秒）
        object_name: 目标对象名
        error: 错误信息
        logger: 日志记录器
    """
    if logger is None:
        logger = logging.getLogger("sql")

    log_data: Dict[str, Any] = {
        "sql_type": sql_type,
        "sql_summary": sql_summary,
        "execution_time_ms": round(execution_time_ms, 2),
        "object_name": object_name,
        "success": error is None,
    }

    if error:
        log_data["error"] = error
        logger.error(
            f"SQL执行失败 - {sql_type}: {object_name}",
            extra={"event": EVENT_SQL_FAILED, "extra": log_data},
        )
    else:
        logger.info(
            f"SQL执行成功 - {sql_type}: {object_name}",
            extra={"event": EVENT_SQL_SUCCESS, "extra": log_data},
        )


def log_sql_statement(sql: str, logger: Optional[logging.Logger] = None) -> None:
    """记录完整的SQL语句（仅在DEBUG级别）"""
    if logger is None:
        logger = logging.getLogger("sql")

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "执行SQL语句",
            extra={"event": EVENT_SQL_STATEMENT, "extra": {"sql_statement": sql.strip()}},
        )
