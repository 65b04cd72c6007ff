from __future__ import annotations

"""
数据库网关（adapters.db.gateway）：SQL Server ODBC 连接管理
- make_conn_str：根据 DbSettings 生成 ODBC 连接串
- connect：建立连接（仅对“建立连接”做重试），autocommit 打开，事务由引擎显式控制；
  连接后设置 XACT_ABORT ON
- get_conn：上下文管理器，退出时关闭连接

注意：
- 目录查询与命令执行必须共用同一连接（事务内的读取才能看到未提交的变更）
- 连接串预览会遮蔽 PWD
"""


import logging
import re
from contextlib import contextmanager
from typing import Iterator

import pyodbc

from forcetrunc.core.config.loader import Settings
from forcetrunc.core.exceptions import DatabaseConnectionError, retry_on_error

logger = logging.getLogger(__name__)

_PWD_RE = re.compile(r"(PWD=)[^;]*", re.IGNORECASE)

# 连接建立后、开启事务前执行一次
SESSION_OPTIONS = ("SET XACT_ABORT ON;",)


def make_conn_str(settings: Settings) -> str:
    """根据配置生成 ODBC 连接串。
    - 若提供 connection_string 则原样使用
    - 否则拼接 DRIVER/SERVER/DATABASE 与认证方式
    - 示例："DRIVER={ODBC Driver 18 for SQL Server};SERVER=localhost,1433;DATABASE=AdventureWorks2019;Trusted_Connection=yes"
    """
    db = settings.db
    if db.connection_string:
        return db.connection_string

    parts = [
        f"DRIVER={{{db.driver}}}",
        f"SERVER={db.server},{db.port}",
        f"DATABASE={db.database}",
    ]
    if db.trusted_connection:
        parts.append("Trusted_Connection=yes")
    else:
        parts.append(f"UID={db.user}")
        parts.append(f"PWD={{{db.password or ''}}}")
    parts.append(f"Encrypt={'yes' if db.encrypt else 'no'}")
    if db.trust_server_certificate:
        parts.append("TrustServerCertificate=yes")
    return ";".join(parts)


def conn_str_preview(conn_str: str) -> str:
    return _PWD_RE.sub(r"\1***", conn_str)


def _apply_session_options(conn: pyodbc.Connection) -> None:
    """任何语句级错误都让整个事务进入回滚状态，与引擎显式 ROLLBACK 的假设一致"""
    cur = conn.cursor()
    try:
        for sql in SESSION_OPTIONS:
            cur.execute(sql)
    except pyodbc.Error as e:
        conn.close()
        raise DatabaseConnectionError(f"会话选项设置失败: {e}", cause=e) from e
    finally:
        cur.close()


def connect(settings: Settings) -> pyodbc.Connection:
    """建立连接；失败按 settings.db.retry 做指数退避重试（retry_on_error）"""
    conn_str = make_conn_str(settings)
    attempts = max(1, int(settings.db.retry.max_retries) + 1)
    delay = max(0.0, float(settings.db.retry.retry_delay_ms) / 1000.0)
    backoff = max(1.0, float(settings.db.retry.backoff_multiplier))
    timeouts = settings.db.timeouts

    open_conn = retry_on_error(
        pyodbc.Error,
        max_retries=attempts - 1,
        base_delay=delay,
        backoff_multiplier=backoff,
        jitter=False,
    )(pyodbc.connect)
    try:
        conn = open_conn(conn_str, autocommit=True, timeout=int(timeouts.connect_timeout_s))
    except pyodbc.Error as e:
        raise DatabaseConnectionError(
            f"无法建立数据库连接: {e}",
            context={"conn_str_preview": conn_str_preview(conn_str), "attempts": attempts},
            cause=e,
        ) from e

    # 语句超时（秒），0 表示不限制
    conn.timeout = int(timeouts.query_timeout_s)
    _apply_session_options(conn)
    logger.info(
        "数据库连接已建立",
        extra={
            "event": "db.connect.success",
            "extra": {"conn_str_preview": conn_str_preview(conn_str)},
        },
    )
    return conn


@contextmanager
def get_conn(settings: Settings) -> Iterator[pyodbc.Connection]:
    conn = connect(settings)
    try:
        yield conn
    finally:
        conn.close()
