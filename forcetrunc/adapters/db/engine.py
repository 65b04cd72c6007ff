from __future__ import annotations

"""
SQL Server 命令执行引擎（adapters.db.engine）
- execute(command)：执行一条命令（每条命令单独成批）
- begin/commit/rollback：显式 BEGIN/COMMIT/ROLLBACK TRANSACTION（连接为 autocommit）
- in_transaction：基于 @@TRANCOUNT

执行日志写入 sql logger（成功 INFO，失败 ERROR，完整语句 DEBUG）。
"""


import logging
import time

import pyodbc

from forcetrunc.core.exceptions import DatabaseError
from forcetrunc.services.truncate.models import Command
from forcetrunc.utils.logging_ext import log_sql_execution, log_sql_statement, summarize_sql

logger = logging.getLogger(__name__)


class SqlServerEngine:
    def __init__(self, conn: pyodbc.Connection, sql_text: str = "full", max_sql_length: int = 2000):
        self.conn = conn
        self.sql_text = sql_text
        self.max_sql_length = max_sql_length

    def _exec(self, sql: str, sql_type: str, object_name: str) -> None:
        started = time.perf_counter()
        log_sql_statement(sql)
        cur = self.conn.cursor()
        try:
            cur.execute(sql)
            # 存储过程可能返回多个结果集/消息，全部消费掉才能暴露后续错误
            while cur.nextset():
                pass
        except pyodbc.Error as e:
            log_sql_execution(
                sql_type,
                summarize_sql(sql, self.sql_text, self.max_sql_length) or "",
                (time.perf_counter() - started) * 1000,
                object_name=object_name,
                error=str(e),
            )
            raise
        finally:
            cur.close()
        log_sql_execution(
            sql_type,
            summarize_sql(sql, self.sql_text, self.max_sql_length) or "",
            (time.perf_counter() - started) * 1000,
            object_name=object_name,
        )

    def execute(self, command: Command) -> None:
        self._exec(command.sql, command.sql_type, command.object_name)

    def _tcl(self, sql: str) -> None:
        try:
            self._exec(sql, "TCL", "")
        except pyodbc.Error as e:
            raise DatabaseError(f"事务控制失败 ({sql}): {e}", cause=e) from e

    def begin(self) -> None:
        self._tcl("BEGIN TRANSACTION;")

    def commit(self) -> None:
        self._tcl("COMMIT TRANSACTION;")

    def rollback(self) -> None:
        self._tcl("IF @@TRANCOUNT > 0 ROLLBACK TRANSACTION;")

    @property
    def in_transaction(self) -> bool:
        cur = self.conn.cursor()
        try:
            cur.execute("SELECT @@TRANCOUNT;")
            row = cur.fetchone()
        finally:
            cur.close()
        return bool(row and row[0])
