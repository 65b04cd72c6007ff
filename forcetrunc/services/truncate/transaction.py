from __future__ import annotations

"""
事务控制器（services.truncate.transaction）
- 一个环境事务覆盖 TearingDown ~ Reconstructing
- WhatIf 模式下从不开启事务
- with_recoverable_step：尽力模式下的“提交-重开”子事务封装
"""


import logging
from typing import Any, Callable

from forcetrunc.core.exceptions import CommandExecutionError
from forcetrunc.utils.logging_ext import (
    EVENT_STEP_RECOVERED,
    EVENT_TXN_BEGIN,
    EVENT_TXN_COMMIT,
    EVENT_TXN_ROLLBACK,
)

logger = logging.getLogger(__name__)


class TransactionController:
    def __init__(self, engine: Any, *, what_if: bool = False) -> None:
        self.engine = engine
        self.what_if = what_if
        self.commits = 0

    @property
    def active(self) -> bool:
        if self.what_if:
            return False
        return bool(self.engine.in_transaction)

    def begin(self) -> None:
        if self.what_if:
            return
        self.engine.begin()
        logger.debug("BEGIN TRANSACTION", extra={"event": EVENT_TXN_BEGIN, "extra": {}})

    def commit(self) -> None:
        if self.what_if:
            return
        self.engine.commit()
        self.commits += 1
        logger.debug(
            "COMMIT TRANSACTION",
            extra={"event": EVENT_TXN_COMMIT, "extra": {"commits": self.commits}},
        )

    def rollback(self) -> None:
        """回滚当前事务；没有活动事务时什么也不做"""
        if not self.active:
            return
        self.engine.rollback()
        logger.warning("ROLLBACK TRANSACTION", extra={"event": EVENT_TXN_ROLLBACK, "extra": {}})

    def with_recoverable_step(
        self,
        step: Callable[[], None],
        *,
        best_effort: bool,
        on_error: Callable[[CommandExecutionError], None],
    ) -> bool:
        """
        执行一个重建步骤。

        默认模式：直接执行，失败向上抛出（由调用方整体回滚）。
        尽力模式：先提交已完成的工作并重开事务；步骤成功则提交并重开，
        失败则回滚该子事务、重开事务，并把错误交给 on_error 记录到对应记录上。

        返回值：步骤是否成功。
        """
        if not best_effort or self.what_if:
            step()
            return True

        self.commit()
        self.begin()
        try:
            step()
        except CommandExecutionError as e:
            self.rollback()
            self.begin()
            on_error(e)
            logger.warning(
                f"重建步骤失败，已回滚该步骤并继续: {e.object_name}",
                extra={
                    "event": EVENT_STEP_RECOVERED,
                    "extra": {
                        "phase": e.phase,
                        "action": e.action,
                        "object_name": e.object_name,
                        "error": e.message,
                    },
                },
            )
            return False

        self.commit()
        self.begin()
        return True
