from __future__ import annotations

"""
强制清空编排（services.truncate.service）

状态机：Resolving → Scanning → TearingDown → Truncating → Reconstructing → Verifying
        → Committed | RolledBack

- 环境事务覆盖 TearingDown ~ Verifying（RowCountAfter 在提交前采集）
- 任一致命错误：回滚整个事务，进入 RolledBack，向上抛出单个异常
- WhatIf：不开启事务，只渲染命令并推进计数
"""


import logging
import time
from typing import Any

from forcetrunc.core.exceptions import BaseAppException, error_handler
from forcetrunc.schemas.options import TruncateOptions
from forcetrunc.services.truncate.executor import PhaseExecutor
from forcetrunc.services.truncate.ledger import ReconciliationLedger
from forcetrunc.services.truncate.models import Phase, RunContext
from forcetrunc.services.truncate.reporter import TruncateResult, build_result
from forcetrunc.services.truncate.scanner import DependencyScanner
from forcetrunc.services.truncate.selectors import resolve_targets
from forcetrunc.services.truncate.transaction import TransactionController
from forcetrunc.utils.logging_ext import EVENT_RUN_BEGIN, EVENT_RUN_END

logger = logging.getLogger(__name__)

NOTHING_TO_TRUNCATE = "nothing to truncate - check row_count_threshold"


@error_handler(context_fields=["options"])
def force_truncate(catalog: Any, engine: Any, options: TruncateOptions) -> TruncateResult:
    """
    强制清空选中的表。

    参数：
        catalog: 只读目录查询接口（见 adapters.db.catalog）
        engine: 命令执行接口（见 adapters.db.engine），与 catalog 共用同一连接
        options: 调用参数

    返回：
        TruncateResult：每张表一行的汇总、错误清单、WhatIf 渲染的命令

    异常：
        TruncateError 子类：致命错误，事务已回滚
    """
    started = time.time()
    ctx = RunContext(
        options=options,
        ledger=ReconciliationLedger(best_effort=options.best_effort),
        database=catalog.database_name(),
    )
    txn = TransactionController(engine, what_if=options.what_if)
    logger.info(
        f"开始强制清空: database={ctx.database} what_if={options.what_if} "
        f"continue_on_error={options.continue_on_error}",
        extra={
            "event": EVENT_RUN_BEGIN,
            "extra": {"database": ctx.database, "options": options.summary()},
        },
    )

    try:
        resolve_targets(catalog, ctx)
        ctx.advance(Phase.SCANNING)

        if not ctx.selected():
            ctx.warn(NOTHING_TO_TRUNCATE)
            ctx.advance(Phase.VERIFYING)
            ctx.advance(Phase.COMMITTED)
            return _finish(ctx, started)

        DependencyScanner(catalog, ctx).scan_all()
        executor = PhaseExecutor(ctx, catalog, engine, txn)

        txn.begin()
        ctx.advance(Phase.TEARING_DOWN)
        executor.tear_down()
        ctx.advance(Phase.TRUNCATING)
        executor.truncate()
        ctx.advance(Phase.RECONSTRUCTING)
        executor.reconstruct()
        ctx.advance(Phase.VERIFYING)
        executor.collect_row_counts_after()
        txn.commit()
        ctx.advance(Phase.COMMITTED)
    except Exception as e:
        failed_in = ctx.phase
        txn.rollback()
        if not ctx.phase.is_terminal:
            ctx.advance(Phase.ROLLED_BACK)
        if isinstance(e, BaseAppException):
            e.context.setdefault("phase", failed_in.value)
        logger.error(
            f"强制清空失败（{failed_in.value}），已回滚: {e}",
            extra={
                "event": EVENT_RUN_END,
                "extra": {
                    "phase": Phase.ROLLED_BACK.value,
                    "failed_in": failed_in.value,
                    "duration_ms": round((time.time() - started) * 1000, 2),
                },
            },
        )
        raise

    return _finish(ctx, started)


def _finish(ctx: RunContext, started: float) -> TruncateResult:
    result = build_result(ctx)
    logger.info(
        f"强制清空结束: {ctx.phase.value}",
        extra={
            "event": EVENT_RUN_END,
            "extra": {
                "phase": ctx.phase.value,
                "tables_truncated": result.tables_truncated,
                "errors": len(result.errors),
                "duration_ms": round((time.time() - started) * 1000, 2),
            },
        },
    )
    return result
