from __future__ import annotations

"""
阶段执行器（services.truncate.executor）

- tear_down：外键 → 视图（由外向内）→ CDC → 发布项目；任何失败都是致命的
- truncate：TRUNCATE → 非空校验 → UPDATE STATISTICS；任何失败都是致命的
- reconstruct：发布项目 → CDC → 视图（由内向外，视图 → 扩展属性 → 索引 → 触发器，各自成步）→ 外键
  默认模式失败即整体回滚；尽力模式下每个步骤单独提交，失败只记录到对应记录
- collect_row_counts_after：提交前采集 RowCountAfter

WhatIf 模式：命令只追加到 ctx.plan，不执行；计数按“模拟成功”推进。
"""


import logging
from typing import Any, Iterable, List

from forcetrunc.core.exceptions import (
    CommandExecutionError,
    DatabaseError,
    ReconciliationError,
    StructuralImpossibilityError,
)
from forcetrunc.core.types import TEMPORAL_HISTORY
from forcetrunc.services.truncate.ledger import ReconciliationLedger
from forcetrunc.services.truncate.models import (
    Command,
    CommandAction,
    DependencyKind,
    Phase,
    RunContext,
    TargetTable,
)
from forcetrunc.services.truncate.records import (
    DependencyRecord,
    SchemaBoundViewRecord,
)
from forcetrunc.services.truncate.selectors import collect_row_counts
from forcetrunc.services.truncate.transaction import TransactionController
from forcetrunc.utils.logging_ext import (
    EVENT_COMMAND_EXECUTE,
    EVENT_COMMAND_FAILED,
    EVENT_COMMAND_RENDER,
    ProgressLogger,
    sanitize_value,
)

logger = logging.getLogger(__name__)


class PhaseExecutor:
    def __init__(
        self,
        ctx: RunContext,
        catalog: Any,
        engine: Any,
        txn: TransactionController,
    ) -> None:
        self.ctx = ctx
        self.catalog = catalog
        self.engine = engine
        self.txn = txn

    @property
    def ledger(self) -> ReconciliationLedger:
        return self.ctx.ledger

    @property
    def what_if(self) -> bool:
        return self.ctx.options.what_if

    def _progress(self, operation: str, total: int) -> ProgressLogger:
        return ProgressLogger(
            operation,
            total,
            logger=logger,
            step_percent=self.ctx.options.progress_log_step,
            enabled=not self.what_if,
        )

    # ------------------------------------------------------------------
    # 命令执行
    # ------------------------------------------------------------------

    def run(self, command: Command, phase: Phase) -> None:
        """执行（或在 WhatIf 下渲染）一条命令；引擎拒绝时抛出 CommandExecutionError"""
        payload = {
            "phase": phase.value,
            "action": command.action.value,
            "object_name": command.object_name,
        }
        if self.what_if:
            self.ctx.plan.append(command)
            logger.debug(
                f"渲染命令: {command.action.value} {command.object_name}",
                extra={
                    "event": EVENT_COMMAND_RENDER,
                    "extra": {
                        **payload,
                        "params": {k: sanitize_value(v) for k, v in command.params.items()},
                    },
                },
            )
            return

        logger.info(
            f"执行命令: {command.action.value} {command.object_name}",
            extra={"event": EVENT_COMMAND_EXECUTE, "extra": payload},
        )
        try:
            self.engine.execute(command)
        except Exception as e:
            logger.error(
                f"命令执行失败: {command.object_name}: {e}",
                extra={"event": EVENT_COMMAND_FAILED, "extra": {**payload, "error": str(e)}},
            )
            raise CommandExecutionError(
                f"{e} - when executing: {command.sql}",
                phase=phase.value,
                action=command.action.value,
                object_name=command.object_name,
                sql=command.sql,
                cause=e,
            ) from e

    def _targets_of(self, record: DependencyRecord) -> List[TargetTable]:
        targets = self.ctx.targets
        return [targets[i] for i in sorted(record.target_ids) if i in targets]

    # ------------------------------------------------------------------
    # 拆除
    # ------------------------------------------------------------------

    def _drop(self, record: DependencyRecord) -> None:
        for command in record.synthesize_teardown():
            self.run(command, Phase.TEARING_DOWN)
        record.state.dropped = True
        self.ledger.record_dropped(record.kind)
        for target in self._targets_of(record):
            target.counters[record.kind].dropped += 1

    def _tear_down_kind(
        self, kind: DependencyKind, records: Iterable[DependencyRecord]
    ) -> None:
        records = list(records)
        if not records:
            return
        progress = self._progress(f"Dropping {kind.label}", len(records))
        for record in records:
            self._drop(record)
            if isinstance(record, SchemaBoundViewRecord):
                # 视图上的索引与触发器随视图一起消失
                for child in [*record.indexes, *record.triggers]:
                    child.state.dropped = True
                    self.ledger.record_dropped(child.kind)
            progress.update()
        self.ledger.check_teardown(kind)
        if kind is DependencyKind.SCHEMA_BOUND_VIEW:
            self.ledger.check_teardown(DependencyKind.VIEW_INDEX)
            self.ledger.check_teardown(DependencyKind.VIEW_TRIGGER)

    def tear_down(self) -> None:
        ctx = self.ctx
        self._tear_down_kind(DependencyKind.FOREIGN_KEY, ctx.foreign_keys)
        self._tear_down_kind(
            DependencyKind.SCHEMA_BOUND_VIEW,
            sorted(ctx.views, key=lambda v: -v.depth),
        )
        self._tear_down_kind(DependencyKind.CDC_INSTANCE, ctx.cdc_instances)
        self._tear_down_kind(DependencyKind.PUBLICATION_ARTICLE, ctx.articles)

    # ------------------------------------------------------------------
    # 清空
    # ------------------------------------------------------------------

    def _truncate_table(self, table: TargetTable) -> None:
        if table.temporal_type == TEMPORAL_HISTORY:
            raise StructuralImpossibilityError(
                f"Cannot truncate history table {table.qualified_name}",
                context={"phase": Phase.TRUNCATING.value, "table": table.qualified_name},
            )
        name = table.qualified_name
        params = {"schema": table.schema_name, "table": table.table_name}
        self.run(
            Command(CommandAction.TRUNCATE_TABLE, name, f"TRUNCATE TABLE {name};", params),
            Phase.TRUNCATING,
        )
        if not self.what_if and self.catalog.has_rows(table.schema_name, table.table_name):
            raise ReconciliationError(
                f"Table {name} still contains rows after TRUNCATE TABLE",
                context={"phase": Phase.TRUNCATING.value, "table": name},
            )
        self.run(
            Command(
                CommandAction.UPDATE_STATISTICS,
                name,
                f"UPDATE STATISTICS {name} WITH ROWCOUNT = 0;",
                params,
            ),
            Phase.TRUNCATING,
        )
        table.is_truncated = True
        self.ledger.tables_truncated += 1

    def truncate(self) -> None:
        selected = self.ctx.selected()
        self.ledger.tables_selected = len(selected)
        progress = self._progress("Truncating tables", len(selected))
        for table in selected:
            self._truncate_table(table)
            progress.update()
        self.ledger.check_truncate()

    # ------------------------------------------------------------------
    # 重建
    # ------------------------------------------------------------------

    def _record_failure(self, record: DependencyRecord, error: CommandExecutionError) -> None:
        record.state.add_error(error.message)
        for target in self._targets_of(record):
            target.add_error(f"{record.kind.label} {record.display_name}: {error.message}")

    def _recreate(self, record: DependencyRecord) -> bool:
        if record.state.abandoned:
            self.ledger.record_abandoned(record.kind)
            return False

        def _step() -> None:
            for command in record.synthesize_reconstruct():
                self.run(command, Phase.RECONSTRUCTING)

        ok = self.txn.with_recoverable_step(
            _step,
            best_effort=self.ctx.options.best_effort,
            on_error=lambda e: self._record_failure(record, e),
        )
        if ok:
            record.state.recreated = True
            self.ledger.record_recreated(record.kind)
            for target in self._targets_of(record):
                target.counters[record.kind].recreated += 1
        return ok

    def _reconstruct_kind(
        self, kind: DependencyKind, records: List[DependencyRecord], enabled: bool = True
    ) -> None:
        if not records:
            return
        if not enabled:
            self.ledger.skip_reconstruct(kind)
            logger.warning(
                f"{kind.label} 已按配置跳过重建: {len(records)} 个",
                extra={
                    "event": "truncate.reconstruct.skipped",
                    "extra": {"kind": kind.value, "found": len(records)},
                },
            )
            return
        progress = self._progress(f"Recreating {kind.label}", len(records))
        for record in records:
            self._recreate(record)
            progress.update()
        self.ledger.check_reconstruct(kind)

    def _add_extended_properties(self, view: SchemaBoundViewRecord) -> None:
        """扩展属性单独成步：失败只记到视图上，已建好的视图保留"""
        commands = view.synthesize_extended_properties()
        if not commands:
            return

        def _step() -> None:
            for command in commands:
                self.run(command, Phase.RECONSTRUCTING)

        self.txn.with_recoverable_step(
            _step,
            best_effort=self.ctx.options.best_effort,
            on_error=lambda e: self._record_failure(view, e),
        )

    def _reconstruct_views(self) -> None:
        views = self.ctx.views
        if not views:
            return
        label = DependencyKind.SCHEMA_BOUND_VIEW.label
        progress = self._progress(f"Recreating {label}", len(views))
        for view in sorted(views, key=lambda v: v.depth):
            created = self._recreate(view)
            if created:
                self._add_extended_properties(view)
            for child in [*view.indexes, *view.triggers]:
                if created or child.state.abandoned:
                    self._recreate(child)
                else:
                    child.state.add_error(f"parent view {view.display_name} was not recreated")
            progress.update()
        for kind in (
            DependencyKind.SCHEMA_BOUND_VIEW,
            DependencyKind.VIEW_INDEX,
            DependencyKind.VIEW_TRIGGER,
        ):
            self.ledger.check_reconstruct(kind)

    def reconstruct(self) -> None:
        ctx = self.ctx
        options = ctx.options
        self._reconstruct_kind(
            DependencyKind.PUBLICATION_ARTICLE,
            list(ctx.articles),
            enabled=options.recreate_published_articles,
        )
        self._reconstruct_kind(
            DependencyKind.CDC_INSTANCE,
            list(ctx.cdc_instances),
            enabled=options.reenable_cdc,
        )
        self._reconstruct_views()
        self._reconstruct_kind(DependencyKind.FOREIGN_KEY, list(ctx.foreign_keys))

    # ------------------------------------------------------------------
    # 校验
    # ------------------------------------------------------------------

    def collect_row_counts_after(self) -> None:
        targets = list(self.ctx.targets.values())
        batch_size = self.ctx.options.batch_size
        if not self.ctx.options.best_effort:
            collect_row_counts(self.catalog, targets, batch_size, "row_count_after")
            return
        # 尽力模式下单个批次失败只记录到该批次的表上
        for start in range(0, len(targets), batch_size):
            batch = targets[start : start + batch_size]
            try:
                collect_row_counts(self.catalog, batch, batch_size, "row_count_after")
            except DatabaseError as e:
                for table in batch:
                    table.add_error(f"RowCountAfter probe failed: {e.message}")
                logger.warning(
                    f"行数探测失败（尽力模式，继续）: {e.message}",
                    extra={
                        "event": "truncate.rowcount.failed",
                        "extra": {"tables": [t.qualified_name for t in batch]},
                    },
                )
