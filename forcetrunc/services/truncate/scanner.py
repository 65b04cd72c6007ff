from __future__ import annotations

"""
依赖扫描（services.truncate.scanner）

固定顺序：外键 → schema-bound 视图（含索引/触发器/扩展属性）→ CDC 实例 → 发布项目。
每类扫描后做一次对账：记录隐含的不同目标表数 == 被标记的表数。

视图按传递关系发现：视图之上的 schema-bound 视图同样阻塞清空。
depth 为最长引用链长度，拆除时 depth 大的先删，重建时 depth 小的先建。
"""


import logging
from typing import Any, Dict, Iterable, List, Set

from forcetrunc.core.config.truncate import IRREPRODUCIBLE_FAIL
from forcetrunc.core.exceptions import IrreproducibleDefinitionError, ReconciliationError
from forcetrunc.core.types import ViewInfo
from forcetrunc.services.truncate.models import DependencyKind, RunContext
from forcetrunc.services.truncate.records import (
    ArticleRecord,
    CdcInstanceRecord,
    DependencyRecord,
    ForeignKeyRecord,
    SchemaBoundViewRecord,
    ViewIndexRecord,
    ViewTriggerRecord,
)
from forcetrunc.utils.logging_ext import EVENT_IRREPRODUCIBLE, EVENT_SCAN

logger = logging.getLogger(__name__)


class DependencyScanner:
    def __init__(self, catalog: Any, ctx: RunContext) -> None:
        self.catalog = catalog
        self.ctx = ctx

    @property
    def selected_ids(self) -> Set[int]:
        return {t.object_id for t in self.ctx.selected()}

    def scan_all(self) -> None:
        self.scan_foreign_keys()
        self.scan_schema_bound_views()
        self.scan_cdc_instances()
        self.scan_articles()

    # ------------------------------------------------------------------
    # 公共步骤
    # ------------------------------------------------------------------

    def _link(self, kind: DependencyKind, records: Iterable[DependencyRecord]) -> int:
        """按记录的目标表累加 referencing 计数；返回记录隐含的不同目标表数"""
        implied: Set[int] = set()
        for record in records:
            for object_id in record.target_ids:
                implied.add(object_id)
                target = self.ctx.targets.get(object_id)
                if target is not None and target.is_to_be_truncated:
                    target.counters[kind].referencing += 1
        return len(implied)

    def _flagged(self, kind: DependencyKind) -> int:
        return sum(1 for t in self.ctx.selected() if t.blocked_by[kind])

    def _log_scan(self, kind: DependencyKind, found: int, **extra: Any) -> None:
        logger.info(
            f"扫描完成 {kind.label}: 找到 {found} 个",
            extra={
                "event": f"{EVENT_SCAN}.{kind.value}",
                "extra": {"phase": "Scanning", "kind": kind.value, "found": found, **extra},
            },
        )

    # ------------------------------------------------------------------
    # 外键
    # ------------------------------------------------------------------

    def scan_foreign_keys(self) -> List[ForeignKeyRecord]:
        kind = DependencyKind.FOREIGN_KEY
        rows = self.catalog.foreign_key_columns(sorted(self.selected_ids))
        records = ForeignKeyRecord.from_columns(rows)
        for record in records:
            target = self.ctx.targets.get(record.target_object_id)
            if target is not None and target.is_to_be_truncated:
                target.blocked_by[kind] = True

        implied = self._link(kind, records)
        self.ctx.foreign_keys = records
        self.ctx.ledger.record_found(kind, len(records))
        self._log_scan(kind, len(records), tables=implied)
        self.ctx.ledger.check_scan(kind, implied, self._flagged(kind))
        return records

    # ------------------------------------------------------------------
    # schema-bound 视图
    # ------------------------------------------------------------------

    def _discover_views(self) -> Dict[int, ViewInfo]:
        views: Dict[int, ViewInfo] = {}
        frontier = sorted(self.selected_ids)
        while frontier:
            found = [
                v
                for v in self.catalog.schema_bound_views(frontier)
                if v.object_id not in views
            ]
            for info in found:
                views[info.object_id] = info
            frontier = sorted(v.object_id for v in found)
        return views

    def scan_schema_bound_views(self) -> List[SchemaBoundViewRecord]:
        kind = DependencyKind.SCHEMA_BOUND_VIEW
        selected = self.selected_ids
        views = self._discover_views()

        depth: Dict[int, int] = {}
        blocked: Dict[int, frozenset[int]] = {}

        def _walk(view_id: int) -> None:
            if view_id in depth:
                return
            info = views[view_id]
            inner = [ref for ref in info.referenced_ids if ref in views and ref != view_id]
            for ref in inner:
                _walk(ref)
            depth[view_id] = 1 + max((depth[ref] for ref in inner), default=0)
            targets = set(info.referenced_ids & selected)
            for ref in inner:
                targets |= blocked[ref]
            blocked[view_id] = frozenset(targets)

        for view_id in views:
            _walk(view_id)

        records: List[SchemaBoundViewRecord] = []
        for view_id, info in views.items():
            record = SchemaBoundViewRecord(
                object_id=view_id,
                schema_name=info.schema_name,
                view_name=info.view_name,
                definition=info.definition,
                blocked_target_ids=blocked[view_id],
                depth=depth[view_id],
                extended_properties=tuple(
                    self.catalog.extended_properties(info.schema_name, info.view_name)
                ),
            )
            record.indexes = [
                ViewIndexRecord.from_info(info.schema_name, info.view_name, ix)
                for ix in self.catalog.view_indexes(view_id)
            ]
            # 聚集索引必须先于非聚集索引创建
            record.indexes.sort(key=lambda ix: not ix.is_clustered)
            record.triggers = [
                ViewTriggerRecord.from_info(info.schema_name, info.view_name, tr)
                for tr in self.catalog.view_triggers(view_id)
            ]
            records.append(record)
        records.sort(key=lambda r: (r.depth, r.schema_name, r.view_name))

        for record in records:
            for object_id in record.target_ids:
                self.ctx.targets[object_id].blocked_by[kind] = True

        implied = self._link(kind, records)
        self.ctx.views = records
        ledger = self.ctx.ledger
        ledger.record_found(kind, len(records))
        ledger.record_found(DependencyKind.VIEW_INDEX, sum(len(r.indexes) for r in records))
        ledger.record_found(DependencyKind.VIEW_TRIGGER, sum(len(r.triggers) for r in records))
        self._log_scan(
            kind,
            len(records),
            tables=implied,
            indexes=ledger[DependencyKind.VIEW_INDEX].found,
            triggers=ledger[DependencyKind.VIEW_TRIGGER].found,
        )
        ledger.check_scan(kind, implied, self._flagged(kind))
        self._apply_irreproducible_policy(records)
        return records

    def _apply_irreproducible_policy(self, records: List[SchemaBoundViewRecord]) -> None:
        """加密的视图/触发器：fail 策略在变更前致命；drop 策略或 WhatIf 下标记为放弃并告警"""
        options = self.ctx.options
        offenders: List[DependencyRecord] = []
        for view in records:
            if view.is_irreproducible:
                offenders.append(view)
                continue
            offenders.extend(tr for tr in view.triggers if tr.is_irreproducible)
        if not offenders:
            return

        names = ", ".join(r.display_name for r in offenders)
        if options.irreproducible_policy == IRREPRODUCIBLE_FAIL and not options.what_if:
            logger.error(
                f"存在无法还原的加密定义: {names}",
                extra={"event": EVENT_IRREPRODUCIBLE, "extra": {"objects": names, "fatal": True}},
            )
            raise IrreproducibleDefinitionError(
                f"Encrypted definitions cannot be captured and would be lost: {names}",
                context={"phase": "Scanning", "objects": [r.display_name for r in offenders]},
            )

        for record in offenders:
            message = (
                f"{record.kind.label} {record.display_name} is encrypted and cannot be recreated"
            )
            self._abandon(record, message)
            if isinstance(record, SchemaBoundViewRecord):
                for child in [*record.indexes, *record.triggers]:
                    self._abandon(child, f"parent view {record.display_name} is encrypted")
            self.ctx.warn(message)
        logger.warning(
            f"加密定义将被放弃: {names}",
            extra={"event": EVENT_IRREPRODUCIBLE, "extra": {"objects": names, "fatal": False}},
        )

    @staticmethod
    def _abandon(record: DependencyRecord, message: str) -> None:
        record.state.abandoned = True
        record.state.add_error(message)

    # ------------------------------------------------------------------
    # CDC
    # ------------------------------------------------------------------

    def scan_cdc_instances(self) -> List[CdcInstanceRecord]:
        kind = DependencyKind.CDC_INSTANCE
        if not self.catalog.is_cdc_enabled():
            logger.info(
                "数据库未启用 CDC，跳过 CDC 实例扫描",
                extra={
                    "event": f"{EVENT_SCAN}.{kind.value}",
                    "extra": {"kind": kind.value, "found": 0, "cdc_enabled": False},
                },
            )
            self.ctx.ledger.check_scan(kind, 0, 0)
            return []

        ids = sorted(self.selected_ids)
        for object_id in self.catalog.cdc_tracked_table_ids(ids):
            if object_id in self.ctx.targets:
                self.ctx.targets[object_id].blocked_by[kind] = True

        records = [CdcInstanceRecord(info) for info in self.catalog.cdc_instances(ids)]
        implied = self._link(kind, records)
        self.ctx.cdc_instances = records
        self.ctx.ledger.record_found(kind, len(records))
        self._log_scan(kind, len(records), tables=implied)
        self.ctx.ledger.check_scan(kind, implied, self._flagged(kind))
        return records

    # ------------------------------------------------------------------
    # 发布项目
    # ------------------------------------------------------------------

    def scan_articles(self) -> List[ArticleRecord]:
        kind = DependencyKind.PUBLICATION_ARTICLE
        ids = sorted(self.selected_ids)
        published = set(self.catalog.published_table_ids(ids))
        for object_id in published:
            if object_id in self.ctx.targets:
                self.ctx.targets[object_id].blocked_by[kind] = True
        if not published:
            self._log_scan(kind, 0)
            self.ctx.ledger.check_scan(kind, 0, 0)
            return []

        records = [ArticleRecord(info) for info in self.catalog.articles(ids)]
        covered = {object_id for r in records for object_id in r.target_ids}
        orphans = sorted(published - covered)
        if orphans:
            names = ", ".join(
                self.ctx.targets[i].qualified_name for i in orphans if i in self.ctx.targets
            )
            raise ReconciliationError(
                f"Published table(s) without a matching article: {names}",
                context={"phase": "Scanning", "kind": kind.value, "tables": names},
            )

        implied = self._link(kind, records)
        self.ctx.articles = records
        self.ctx.ledger.record_found(kind, len(records))
        self._log_scan(kind, len(records), tables=implied)
        self.ctx.ledger.check_scan(kind, implied, self._flagged(kind))
        return records
