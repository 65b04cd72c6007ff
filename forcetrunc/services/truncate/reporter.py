from __future__ import annotations

"""
汇总输出（services.truncate.reporter）
- build_result：从 RunContext 生成 TruncateResult（每张表一行 + 错误清单）
- render_summary/render_errors：文本表格
- render_plan：WhatIf 模式下的命令脚本（每条命令后跟 GO）
"""


import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from forcetrunc.services.truncate.models import (
    BLOCKING_KINDS,
    Command,
    DependencyKind,
    Phase,
    RunContext,
    TargetTable,
)
from forcetrunc.services.truncate.records import DependencyRecord
from forcetrunc.utils.logging_ext import EVENT_SUMMARY

logger = logging.getLogger(__name__)

_KIND_COLUMNS = {
    DependencyKind.FOREIGN_KEY: "Fk",
    DependencyKind.SCHEMA_BOUND_VIEW: "Sbv",
    DependencyKind.CDC_INSTANCE: "Cdc",
    DependencyKind.PUBLICATION_ARTICLE: "Art",
}


@dataclass(frozen=True)
class ErrorItem:
    kind: str
    object_name: str
    message: str


@dataclass(frozen=True)
class SummaryRow:
    schema_name: str
    table_name: str
    row_count_before: Optional[int]
    row_count_after: Optional[int]
    is_to_be_truncated: bool
    is_on_exception_list: bool
    is_truncated: bool
    counters: Dict[str, Dict[str, int]]
    error_message: Optional[str] = None

    @classmethod
    def from_target(cls, table: TargetTable) -> "SummaryRow":
        return cls(
            schema_name=table.schema_name,
            table_name=table.table_name,
            row_count_before=table.row_count_before,
            row_count_after=table.row_count_after,
            is_to_be_truncated=table.is_to_be_truncated,
            is_on_exception_list=table.is_on_exception_list,
            is_truncated=table.is_truncated,
            counters={
                kind.value: {
                    "referencing": table.counters[kind].referencing,
                    "dropped": table.counters[kind].dropped,
                    "recreated": table.counters[kind].recreated,
                }
                for kind in BLOCKING_KINDS
            },
            error_message=table.error_message,
        )


@dataclass
class TruncateResult:
    database: str
    phase: Phase
    what_if: bool
    best_effort: bool
    rows: List[SummaryRow] = field(default_factory=list)
    errors: List[ErrorItem] = field(default_factory=list)
    plan: List[Command] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    totals: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def tables_truncated(self) -> int:
        return sum(1 for r in self.rows if r.is_truncated)

    @property
    def fully_restored(self) -> bool:
        """所有依赖均已重建（尽力模式下可能为 False）"""
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database": self.database,
            "phase": self.phase.value,
            "what_if": self.what_if,
            "best_effort": self.best_effort,
            "tables_truncated": self.tables_truncated,
            "totals": self.totals,
            "errors": [e.__dict__ for e in self.errors],
            "warnings": list(self.warnings),
        }


def _records(ctx: RunContext) -> List[DependencyRecord]:
    records: List[DependencyRecord] = []
    records.extend(ctx.articles)
    records.extend(ctx.cdc_instances)
    for view in ctx.views:
        records.append(view)
        records.extend(view.indexes)
        records.extend(view.triggers)
    records.extend(ctx.foreign_keys)
    return records


def build_result(ctx: RunContext) -> TruncateResult:
    targets = sorted(
        ctx.targets.values(),
        key=lambda t: (-(t.row_count_before or 0), t.table_name, t.schema_name),
    )
    errors = [
        ErrorItem(r.kind.label, r.display_name, r.state.error_message)
        for r in _records(ctx)
        if r.state.error_message
    ]
    errors.extend(
        ErrorItem("Table", t.qualified_name, t.error_message)
        for t in targets
        if t.error_message
    )
    totals = {
        kind.value: {
            "found": entry.found,
            "dropped": entry.dropped,
            "recreated": entry.recreated,
            "abandoned": entry.abandoned,
        }
        for kind, entry in ctx.ledger.entries.items()
    }
    result = TruncateResult(
        database=ctx.database,
        phase=ctx.phase,
        what_if=ctx.options.what_if,
        best_effort=ctx.options.best_effort,
        rows=[SummaryRow.from_target(t) for t in targets],
        errors=errors,
        plan=list(ctx.plan),
        warnings=list(ctx.warnings),
        totals=totals,
    )
    logger.info(
        f"汇总: 清空 {result.tables_truncated} 张表，错误 {len(errors)} 条",
        extra={"event": EVENT_SUMMARY, "extra": result.to_dict()},
    )
    return result


def _fmt(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _table(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    cells = [[_fmt(v) for v in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    lines = [
        "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)),
        "  ".join("-" * w for w in widths),
    ]
    lines.extend("  ".join(v.ljust(widths[i]) for i, v in enumerate(row)) for row in cells)
    return "\n".join(line.rstrip() for line in lines)


def render_summary(result: TruncateResult) -> str:
    headers = [
        "SchemaName",
        "TableName",
        "RowCountBefore",
        "RowCountAfter",
        "IsToBeTruncated",
        "IsOnExceptionList",
        "IsTruncated",
    ]
    for short in _KIND_COLUMNS.values():
        headers.extend([f"Num{short}Referencing", f"Num{short}Dropped", f"Num{short}Recreated"])
    headers.append("ErrorMessage")

    rows = []
    for r in result.rows:
        row: List[Any] = [
            r.schema_name,
            r.table_name,
            r.row_count_before,
            r.row_count_after,
            r.is_to_be_truncated,
            r.is_on_exception_list,
            r.is_truncated,
        ]
        for kind in _KIND_COLUMNS:
            c = r.counters[kind.value]
            row.extend([c["referencing"], c["dropped"], c["recreated"]])
        row.append(r.error_message)
        rows.append(row)
    return _table(headers, rows)


def render_errors(result: TruncateResult) -> str:
    if not result.errors:
        return ""
    return _table(
        ["ObjectKind", "ObjectName", "ErrorMessage"],
        [[e.kind, e.object_name, e.message] for e in result.errors],
    )


def render_plan(commands: Sequence[Command]) -> str:
    """WhatIf 脚本：每条命令单独成批"""
    return "\n".join(f"{c.sql.strip()}\nGO" for c in commands)
