from __future__ import annotations

"""
选择器解析（services.truncate.selectors）

输入：成对的模式名/表名列表（或 truncate_all_tables）、成对的例外列表、行数阈值
输出：RunContext.targets（按 object_id 去重），填好 IsOnExceptionList / IsToBeTruncated

规则：
- 列表模式与全库模式必须二选一
- 例外列表必须成对出现；例外字段中的通配符必须单独使用
- 字面名称必须能解析：模式不存在报错；表在所有选中的模式中都不存在报错
- 例外匹配为子串包含（不区分大小写），模式名与表名须同时匹配
- 行数严格大于阈值才会被清空
"""


import logging
import re
from typing import Any, Dict, Iterable, List, Sequence

from forcetrunc.core.exceptions import (
    SelectorValidationError,
    StructuralImpossibilityError,
)
from forcetrunc.core.types import TEMPORAL_HISTORY, TableInfo
from forcetrunc.schemas.options import TruncateOptions
from forcetrunc.services.truncate.models import RunContext, TargetTable
from forcetrunc.utils.logging_ext import EVENT_ROWCOUNT_BATCH, EVENT_SELECTOR_RESOLVED

logger = logging.getLogger(__name__)


def split_names(value: str | None, delimiter: str) -> List[str]:
    """拆分名称列表：先按分隔符拆分，再去掉每项首尾空白（含换行），忽略空项"""
    if not value:
        return []
    return [part.strip() for part in value.split(delimiter) if part.strip()]


def _selector_error(message: str, **context: Any) -> SelectorValidationError:
    return SelectorValidationError(message, context={"phase": "Resolving", **context})


def validate_selectors(options: TruncateOptions) -> None:
    """在访问目录之前完成参数组合校验"""
    schemas = split_names(options.schema_names, options.delimiter)
    tables = split_names(options.table_names, options.delimiter)
    list_mode = bool(schemas or tables)

    if list_mode and options.truncate_all_tables:
        raise _selector_error(
            "Either specify schema/table name lists or truncate_all_tables, not both"
        )
    if not list_mode and not options.truncate_all_tables:
        raise _selector_error(
            "Either schema/table name lists or truncate_all_tables must be specified"
        )
    if list_mode and not (schemas and tables):
        raise _selector_error(
            "Schema names and table names must both be specified",
            schema_names=options.schema_names,
            table_names=options.table_names,
        )

    schemas_except = split_names(options.schemas_except, options.delimiter)
    tables_except = split_names(options.tables_except, options.delimiter)
    if bool(schemas_except) != bool(tables_except):
        raise _selector_error(
            "Exception lists must be specified as a pair (schemas_except and tables_except)",
            schemas_except=options.schemas_except,
            tables_except=options.tables_except,
        )
    for field_name, entries in (
        ("schemas_except", schemas_except),
        ("tables_except", tables_except),
    ):
        mixed = [e for e in entries if options.wildcard in e and e != options.wildcard]
        if mixed:
            raise _selector_error(
                f"Wildcard character '{options.wildcard}' must be used alone in {field_name}: "
                + ", ".join(mixed),
                field=field_name,
                patterns=mixed,
            )


def _pattern_regex(pattern: str, wildcard: str) -> re.Pattern[str]:
    body = ".*".join(re.escape(piece) for piece in pattern.split(wildcard))
    return re.compile(f"^{body}$", re.IGNORECASE)


def _matches_any(name: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    return any(p.match(name) for p in patterns)


def _resolve_lists(
    catalog: Any, options: TruncateOptions, tables: Sequence[TableInfo]
) -> List[TableInfo]:
    schema_entries = split_names(options.schema_names, options.delimiter)
    table_entries = split_names(options.table_names, options.delimiter)
    wildcard = options.wildcard

    for entry in schema_entries:
        if wildcard not in entry and not catalog.schema_exists(entry):
            raise _selector_error(f"Schema {entry} does not exist", schema=entry)

    schema_patterns = [_pattern_regex(e, wildcard) for e in schema_entries]
    in_schemas = [t for t in tables if _matches_any(t.schema_name, schema_patterns)]

    for entry in table_entries:
        if wildcard in entry:
            continue
        if not any(t.table_name.lower() == entry.lower() for t in in_schemas):
            raise _selector_error(
                f"Table {entry} does not exist in any of the schemas: "
                + ", ".join(schema_entries),
                table=entry,
            )

    table_patterns = [_pattern_regex(e, wildcard) for e in table_entries]
    return [t for t in in_schemas if _matches_any(t.table_name, table_patterns)]


def _is_excepted(
    table: TargetTable,
    schema_patterns: Sequence[str],
    table_patterns: Sequence[str],
    wildcard: str,
) -> bool:
    def _hit(name: str, patterns: Iterable[str]) -> bool:
        lowered = name.lower()
        return any(p == wildcard or p.lower() in lowered for p in patterns)

    return _hit(table.schema_name, schema_patterns) and _hit(table.table_name, table_patterns)


def _batches(items: Sequence[TargetTable], size: int) -> Iterable[Sequence[TargetTable]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def collect_row_counts(
    catalog: Any, tables: Sequence[TargetTable], batch_size: int, attr: str
) -> Dict[int, int]:
    """分批探测行数，结果写入 TargetTable 的 attr（row_count_before/row_count_after）"""
    counts: Dict[int, int] = {}
    for number, batch in enumerate(_batches(tables, batch_size), start=1):
        batch_counts = catalog.count_rows(
            [(t.object_id, t.schema_name, t.table_name) for t in batch]
        )
        for table in batch:
            if table.object_id in batch_counts:
                setattr(table, attr, int(batch_counts[table.object_id]))
        counts.update(batch_counts)
        logger.debug(
            f"行数探测批次 {number}: {len(batch)} 张表",
            extra={
                "event": EVENT_ROWCOUNT_BATCH,
                "extra": {"batch": number, "tables": len(batch), "column": attr},
            },
        )
    return counts


def resolve_targets(catalog: Any, ctx: RunContext) -> List[TargetTable]:
    """解析选择器并填充 ctx.targets；返回待清空的表"""
    options = ctx.options
    validate_selectors(options)

    all_tables = list(catalog.list_tables())
    if options.truncate_all_tables:
        resolved = all_tables
    else:
        resolved = _resolve_lists(catalog, options, all_tables)

    for info in sorted(resolved, key=lambda t: (t.schema_name, t.table_name)):
        if info.object_id in ctx.targets:
            continue
        ctx.targets[info.object_id] = TargetTable(
            object_id=info.object_id,
            schema_id=info.schema_id,
            schema_name=info.schema_name,
            table_name=info.table_name,
            temporal_type=info.temporal_type,
        )

    if not ctx.targets:
        raise _selector_error(
            "No tables found for the given selectors",
            schema_names=options.schema_names,
            table_names=options.table_names,
            truncate_all_tables=options.truncate_all_tables,
        )

    schemas_except = split_names(options.schemas_except, options.delimiter)
    tables_except = split_names(options.tables_except, options.delimiter)
    if schemas_except:
        for table in ctx.targets.values():
            table.is_on_exception_list = _is_excepted(
                table, schemas_except, tables_except, options.wildcard
            )

    history = [
        t
        for t in ctx.targets.values()
        if t.temporal_type == TEMPORAL_HISTORY and not t.is_on_exception_list
    ]
    if history:
        names = ", ".join(t.qualified_name for t in history)
        raise StructuralImpossibilityError(
            f"Cannot truncate history table(s) of system-versioned temporal tables: {names}",
            context={"phase": "Resolving", "tables": [t.qualified_name for t in history]},
        )

    targets = list(ctx.targets.values())
    collect_row_counts(catalog, targets, options.batch_size, "row_count_before")

    for table in targets:
        rows = table.row_count_before or 0
        table.is_to_be_truncated = (
            not table.is_on_exception_list and rows > options.row_count_threshold
        )

    selected = ctx.selected()
    logger.info(
        f"选择器解析完成: 共 {len(targets)} 张表，待清空 {len(selected)} 张",
        extra={
            "event": EVENT_SELECTOR_RESOLVED,
            "extra": {
                "resolved": len(targets),
                "excepted": sum(1 for t in targets if t.is_on_exception_list),
                "selected": len(selected),
                "threshold": options.row_count_threshold,
            },
        },
    )
    return selected

