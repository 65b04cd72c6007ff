from __future__ import annotations

"""
依赖记录（services.truncate.records）

每类阻塞依赖一个记录类型，均提供纯函数式的命令合成：
- synthesize_teardown()：拆除命令（删除约束/视图、禁用 CDC、删除发布项目）
- synthesize_reconstruct()：重建命令（可能是多条命令）
- 视图另有 synthesize_extended_properties()，在视图重建成功后单独执行

记录本身不执行任何命令；执行与对账由 executor/ledger 负责。
RecordState 保存执行期间的状态（已删除/已重建/已放弃）与错误信息。
"""


import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple

from forcetrunc.core.exceptions import IrreproducibleDefinitionError
from forcetrunc.core.types import (
    ArticleInfo,
    CdcInstanceInfo,
    ExtendedProperty,
    ForeignKeyColumn,
    IndexColumn,
    ViewIndexInfo,
    ViewTriggerInfo,
)
from forcetrunc.services.truncate.models import Command, CommandAction, DependencyKind
from forcetrunc.utils.tsql import (
    bit,
    hex_literal,
    n_literal,
    qualified,
    quote_name,
)

logger = logging.getLogger(__name__)

# sys.foreign_keys.delete/update_referential_action；0 = NO ACTION 不输出
REFERENTIAL_ACTIONS = {1: "CASCADE", 2: "SET NULL", 3: "SET DEFAULT"}

# sysarticles.type
ARTICLE_TYPES = {
    1: "logbased",
    2: "logbased manualfilter",
    5: "logbased manualview",
    7: "logbased manualboth",
    8: "proc exec",
    24: "serializable proc exec",
    32: "proc schema only",
    64: "view schema only",
    128: "func schema only",
}

# sysarticles.pre_creation_cmd
PRE_CREATION_COMMANDS = {0: "none", 1: "drop", 2: "delete", 3: "truncate"}

# sp_helparticle.identityrangemanagementoption
IDENTITY_RANGE_MANAGEMENT = {0: "none", 1: "auto", 2: "manual"}


@dataclass
class RecordState:
    dropped: bool = False
    recreated: bool = False
    abandoned: bool = False
    error_message: Optional[str] = None

    def add_error(self, message: str) -> None:
        self.error_message = (
            message if not self.error_message else f"{self.error_message}; {message}"
        )


class DependencyRecord:
    """依赖记录公共接口"""

    kind: ClassVar[DependencyKind]
    state: RecordState

    @property
    def target_ids(self) -> frozenset[int]:
        """被该依赖阻塞的目标表 object_id 集合"""
        return frozenset()

    @property
    def display_name(self) -> str:
        raise NotImplementedError

    @property
    def is_irreproducible(self) -> bool:
        return False

    def synthesize_teardown(self) -> List[Command]:
        raise NotImplementedError

    def synthesize_reconstruct(self) -> List[Command]:
        raise NotImplementedError


def render_value(value: Any) -> str:
    """将参数值渲染为 T-SQL 字面量"""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return bit(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, bytes):
        return hex_literal(value)
    if isinstance(value, (tuple, list)):
        return n_literal(", ".join(quote_name(v) for v in value))
    return n_literal(str(value))


def render_exec(procedure: str, options: Dict[str, Any]) -> str:
    lines = [f"EXEC {procedure}"]
    for i, (name, value) in enumerate(options.items()):
        sep = "  " if i == 0 else ", "
        lines.append(f"{sep}@{name} = {render_value(value)}")
    return "\n".join(lines) + ";"


# ---------------------------------------------------------------------------
# 外键
# ---------------------------------------------------------------------------


@dataclass
class ForeignKeyRecord(DependencyRecord):
    kind: ClassVar[DependencyKind] = DependencyKind.FOREIGN_KEY

    foreign_key_id: int
    name: str
    source_schema: str
    source_table: str
    target_object_id: int
    target_schema: str
    target_table: str
    source_columns: Tuple[str, ...]
    target_columns: Tuple[str, ...]
    delete_action: int = 0
    update_action: int = 0
    state: RecordState = field(default_factory=RecordState)

    @classmethod
    def from_columns(cls, rows: Iterable[ForeignKeyColumn]) -> List["ForeignKeyRecord"]:
        """按外键分组；列顺序取被引用列的序号（多列外键必须保持该顺序）。"""
        grouped: Dict[int, List[ForeignKeyColumn]] = {}
        for row in rows:
            grouped.setdefault(row.foreign_key_id, []).append(row)

        records = []
        for fk_rows in grouped.values():
            ordered = sorted(fk_rows, key=lambda r: r.target_column_id)
            head = ordered[0]
            records.append(
                cls(
                    foreign_key_id=head.foreign_key_id,
                    name=head.foreign_key_name,
                    source_schema=head.source_schema,
                    source_table=head.source_table,
                    target_object_id=head.target_object_id,
                    target_schema=head.target_schema,
                    target_table=head.target_table,
                    source_columns=tuple(r.source_column for r in ordered),
                    target_columns=tuple(r.target_column for r in ordered),
                    delete_action=head.delete_action,
                    update_action=head.update_action,
                )
            )
        records.sort(key=lambda r: (r.source_table, r.name))
        return records

    @property
    def target_ids(self) -> frozenset[int]:
        return frozenset({self.target_object_id})

    @property
    def display_name(self) -> str:
        return f"{qualified(self.source_schema, self.source_table)}.{quote_name(self.name)}"

    def synthesize_teardown(self) -> List[Command]:
        sql = (
            f"ALTER TABLE {qualified(self.source_schema, self.source_table)} "
            f"DROP CONSTRAINT {quote_name(self.name)};"
        )
        params = {
            "schema": self.source_schema,
            "table": self.source_table,
            "name": self.name,
        }
        return [Command(CommandAction.DROP_FOREIGN_KEY, self.display_name, sql, params)]

    def synthesize_reconstruct(self) -> List[Command]:
        source_cols = ", ".join(quote_name(c) for c in self.source_columns)
        target_cols = ", ".join(quote_name(c) for c in self.target_columns)
        sql = (
            f"ALTER TABLE {qualified(self.source_schema, self.source_table)} "
            f"WITH NOCHECK ADD CONSTRAINT {quote_name(self.name)} "
            f"FOREIGN KEY ({source_cols}) "
            f"REFERENCES {qualified(self.target_schema, self.target_table)} ({target_cols})"
        )
        if self.delete_action in REFERENTIAL_ACTIONS:
            sql += f" ON DELETE {REFERENTIAL_ACTIONS[self.delete_action]}"
        if self.update_action in REFERENTIAL_ACTIONS:
            sql += f" ON UPDATE {REFERENTIAL_ACTIONS[self.update_action]}"
        sql += ";"
        params = {
            "schema": self.source_schema,
            "table": self.source_table,
            "name": self.name,
            "columns": self.source_columns,
            "referenced_schema": self.target_schema,
            "referenced_table": self.target_table,
            "referenced_columns": self.target_columns,
            "delete_action": self.delete_action,
            "update_action": self.update_action,
        }
        return [Command(CommandAction.ADD_FOREIGN_KEY, self.display_name, sql, params)]


# ---------------------------------------------------------------------------
# schema-bound 视图及其子对象
# ---------------------------------------------------------------------------


@dataclass
class ViewIndexRecord(DependencyRecord):
    kind: ClassVar[DependencyKind] = DependencyKind.VIEW_INDEX

    view_schema: str
    view_name: str
    index_name: str
    is_clustered: bool
    is_unique: bool
    columns: Tuple[IndexColumn, ...]
    filter_definition: Optional[str] = None
    state: RecordState = field(default_factory=RecordState)

    @classmethod
    def from_info(cls, schema: str, view: str, info: ViewIndexInfo) -> "ViewIndexRecord":
        return cls(
            view_schema=schema,
            view_name=view,
            index_name=info.index_name,
            is_clustered=info.is_clustered,
            is_unique=info.is_unique,
            columns=info.columns,
            filter_definition=info.filter_definition,
        )

    @property
    def display_name(self) -> str:
        return f"{qualified(self.view_schema, self.view_name)}.{quote_name(self.index_name)}"

    def synthesize_teardown(self) -> List[Command]:
        # 随视图一起删除
        return []

    def synthesize_reconstruct(self) -> List[Command]:
        keys = [c for c in self.columns if not c.included]
        included = [c for c in self.columns if c.included]
        sql = "CREATE "
        if self.is_unique:
            sql += "UNIQUE "
        sql += "CLUSTERED " if self.is_clustered else "NONCLUSTERED "
        sql += (
            f"INDEX {quote_name(self.index_name)} "
            f"ON {qualified(self.view_schema, self.view_name)} ("
            + ", ".join(
                f"{quote_name(c.name)} {'DESC' if c.descending else 'ASC'}" for c in keys
            )
            + ")"
        )
        if included:
            sql += " INCLUDE (" + ", ".join(quote_name(c.name) for c in included) + ")"
        if self.filter_definition:
            sql += f" WHERE {self.filter_definition}"
        sql += ";"
        params = {
            "schema": self.view_schema,
            "view": self.view_name,
            "name": self.index_name,
            "is_clustered": self.is_clustered,
            "is_unique": self.is_unique,
            "columns": self.columns,
            "filter_definition": self.filter_definition,
        }
        return [Command(CommandAction.CREATE_VIEW_INDEX, self.display_name, sql, params)]


@dataclass
class ViewTriggerRecord(DependencyRecord):
    kind: ClassVar[DependencyKind] = DependencyKind.VIEW_TRIGGER

    view_schema: str
    view_name: str
    trigger_name: str
    definition: Optional[str]
    is_disabled: bool = False
    state: RecordState = field(default_factory=RecordState)

    @classmethod
    def from_info(
        cls, schema: str, view: str, info: ViewTriggerInfo
    ) -> "ViewTriggerRecord":
        return cls(
            view_schema=schema,
            view_name=view,
            trigger_name=info.trigger_name,
            definition=info.definition,
            is_disabled=info.is_disabled,
        )

    @property
    def display_name(self) -> str:
        return qualified(self.view_schema, self.trigger_name)

    @property
    def is_irreproducible(self) -> bool:
        return self.definition is None

    def synthesize_teardown(self) -> List[Command]:
        return []

    def synthesize_reconstruct(self) -> List[Command]:
        if self.definition is None:
            raise IrreproducibleDefinitionError(
                f"触发器 {self.display_name} 已加密，无法重建",
                context={"object_name": self.display_name, "kind": self.kind.value},
            )
        params = {
            "schema": self.view_schema,
            "view": self.view_name,
            "name": self.trigger_name,
        }
        commands = [
            Command(
                CommandAction.CREATE_VIEW_TRIGGER,
                self.display_name,
                self.definition,
                {**params, "definition": self.definition},
            )
        ]
        if self.is_disabled:
            sql = (
                f"DISABLE TRIGGER {self.display_name} "
                f"ON {qualified(self.view_schema, self.view_name)};"
            )
            commands.append(
                Command(CommandAction.DISABLE_VIEW_TRIGGER, self.display_name, sql, params)
            )
        return commands


@dataclass
class SchemaBoundViewRecord(DependencyRecord):
    """
    schema-bound 视图

    - blocked_target_ids：该视图（直接或经由内层视图）阻塞的目标表
    - depth：1 表示直接引用目标表，n 表示引用了 depth = n-1 的视图
    - 索引与触发器随视图删除，重建时在视图之后按 索引 → 触发器 的顺序执行
    """

    kind: ClassVar[DependencyKind] = DependencyKind.SCHEMA_BOUND_VIEW

    object_id: int
    schema_name: str
    view_name: str
    definition: Optional[str]
    blocked_target_ids: frozenset[int] = frozenset()
    depth: int = 1
    extended_properties: Tuple[ExtendedProperty, ...] = ()
    indexes: List[ViewIndexRecord] = field(default_factory=list)
    triggers: List[ViewTriggerRecord] = field(default_factory=list)
    state: RecordState = field(default_factory=RecordState)

    @property
    def target_ids(self) -> frozenset[int]:
        return self.blocked_target_ids

    @property
    def display_name(self) -> str:
        return qualified(self.schema_name, self.view_name)

    @property
    def is_irreproducible(self) -> bool:
        return self.definition is None

    def synthesize_teardown(self) -> List[Command]:
        sql = f"DROP VIEW {self.display_name};"
        params = {"schema": self.schema_name, "view": self.view_name}
        return [Command(CommandAction.DROP_VIEW, self.display_name, sql, params)]

    def synthesize_reconstruct(self) -> List[Command]:
        """只有视图定义；扩展属性、索引与触发器在视图建好后各自执行。"""
        if self.definition is None:
            raise IrreproducibleDefinitionError(
                f"视图 {self.display_name} 已加密，无法重建",
                context={"object_name": self.display_name, "kind": self.kind.value},
            )
        return [
            Command(
                CommandAction.CREATE_VIEW,
                self.display_name,
                self.definition,
                {
                    "schema": self.schema_name,
                    "view": self.view_name,
                    "definition": self.definition,
                },
            )
        ]

    def synthesize_extended_properties(self) -> List[Command]:
        commands = []
        for prop in self.extended_properties:
            options = {
                "name": prop.name,
                "value": prop.value,
                "level0type": "SCHEMA",
                "level0name": self.schema_name,
                "level1type": "VIEW",
                "level1name": self.view_name,
            }
            sql = "EXEC [sys].[sp_addextendedproperty] " + ", ".join(
                f"@{k} = {render_value(v)}" for k, v in options.items()
            ) + ";"
            commands.append(
                Command(
                    CommandAction.ADD_EXTENDED_PROPERTY,
                    f"{self.display_name}.{quote_name(prop.name)}",
                    sql,
                    options,
                )
            )
        return commands


# ---------------------------------------------------------------------------
# CDC
# ---------------------------------------------------------------------------


@dataclass
class CdcInstanceRecord(DependencyRecord):
    kind: ClassVar[DependencyKind] = DependencyKind.CDC_INSTANCE

    info: CdcInstanceInfo
    state: RecordState = field(default_factory=RecordState)

    @property
    def target_ids(self) -> frozenset[int]:
        return frozenset({self.info.source_object_id})

    @property
    def display_name(self) -> str:
        return quote_name(self.info.capture_instance)

    def synthesize_teardown(self) -> List[Command]:
        options = {
            "source_schema": self.info.source_schema,
            "source_name": self.info.source_name,
            "capture_instance": self.info.capture_instance,
        }
        sql = render_exec("sys.sp_cdc_disable_table", options)
        return [Command(CommandAction.DISABLE_CDC, self.display_name, sql, options)]

    def enable_options(self) -> Dict[str, Any]:
        info = self.info
        return {
            "source_schema": info.source_schema,
            "source_name": info.source_name,
            "capture_instance": info.capture_instance,
            "supports_net_changes": info.supports_net_changes,
            "role_name": info.role_name,
            "index_name": info.index_name,
            "captured_column_list": info.captured_columns,
            "filegroup_name": info.filegroup_name,
            "allow_partition_switch": info.allow_partition_switch,
        }

    def synthesize_reconstruct(self) -> List[Command]:
        options = self.enable_options()
        sql = render_exec("sys.sp_cdc_enable_table", options)
        return [Command(CommandAction.ENABLE_CDC, self.display_name, sql, options)]


# ---------------------------------------------------------------------------
# 发布项目
# ---------------------------------------------------------------------------


def _true_false(value: Optional[bool]) -> Optional[str]:
    if value is None:
        return None
    return "true" if value else "false"


@dataclass
class ArticleRecord(DependencyRecord):
    kind: ClassVar[DependencyKind] = DependencyKind.PUBLICATION_ARTICLE

    info: ArticleInfo
    state: RecordState = field(default_factory=RecordState)

    @property
    def target_ids(self) -> frozenset[int]:
        return frozenset({self.info.source_object_id})

    @property
    def display_name(self) -> str:
        return f"{quote_name(self.info.publication)}.{quote_name(self.info.article)}"

    def synthesize_teardown(self) -> List[Command]:
        options = {
            "publication": self.info.publication,
            "article": self.info.article,
            "force_invalidate_snapshot": 1,
        }
        sql = render_exec("sys.sp_droparticle", options)
        return [Command(CommandAction.DROP_ARTICLE, self.display_name, sql, options)]

    def add_options(self) -> Dict[str, Any]:
        """sp_addarticle 参数（顺序即输出顺序）"""
        info = self.info
        return {
            "publication": info.publication,
            "article": info.article,
            "destination_table": info.destination_table,
            "vertical_partition": "false",
            "type": ARTICLE_TYPES.get(info.type_code) if info.type_code is not None else None,
            "filter": info.filter,
            "ins_cmd": info.ins_cmd or "NONE",
            "del_cmd": info.del_cmd or "NONE",
            "upd_cmd": info.upd_cmd or "NONE",
            "creation_script": info.creation_script,
            "description": info.description,
            "pre_creation_cmd": (
                PRE_CREATION_COMMANDS.get(info.pre_creation_code)
                if info.pre_creation_code is not None
                else None
            ),
            "filter_clause": info.filter_clause,
            "schema_option": info.schema_option,
            "destination_owner": info.destination_owner,
            "source_owner": info.source_owner,
            "sync_object_owner": info.sync_object_owner,
            "filter_owner": info.filter_owner,
            "source_object": info.source_object,
            "auto_identity_range": _true_false(info.auto_identity_range),
            "pub_identity_range": info.pub_identity_range,
            "identity_range": info.identity_range,
            "threshold": info.threshold,
            "force_invalidate_snapshot": 0,
            "use_default_datatypes": 1,
            "identityrangemanagementoption": (
                IDENTITY_RANGE_MANAGEMENT.get(info.identity_range_management_code)
                if info.identity_range_management_code is not None
                else None
            ),
            "publisher": None,
            "fire_triggers_on_snapshot": _true_false(info.fire_triggers_on_snapshot),
        }

    def synthesize_reconstruct(self) -> List[Command]:
        options = self.add_options()
        sql = render_exec("sys.sp_addarticle", options)
        return [Command(CommandAction.ADD_ARTICLE, self.display_name, sql, options)]


__all__ = [
    "ARTICLE_TYPES",
    "ArticleRecord",
    "CdcInstanceRecord",
    "DependencyRecord",
    "ForeignKeyRecord",
    "IDENTITY_RANGE_MANAGEMENT",
    "PRE_CREATION_COMMANDS",
    "REFERENTIAL_ACTIONS",
    "RecordState",
    "SchemaBoundViewRecord",
    "ViewIndexRecord",
    "ViewTriggerRecord",
]
