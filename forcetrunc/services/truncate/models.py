from __future__ import annotations

"""
强制清空领域模型（services.truncate.models）
- Command/CommandAction：一条可执行、可渲染的命令值（动作 + 对象 + SQL + 结构化参数）
- TargetTable：一张候选表及其行数、标记、各依赖类型计数器
- DependencyKind：依赖类型（四类顶层依赖 + 视图子对象）
- Phase：运行状态机的阶段
- RunContext：单次调用的全部簿记（只在内存中存在）

注意：
- Command.params 供测试替身与日志使用，不参与相等比较
- TargetTable 只追加、不删除；错误信息以 "; " 拼接累积
"""


import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from forcetrunc.utils.tsql import qualified

if TYPE_CHECKING:  # pragma: no cover
    from forcetrunc.schemas.options import TruncateOptions
    from forcetrunc.services.truncate.ledger import ReconciliationLedger
    from forcetrunc.services.truncate.records import (
        ArticleRecord,
        CdcInstanceRecord,
        ForeignKeyRecord,
        SchemaBoundViewRecord,
    )

logger = logging.getLogger(__name__)


class CommandAction(str, enum.Enum):
    DROP_FOREIGN_KEY = "drop_foreign_key"
    ADD_FOREIGN_KEY = "add_foreign_key"
    DROP_VIEW = "drop_view"
    CREATE_VIEW = "create_view"
    ADD_EXTENDED_PROPERTY = "add_extended_property"
    CREATE_VIEW_INDEX = "create_view_index"
    CREATE_VIEW_TRIGGER = "create_view_trigger"
    DISABLE_VIEW_TRIGGER = "disable_view_trigger"
    DISABLE_CDC = "disable_cdc"
    ENABLE_CDC = "enable_cdc"
    DROP_ARTICLE = "drop_article"
    ADD_ARTICLE = "add_article"
    TRUNCATE_TABLE = "truncate_table"
    UPDATE_STATISTICS = "update_statistics"


@dataclass(frozen=True)
class Command:
    action: CommandAction
    object_name: str
    sql: str
    params: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def sql_type(self) -> str:
        head = self.sql.lstrip().split(None, 1)[0].upper() if self.sql.strip() else ""
        return {"ALTER": "DDL", "DROP": "DDL", "CREATE": "DDL"}.get(head, head)


class DependencyKind(str, enum.Enum):
    FOREIGN_KEY = "foreign_key"
    SCHEMA_BOUND_VIEW = "schema_bound_view"
    VIEW_INDEX = "view_index"
    VIEW_TRIGGER = "view_trigger"
    CDC_INSTANCE = "cdc_instance"
    PUBLICATION_ARTICLE = "publication_article"

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    DependencyKind.FOREIGN_KEY: "FK Constraints",
    DependencyKind.SCHEMA_BOUND_VIEW: "Schema-Bound Views",
    DependencyKind.VIEW_INDEX: "Schema-Bound View Indexes",
    DependencyKind.VIEW_TRIGGER: "Schema-Bound View Triggers",
    DependencyKind.CDC_INSTANCE: "CDC Instances",
    DependencyKind.PUBLICATION_ARTICLE: "Published Articles",
}

# 直接阻塞目标表的四类依赖；扫描顺序即此顺序
BLOCKING_KINDS = (
    DependencyKind.FOREIGN_KEY,
    DependencyKind.SCHEMA_BOUND_VIEW,
    DependencyKind.CDC_INSTANCE,
    DependencyKind.PUBLICATION_ARTICLE,
)


@dataclass
class DependencyCounter:
    """单张表在某依赖类型上的计数"""

    referencing: int = 0
    dropped: int = 0
    recreated: int = 0


@dataclass
class TargetTable:
    object_id: int
    schema_id: int
    schema_name: str
    table_name: str
    temporal_type: int = 0
    row_count_before: Optional[int] = None
    row_count_after: Optional[int] = None
    is_to_be_truncated: bool = False
    is_on_exception_list: bool = False
    is_truncated: bool = False
    error_message: Optional[str] = None
    blocked_by: Dict[DependencyKind, bool] = field(
        default_factory=lambda: {kind: False for kind in BLOCKING_KINDS}
    )
    counters: Dict[DependencyKind, DependencyCounter] = field(
        default_factory=lambda: {kind: DependencyCounter() for kind in BLOCKING_KINDS}
    )

    @property
    def qualified_name(self) -> str:
        return qualified(self.schema_name, self.table_name)

    def add_error(self, message: str) -> None:
        self.error_message = (
            message if not self.error_message else f"{self.error_message}; {message}"
        )


class Phase(str, enum.Enum):
    RESOLVING = "Resolving"
    SCANNING = "Scanning"
    TEARING_DOWN = "TearingDown"
    TRUNCATING = "Truncating"
    RECONSTRUCTING = "Reconstructing"
    VERIFYING = "Verifying"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMMITTED, Phase.ROLLED_BACK)


# 合法迁移；任意非终态均可进入 RolledBack
_TRANSITIONS = {
    Phase.RESOLVING: {Phase.SCANNING},
    # 没有达到阈值的表时跳过拆除/清空/重建
    Phase.SCANNING: {Phase.TEARING_DOWN, Phase.VERIFYING},
    Phase.TEARING_DOWN: {Phase.TRUNCATING},
    Phase.TRUNCATING: {Phase.RECONSTRUCTING},
    Phase.RECONSTRUCTING: {Phase.VERIFYING},
    Phase.VERIFYING: {Phase.COMMITTED},
}


def can_transition(current: Phase, target: Phase) -> bool:
    if current.is_terminal:
        return False
    if target is Phase.ROLLED_BACK:
        return True
    return target in _TRANSITIONS.get(current, set())


@dataclass
class RunContext:
    """单次调用的运行上下文：在各阶段之间按引用传递，不使用全局状态。"""

    options: "TruncateOptions"
    ledger: "ReconciliationLedger"
    database: str = ""
    phase: Phase = Phase.RESOLVING
    targets: Dict[int, TargetTable] = field(default_factory=dict)
    foreign_keys: List["ForeignKeyRecord"] = field(default_factory=list)
    views: List["SchemaBoundViewRecord"] = field(default_factory=list)
    cdc_instances: List["CdcInstanceRecord"] = field(default_factory=list)
    articles: List["ArticleRecord"] = field(default_factory=list)
    plan: List[Command] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def advance(self, target: Phase) -> None:
        if not can_transition(self.phase, target):
            raise RuntimeError(f"非法阶段迁移: {self.phase.value} -> {target.value}")
        logger.info(
            f"阶段切换: {self.phase.value} -> {target.value}",
            extra={
                "event": "truncate.phase.enter",
                "extra": {"phase": target.value, "previous": self.phase.value},
            },
        )
        self.phase = target

    def selected(self) -> List[TargetTable]:
        """待清空的表（IsToBeTruncated = 1），保持解析顺序"""
        return [t for t in self.targets.values() if t.is_to_be_truncated]

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message, extra={"event": "truncate.warning", "extra": {}})
