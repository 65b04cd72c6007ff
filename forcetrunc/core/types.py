from __future__ import annotations

"""
核心类型定义（forcetrunc.core.types）
- TableInfo：用户表元数据（object_id/schema/name/temporal_type）
- ForeignKeyColumn：外键单列行（sys.foreign_keys × sys.foreign_key_columns）
- ViewInfo/ViewIndexInfo/ViewTriggerInfo/ExtendedProperty：schema-bound 视图及其子对象
- CdcInstanceInfo：CDC 捕获实例配置（cdc.change_tables × cdc.captured_columns）
- ArticleInfo：发布项目配置（sysarticles × syspublications + sp_helparticle 补充）

注意：
- 以上均为 catalog 接口的返回行；不可变（frozen），由扫描器转换为依赖记录
- 定义文本为 None 表示对象已加密，无法还原
"""


from dataclasses import dataclass
from typing import Optional

# sys.tables.temporal_type
TEMPORAL_NONE = 0
TEMPORAL_HISTORY = 1
TEMPORAL_SYSTEM_VERSIONED = 2


@dataclass(frozen=True)
class TableInfo:
    object_id: int
    schema_id: int
    schema_name: str
    table_name: str
    temporal_type: int = TEMPORAL_NONE


@dataclass(frozen=True)
class ForeignKeyColumn:
    foreign_key_id: int
    foreign_key_name: str
    source_schema: str
    source_table: str
    source_column: str
    target_object_id: int
    target_schema: str
    target_table: str
    target_column: str
    target_column_id: int
    delete_action: int = 0
    update_action: int = 0


@dataclass(frozen=True)
class ViewInfo:
    object_id: int
    schema_name: str
    view_name: str
    # 加密视图为 None
    definition: Optional[str]
    referenced_ids: frozenset[int] = frozenset()


@dataclass(frozen=True)
class IndexColumn:
    name: str
    descending: bool = False
    included: bool = False


@dataclass(frozen=True)
class ViewIndexInfo:
    index_name: str
    is_clustered: bool
    is_unique: bool
    columns: tuple[IndexColumn, ...]
    filter_definition: Optional[str] = None


@dataclass(frozen=True)
class ViewTriggerInfo:
    trigger_name: str
    definition: Optional[str]
    is_disabled: bool = False


@dataclass(frozen=True)
class ExtendedProperty:
    name: str
    value: str


@dataclass(frozen=True)
class CdcInstanceInfo:
    change_table_id: int
    source_object_id: int
    source_schema: str
    source_name: str
    capture_instance: str
    supports_net_changes: bool
    role_name: Optional[str]
    index_name: Optional[str]
    captured_columns: tuple[str, ...]
    filegroup_name: Optional[str]
    allow_partition_switch: bool = True


@dataclass(frozen=True)
class ArticleInfo:
    """发布项目完整配置；字段名与 sp_addarticle 参数对齐。"""

    publication_id: int
    article_id: int
    publication: str
    article: str
    source_object_id: int
    destination_table: Optional[str] = None
    type_code: Optional[int] = 1
    ins_cmd: Optional[str] = None
    del_cmd: Optional[str] = None
    upd_cmd: Optional[str] = None
    creation_script: Optional[str] = None
    description: Optional[str] = None
    pre_creation_code: Optional[int] = 0
    filter_clause: Optional[str] = None
    schema_option: Optional[bytes] = None
    destination_owner: Optional[str] = None
    fire_triggers_on_snapshot: bool = False
    # 以下来自 sp_helparticle
    filter: Optional[str] = None
    source_owner: Optional[str] = None
    sync_object_owner: Optional[str] = None
    filter_owner: Optional[str] = None
    source_object: Optional[str] = None
    auto_identity_range: Optional[bool] = None
    pub_identity_range: Optional[int] = None
    identity_range: Optional[int] = None
    threshold: Optional[int] = None
    identity_range_management_code: Optional[int] = None
