from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from forcetrunc.core.config.truncate import (
    IRREPRODUCIBLE_DROP,
    IRREPRODUCIBLE_FAIL,
    TruncateSettings,
)
from forcetrunc.core.exceptions import SelectorValidationError


class TruncateOptions(BaseModel):
    """强制清空调用参数
    - schema_names/table_names：成对的分隔符列表（可含通配符）；与 truncate_all_tables 互斥
    - schemas_except/tables_except：成对的例外列表（子串匹配；单独的通配符表示全部）
    - what_if：只渲染命令，不执行任何变更
    - continue_on_error：重建阶段起的尽力模式
    - row_count_threshold：行数严格大于该值才会被清空
    """

    schema_names: Optional[str] = Field(default=None, description="模式名列表")
    table_names: Optional[str] = Field(default=None, description="表名列表")
    truncate_all_tables: bool = Field(default=False, description="选择库内全部用户表")
    delimiter: str = Field(default=",", min_length=1, max_length=1, description="列表分隔符")
    what_if: bool = Field(default=False, description="仅渲染命令")
    continue_on_error: bool = Field(default=False, description="重建阶段尽力模式")
    row_count_threshold: int = Field(default=0, ge=0, description="行数阈值（严格大于）")
    schemas_except: Optional[str] = Field(default=None, description="例外模式名列表")
    tables_except: Optional[str] = Field(default=None, description="例外表名列表")
    wildcard: str = Field(default="*", min_length=1, max_length=1, description="通配符哨兵")
    batch_size: int = Field(default=10, ge=1, description="行数探测批大小")
    reenable_cdc: bool = Field(default=True, description="清空后重新启用 CDC")
    recreate_published_articles: bool = Field(default=True, description="清空后重建发布项目")
    irreproducible_policy: str = Field(
        default=IRREPRODUCIBLE_FAIL, description="加密定义处理策略 fail|drop"
    )
    progress_log_step: int = Field(default=10, ge=1, le=100, description="进度日志步长（百分比）")

    @field_validator("irreproducible_policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        if v not in (IRREPRODUCIBLE_FAIL, IRREPRODUCIBLE_DROP):
            raise ValueError(f"无效的不可还原定义策略: {v}")
        return v

    @model_validator(mode="after")
    def validate_delimiter_wildcard(self) -> "TruncateOptions":
        # 两者相同时每个通配符都会被当作分隔符拆掉
        if self.delimiter == self.wildcard:
            raise ValueError(f"分隔符与通配符不能相同: {self.delimiter!r}")
        return self

    @property
    def best_effort(self) -> bool:
        return self.continue_on_error and not self.what_if

    def summary(self) -> dict[str, Any]:
        """运行快照与日志使用的参数摘要"""
        return self.model_dump()


def build_options(settings: TruncateSettings, **overrides: Any) -> TruncateOptions:
    """以 truncate.yaml 默认值为底，叠加调用方显式给出的参数（None 表示未指定）。"""
    values: dict[str, Any] = {
        "delimiter": settings.delimiter,
        "wildcard": settings.wildcard,
        "batch_size": settings.batch_size,
        "row_count_threshold": settings.row_count_threshold,
        "reenable_cdc": settings.reenable_cdc,
        "recreate_published_articles": settings.recreate_published_articles,
        "irreproducible_policy": settings.irreproducible_policy,
        "progress_log_step": settings.progress_log_step,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return TruncateOptions(**values)
    except ValidationError as e:
        raise SelectorValidationError(
            f"调用参数无效: {e.errors()[0].get('msg')}",
            context={"errors": [err.get("loc") for err in e.errors()], "phase": "Resolving"},
            cause=e,
        ) from e
