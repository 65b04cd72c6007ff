"""
强制清空配置模块（forcetrunc.core.config.truncate）

本模块提供调用参数的默认值（CLI 未显式指定时使用）：
- 列表分隔符与例外通配符
- 行数探测批大小与行数阈值
- 重建阶段的 CDC / 发布项目开关
- 不可还原定义的处理策略
"""

from dataclasses import dataclass

IRREPRODUCIBLE_FAIL = "fail"
IRREPRODUCIBLE_DROP = "drop"


@dataclass(frozen=True)
class TruncateSettings:
    """
    强制清空默认参数

    属性：
        delimiter: 名称列表分隔符（单字符）
        wildcard: 通配符哨兵字符（单字符）
        batch_size: 每次行数探测包含的表数量
        row_count_threshold: 行数阈值，行数严格大于该值的表才会被清空
        reenable_cdc: 清空后是否重新启用 CDC
        recreate_published_articles: 清空后是否重建发布项目
        irreproducible_policy: 加密定义处理策略 ("fail" | "drop")
        progress_log_step: 进度日志的百分比步长
    """

    delimiter: str = ","
    wildcard: str = "*"
    batch_size: int = 10
    row_count_threshold: int = 0
    reenable_cdc: bool = True
    recreate_published_articles: bool = True
    irreproducible_policy: str = IRREPRODUCIBLE_FAIL
    progress_log_step: int = 10
