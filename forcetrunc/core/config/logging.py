"""
日志配置模块（forcetrunc.core.config.logging）

logging.yaml 的结构化表示：
- LoggingSettings：级别、格式、路由、日志根目录
- LoggingSql：catalog/engine 发往 SQL Server 的语句如何落入 sql 日志流
- LoggingRotation / LoggingFormatting：落盘文件的轮转与 JSON 字段布局

取值集合（LOG_FORMATS 等）同时供 ConfigValidator 与 init_logging 使用。
"""

from dataclasses import dataclass

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("json", "text")
LOG_ROUTINGS = ("by_run", "by_module")
SQL_TEXT_MODES = ("full", "summary", "none")


@dataclass(frozen=True)
class LoggingSql:
    """
    属性：
        text: full 记录完整语句；summary 截断到 max_sql_length；none 只记录类型与耗时
        max_sql_length: summary 模式下保留的字符数（sp_addarticle 等长语句会被截断）
    """

    text: str = "full"
    max_sql_length: int = 2000


@dataclass(frozen=True)
class LoggingRotation:
    # app/error/sql 三个文件各自轮转
    max_bytes: int = 104_857_600
    backup_count: int = 7


@dataclass(frozen=True)
class LoggingFormatting:
    timestamp_format: str = "%Y-%m-%d %H:%M:%S.%f"
    max_message_length: int = 8192
    field_order: tuple[str, ...] = ("timestamp", "level", "event", "message")


@dataclass(frozen=True)
class LoggingSettings:
    """
    日志系统配置（仅来自 logging.yaml；CLI 可一次性覆盖 format/routing/控制台级别）

    属性：
        level: 根 logger 级别
        format: 落盘格式 ("json" | "text")，控制台始终为 text
        routing: "by_run" 每次运行一个目录；"by_module" 按 logger 名称分文件
        base_dir: by_module 路由使用的日志根目录
    """

    level: str = "INFO"
    format: str = "json"
    routing: str = "by_run"
    base_dir: str = "logs"
    sql: LoggingSql = LoggingSql()
    rotation: LoggingRotation = LoggingRotation()
    formatting: LoggingFormatting = LoggingFormatting()
