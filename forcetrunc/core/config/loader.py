"""
配置加载模块（forcetrunc.core.config.loader）

本模块负责应用程序的配置管理，提供统一的配置加载和验证机制。

核心功能：
- Settings：应用全局配置（db/logging/truncate）
- load_settings：按目录优先级与 YAML 合并规则加载配置
- load_settings_with_sources：提供配置来源追踪的加载函数

配置优先级：
1. CLI 参数 > 环境变量 > YAML 文件 > 默认值
2. 数据库配置仅允许来自 database.yaml，不允许通过 ENV/CLI 覆盖
3. 日志配置仅允许来自 logging.yaml（CLI 可一次性覆盖 format/routing）
4. 部分 truncate 配置支持环境变量覆盖（见白名单）

配置文件结构：
- configs/database.yaml：SQL Server 连接配置
- configs/logging.yaml：日志格式、级别和路由配置
- configs/truncate.yaml：强制清空默认参数
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml  # type: ignore[import-untyped]

from forcetrunc.core.exceptions import ConfigurationError

from .database import DbRetrySettings, DbSettings, DbTimeoutSettings
from .logging import LoggingFormatting, LoggingRotation, LoggingSettings, LoggingSql
from .truncate import TruncateSettings
from .validation import ConfigValidator, log_validation_result

# 模块日志记录器
logger = logging.getLogger(__name__)

CONFIG_FILES = ("database", "logging", "truncate")

# truncate 配置允许的环境变量覆盖（字段 -> ENV）
TRUNCATE_ENV_OVERRIDES = {
    "batch_size": "TRUNCATE_BATCH_SIZE",
    "row_count_threshold": "TRUNCATE_ROW_COUNT_THRESHOLD",
    "reenable_cdc": "TRUNCATE_REENABLE_CDC",
    "recreate_published_articles": "TRUNCATE_RECREATE_PUBLISHED_ARTICLES",
}


@dataclass(frozen=True)
class Settings:
    """
    应用程序主配置类

    所有配置对象都是 frozen dataclass，确保配置的不可变性。

    配置组织结构：
    - db: SQL Server 连接配置
    - logging: 日志系统配置
    - truncate: 强制清空默认参数

    使用示例：
        settings = load_settings(Path("configs"))
        server = settings.db.server
        batch = settings.truncate.batch_size
    """

    db: DbSettings = DbSettings()
    logging: LoggingSettings = LoggingSettings()
    truncate: TruncateSettings = TruncateSettings()


def _first_existing_dir(config_dir: Path) -> Path:
    """返回第一个存在的配置目录（优先级：传入 → ./configs → ./config）。"""
    for d in [config_dir, Path("configs"), Path("config")]:
        if d.exists() and d.is_dir():
            return d
    return config_dir


def _read_yaml_files(cdir: Path) -> Dict[str, Dict[str, Any]]:
    data: Dict[str, Dict[str, Any]] = {}
    for config_name in CONFIG_FILES:
        config_path = cdir / f"{config_name}.yaml"
        if not config_path.exists():
            logger.warning(f"配置文件不存在，使用默认配置: {config_path}")
            data[config_name] = {}
            continue
        try:
            with config_path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"加载配置文件失败 {config_path}: {e}",
                context={"path": str(config_path)},
                cause=e,
            ) from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(
                f"配置文件顶层必须是映射: {config_path}",
                context={"path": str(config_path)},
            )
        data[config_name] = loaded
        logger.info(f"成功加载配置文件: {config_path}")
    return data


def load_settings(config_dir: Path) -> Settings:
    """
    加载配置。

    - 目录优先级：传入 config_dir → ./configs → ./config
    - 支持文件：database.yaml、logging.yaml、truncate.yaml
    - 合并策略：truncate 支持 ENV > YAML > 默认；db/logging 仅 YAML > 默认

    参数：
        config_dir: 配置文件目录路径

    返回：
        Settings: 完整的应用配置对象

    异常：
        ConfigurationError: 文件不可读或验证失败
    """
    cdir = _first_existing_dir(config_dir)
    data = _read_yaml_files(cdir)

    # 先叠加 ENV，再验证，保证覆盖值同样经过校验
    truncate_config = _apply_truncate_env(data.get("truncate", {}))
    data["truncate"] = truncate_config

    validation_result = ConfigValidator.validate_complete_config(data)
    log_validation_result(validation_result, logger)

    if not validation_result.is_valid:
        raise ConfigurationError(
            f"配置验证失败: {len(validation_result.errors)} 个错误",
            context={
                "config_dir": str(cdir),
                "errors": [
                    f"{e.field}: {e.message}" for e in validation_result.errors
                ],
            },
        )

    settings = Settings(
        db=_build_database_settings(data.get("database", {})),
        logging=_build_logging_settings(data.get("logging", {})),
        truncate=_build_truncate_settings(truncate_config),
    )

    logger.info(
        f"配置加载完成，目标库: {settings.db.server}/{settings.db.database}, "
        f"批大小: {settings.truncate.batch_size}, 行数阈值: {settings.truncate.row_count_threshold}"
    )
    return settings


def load_settings_with_sources(config_dir: Path) -> Tuple[Settings, Dict[str, Any]]:
    """
    加载配置并返回配置来源信息。

    参数：
        config_dir: 配置文件目录路径

    返回：
        Tuple[Settings, Dict]: 配置对象和来源信息（YAML/ENV/DEFAULT）
    """
    settings = load_settings(config_dir)
    sources = _build_config_sources(config_dir)
    return settings, sources


# ================================
# 配置构建辅助函数
# ================================


def _build_database_settings(db_config: Dict[str, Any]) -> DbSettings:
    """构建数据库配置（仅从 YAML 加载）"""
    timeouts_config = db_config.get("timeouts", {})
    retry_config = db_config.get("retry", {})

    return DbSettings(
        driver=str(db_config.get("driver", "ODBC Driver 18 for SQL Server")),
        server=str(db_config.get("server", "localhost")),
        port=int(db_config.get("port", 1433)),
        database=str(db_config.get("database", "master")),
        user=db_config.get("user"),
        password=db_config.get("password"),
        trusted_connection=bool(db_config.get("trusted_connection", False)),
        encrypt=bool(db_config.get("encrypt", True)),
        trust_server_certificate=bool(
            db_config.get("trust_server_certificate", False)
        ),
        connection_string=db_config.get("connection_string"),
        timeouts=DbTimeoutSettings(
            connect_timeout_s=int(timeouts_config.get("connect_timeout_s", 15)),
            query_timeout_s=int(timeouts_config.get("query_timeout_s", 0)),
        ),
        retry=DbRetrySettings(
            max_retries=int(retry_config.get("max_retries", 3)),
            retry_delay_ms=int(retry_config.get("retry_delay_ms", 1000)),
            backoff_multiplier=float(retry_config.get("backoff_multiplier", 2.0)),
        ),
    )


def _build_logging_settings(logging_config: Dict[str, Any]) -> LoggingSettings:
    """构建日志配置（仅从 YAML 加载）"""
    sql_config = logging_config.get("sql", {})
    rotation_config = logging_config.get("rotation", {})
    formatting_config = logging_config.get("formatting", {})

    return LoggingSettings(
        level=str(logging_config.get("level", "INFO")).upper(),
        format=str(logging_config.get("format", "json")),
        routing=str(logging_config.get("routing", "by_run")),
        base_dir=str(logging_config.get("base_dir", "logs")),
        sql=LoggingSql(
            text=str(sql_config.get("text", "full")),
            max_sql_length=int(sql_config.get("max_sql_length", 2000)),
        ),
        rotation=LoggingRotation(
            max_bytes=int(rotation_config.get("max_bytes", 104_857_600)),
            backup_count=int(rotation_config.get("backup_count", 7)),
        ),
        formatting=LoggingFormatting(
            timestamp_format=str(
                formatting_config.get("timestamp_format", "%Y-%m-%d %H:%M:%S.%f")
            ),
            max_message_length=int(
                formatting_config.get("max_message_length", 8192)
            ),
            field_order=tuple(
                formatting_config.get(
                    "field_order", ["timestamp", "level", "event", "message"]
                )
            ),
        ),
    )


def _apply_truncate_env(truncate_config: Dict[str, Any]) -> Dict[str, Any]:
    """叠加白名单内的环境变量覆盖（返回新字典）"""
    merged = dict(truncate_config)
    for field_name, env_key in TRUNCATE_ENV_OVERRIDES.items():
        raw = os.getenv(env_key)
        if raw is None:
            continue
        default = getattr(TruncateSettings(), field_name)
        if isinstance(default, bool):
            merged[field_name] = _get_bool_env(env_key, default)
        else:
            try:
                merged[field_name] = int(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"环境变量 {env_key} 必须是整数: {raw}",
                    context={"env": env_key, "value": raw},
                    cause=e,
                ) from e
    return merged


def _build_truncate_settings(truncate_config: Dict[str, Any]) -> TruncateSettings:
    """构建强制清空默认参数（ENV 已在验证前叠加）"""
    defaults = TruncateSettings()
    return TruncateSettings(
        delimiter=str(truncate_config.get("delimiter", defaults.delimiter)),
        wildcard=str(truncate_config.get("wildcard", defaults.wildcard)),
        batch_size=int(truncate_config.get("batch_size", defaults.batch_size)),
        row_count_threshold=int(
            truncate_config.get("row_count_threshold", defaults.row_count_threshold)
        ),
        reenable_cdc=bool(truncate_config.get("reenable_cdc", defaults.reenable_cdc)),
        recreate_published_articles=bool(
            truncate_config.get(
                "recreate_published_articles", defaults.recreate_published_articles
            )
        ),
        irreproducible_policy=str(
            truncate_config.get(
                "irreproducible_policy", defaults.irreproducible_policy
            )
        ),
        progress_log_step=int(
            truncate_config.get("progress_log_step", defaults.progress_log_step)
        ),
    )


def _build_config_sources(config_dir: Path) -> Dict[str, Any]:
    """构建配置来源信息"""
    cdir = _first_existing_dir(config_dir)

    def _get_env_source(env_key: str, yaml_exists: bool) -> str:
        return (
            "ENV"
            if os.getenv(env_key) is not None
            else ("YAML" if yaml_exists else "DEFAULT")
        )

    def _get_yaml_field_source(yaml_data: Dict[str, Any], field_path: str) -> str:
        """检查YAML中的字段是否存在"""
        current: Any = yaml_data
        for key in field_path.split("."):
            if not isinstance(current, dict) or key not in current:
                return "DEFAULT"
            current = current[key]
        return "YAML"

    yaml_data: Dict[str, Dict[str, Any]] = {}
    for config_name in CONFIG_FILES:
        config_path = cdir / f"{config_name}.yaml"
        if config_path.exists():
            with config_path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            yaml_data[config_name] = loaded if isinstance(loaded, dict) else {}
        else:
            yaml_data[config_name] = {}

    db_yaml = yaml_data["database"]
    logging_yaml = yaml_data["logging"]
    truncate_yaml = yaml_data["truncate"]

    sources: Dict[str, Any] = {
        "database": {
            key: _get_yaml_field_source(db_yaml, key)
            for key in (
                "connection_string",
                "driver",
                "server",
                "port",
                "database",
                "user",
                "trusted_connection",
                "timeouts.connect_timeout_s",
                "timeouts.query_timeout_s",
                "retry.max_retries",
            )
        },
        "logging": {
            key: _get_yaml_field_source(logging_yaml, key)
            for key in (
                "level",
                "format",
                "routing",
                "base_dir",
                "sql.text",
                "rotation.max_bytes",
                "formatting.timestamp_format",
            )
        },
        "truncate": {
            key: _get_yaml_field_source(truncate_yaml, key)
            for key in ("delimiter", "wildcard", "irreproducible_policy", "progress_log_step")
        },
    }
    for field_name, env_key in TRUNCATE_ENV_OVERRIDES.items():
        sources["truncate"][field_name] = _get_env_source(
            env_key, _get_yaml_field_source(truncate_yaml, field_name) == "YAML"
        )

    return sources


def _get_bool_env(env_key: str, default_value: bool) -> bool:
    """从环境变量获取布尔值"""
    env_value = os.getenv(env_key)
    if env_value is None:
        return default_value
    return env_value.lower() in ("1", "true", "yes", "on")
