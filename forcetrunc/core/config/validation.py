"""
配置验证模块（forcetrunc.core.config.validation）

在构建 Settings 之前对 YAML（及已叠加的 ENV）原始字典做校验：
- database：连接串或 server/database/认证方式组合、端口、超时与重试
- logging：级别、格式、路由、SQL 文本模式、轮转大小
- truncate：分隔符/通配符、批大小、阈值、不可还原定义策略、进度步长

错误阻止加载（由 loader 抛出 ConfigurationError），警告只记录日志。
缺失或为空的配置文件不做校验，直接使用 dataclass 默认值。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .logging import LOG_FORMATS, LOG_LEVELS, LOG_ROUTINGS, SQL_TEXT_MODES
from .truncate import IRREPRODUCIBLE_DROP, IRREPRODUCIBLE_FAIL

logger = logging.getLogger(__name__)


@dataclass
class ValidationError:
    """单条校验问题；severity 为 "error" 或 "warning" """

    field: str
    value: Any
    message: str
    severity: str = "error"

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass
class ValidationResult:
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, field_path: str, value: Any, message: str) -> None:
        self.errors.append(ValidationError(field_path, value, message, "error"))

    def add_warning(self, field_path: str, value: Any, message: str) -> None:
        self.warnings.append(ValidationError(field_path, value, message, "warning"))

    def merge(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_choice(
    result: ValidationResult, path: str, value: Any, choices: tuple, message: str
) -> None:
    if value not in choices:
        result.add_error(path, value, message)


class ConfigValidator:
    """按配置文件分组的校验入口（均为静态方法）"""

    @staticmethod
    def validate_database_config(db_config: Dict[str, Any]) -> ValidationResult:
        """
        验证 database.yaml

        提供 connection_string 时只检查它是否为非空字符串，其余字段被忽略；
        否则 server/database 必填，未启用集成认证时 user 必填。
        """
        result = ValidationResult()

        conn_str = db_config.get("connection_string")
        if conn_str is not None:
            if not isinstance(conn_str, str) or not conn_str.strip():
                result.add_error(
                    "db.connection_string", conn_str, "连接串必须是非空字符串"
                )
            return result

        for key, label in (("server", "服务器地址"), ("database", "数据库名称")):
            value = db_config.get(key, "")
            if not isinstance(value, str) or not value.strip():
                result.add_error(f"db.{key}", value, f"{label}不能为空且必须是字符串")

        port = db_config.get("port", 1433)
        if not _is_int(port) or not 1 <= port <= 65535:
            result.add_error("db.port", port, "端口必须是1-65535之间的整数")

        if not db_config.get("trusted_connection", False) and not db_config.get("user"):
            result.add_error(
                "db.user", db_config.get("user"), "未启用集成认证时必须提供用户名"
            )

        if db_config.get("trust_server_certificate") is True:
            result.add_warning(
                "db.trust_server_certificate", True, "信任服务器证书仅建议在开发环境使用"
            )

        timeouts = db_config.get("timeouts") or {}
        for key in ("connect_timeout_s", "query_timeout_s"):
            value = timeouts.get(key, 0)
            if not _is_int(value) or value < 0:
                result.add_error(f"db.timeouts.{key}", value, "超时时间必须是非负整数（秒）")

        retry = db_config.get("retry") or {}
        max_retries = retry.get("max_retries", 3)
        if not _is_int(max_retries) or max_retries < 0:
            result.add_error("db.retry.max_retries", max_retries, "最大重试次数必须是非负整数")
        multiplier = retry.get("backoff_multiplier", 2.0)
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)) or multiplier < 1.0:
            result.add_error("db.retry.backoff_multiplier", multiplier, "退避倍数必须不小于1.0")

        return result

    @staticmethod
    def validate_logging_config(logging_config: Dict[str, Any]) -> ValidationResult:
        result = ValidationResult()

        level = logging_config.get("level", "INFO")
        _check_choice(
            result,
            "logging.level",
            level.upper() if isinstance(level, str) else level,
            LOG_LEVELS,
            f"日志级别必须是 {', '.join(LOG_LEVELS)} 之一",
        )
        _check_choice(
            result,
            "logging.format",
            logging_config.get("format", "json"),
            LOG_FORMATS,
            "日志格式必须是 json 或 text",
        )
        _check_choice(
            result,
            "logging.routing",
            logging_config.get("routing", "by_run"),
            LOG_ROUTINGS,
            "日志路由必须是 by_run 或 by_module",
        )

        sql = logging_config.get("sql") or {}
        _check_choice(
            result,
            "logging.sql.text",
            sql.get("text", "full"),
            SQL_TEXT_MODES,
            "SQL文本模式必须是 full/summary/none",
        )
        max_sql_length = sql.get("max_sql_length", 2000)
        if not _is_int(max_sql_length) or max_sql_length < 1:
            result.add_error("logging.sql.max_sql_length", max_sql_length, "必须是正整数")

        rotation = logging_config.get("rotation") or {}
        max_bytes = rotation.get("max_bytes", 104_857_600)
        if not _is_int(max_bytes) or max_bytes < 1024:
            result.add_error("logging.rotation.max_bytes", max_bytes, "单文件大小至少 1024 字节")

        return result

    @staticmethod
    def validate_truncate_config(truncate_config: Dict[str, Any]) -> ValidationResult:
        """
        验证 truncate.yaml

        分隔符与通配符必须是不同的单个字符；批大小过大只给警告
        （每批生成一条 UNION ALL 行数探测语句）。
        """
        result = ValidationResult()

        delimiter = truncate_config.get("delimiter", ",")
        wildcard = truncate_config.get("wildcard", "*")
        for key, value in (("delimiter", delimiter), ("wildcard", wildcard)):
            if not isinstance(value, str) or len(value) != 1:
                result.add_error(f"truncate.{key}", value, "必须是单个字符")
        if delimiter == wildcard:
            result.add_error("truncate.wildcard", wildcard, "通配符不能与分隔符相同")

        batch_size = truncate_config.get("batch_size", 10)
        if not _is_int(batch_size) or batch_size < 1:
            result.add_error("truncate.batch_size", batch_size, "批大小必须是正整数")
        elif batch_size > 500:
            result.add_warning(
                "truncate.batch_size", batch_size, "批大小过大会生成很长的 UNION ALL 语句"
            )

        threshold = truncate_config.get("row_count_threshold", 0)
        if not _is_int(threshold) or threshold < 0:
            result.add_error("truncate.row_count_threshold", threshold, "行数阈值必须是非负整数")

        policy = truncate_config.get("irreproducible_policy", IRREPRODUCIBLE_FAIL)
        _check_choice(
            result,
            "truncate.irreproducible_policy",
            policy,
            (IRREPRODUCIBLE_FAIL, IRREPRODUCIBLE_DROP),
            "策略必须是 fail 或 drop",
        )
        if policy == IRREPRODUCIBLE_DROP:
            result.add_warning(
                "truncate.irreproducible_policy",
                policy,
                "drop 策略会永久丢失加密的视图/触发器定义",
            )

        step = truncate_config.get("progress_log_step", 10)
        if not _is_int(step) or not 1 <= step <= 100:
            result.add_error("truncate.progress_log_step", step, "进度步长必须是1-100之间的整数")

        return result

    @staticmethod
    def validate_complete_config(config: Dict[str, Any]) -> ValidationResult:
        """config 按文件名分组：{"database": {...}, "logging": {...}, "truncate": {...}}"""
        result = ValidationResult()
        validators: Dict[str, Callable[[Dict[str, Any]], ValidationResult]] = {
            "database": ConfigValidator.validate_database_config,
            "logging": ConfigValidator.validate_logging_config,
            "truncate": ConfigValidator.validate_truncate_config,
        }
        for config_name, validate in validators.items():
            if config.get(config_name):
                result.merge(validate(config[config_name]))
        return result


def log_validation_result(
    result: ValidationResult, log: Optional[logging.Logger] = None
) -> None:
    """逐条记录错误（ERROR）与警告（WARNING），最后输出一条汇总"""
    log = log or logger
    for issue in result.errors + result.warnings:
        level = logging.ERROR if issue.severity == "error" else logging.WARNING
        log.log(
            level,
            f"配置{'错误' if level == logging.ERROR else '警告'} [{issue.field}]: "
            f"{issue.message}, 当前值: {issue.value}",
            extra={
                "event": "config.validate.issue",
                "extra": {"field": issue.field, "severity": issue.severity},
            },
        )
    log.log(
        logging.INFO if result.is_valid else logging.ERROR,
        f"配置验证{'通过' if result.is_valid else '失败'}: "
        f"{len(result.errors)} 个错误, {len(result.warnings)} 个警告",
        extra={
            "event": "config.validate",
            "extra": {"errors": len(result.errors), "warnings": len(result.warnings)},
        },
    )
