"""
数据库配置模块（forcetrunc.core.config.database）

本模块包含 SQL Server 连接相关的配置类定义，包括：
- ODBC 连接配置
- 超时配置
- 重试策略配置
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class DbTimeoutSettings:
    """
    数据库超时配置

    属性：
        connect_timeout_s: 登录/连接超时时间（秒）
        query_timeout_s: 单条语句超时时间（秒），0 表示不限制
    """

    connect_timeout_s: int = 15
    query_timeout_s: int = 0


@dataclass(frozen=True)
class DbRetrySettings:
    """
    数据库重试策略配置

    仅用于“建立连接”阶段；进入事务后的失败不会重试。

    属性：
        max_retries: 最大重试次数
        retry_delay_ms: 重试延迟时间（毫秒）
        backoff_multiplier: 退避倍数
    """

    max_retries: int = 3
    retry_delay_ms: int = 1000
    backoff_multiplier: float = 2.0


@dataclass(frozen=True)
class DbSettings:
    """
    数据库配置设置

    安全注意事项：
    - 数据库配置仅允许来自 database.yaml，不允许通过 ENV/CLI 覆盖
    - password 不会写入运行快照
    - 连接串优先级：connection_string > driver/server/database 组合

    属性：
        driver: ODBC 驱动名称
        server: 服务器地址
        port: 端口
        database: 目标数据库
        user: 用户名（trusted_connection 时忽略）
        password: 密码
        trusted_connection: 是否使用 Windows 集成认证
        encrypt: 是否加密连接
        trust_server_certificate: 是否信任服务器证书
        connection_string: 完整 ODBC 连接串（可选）
        timeouts: 超时配置
        retry: 重试策略配置
    """

    driver: str = "ODBC Driver 18 for SQL Server"
    server: str = "localhost"
    port: int = 1433
    database: str = "master"
    user: str | None = None
    password: str | None = None
    trusted_connection: bool = False
    encrypt: bool = True
    trust_server_certificate: bool = False
    connection_string: str | None = None
    timeouts: DbTimeoutSettings = DbTimeoutSettings()
    retry: DbRetrySettings = DbRetrySettings()
