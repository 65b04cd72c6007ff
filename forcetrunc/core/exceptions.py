"""
异常定义与错误处理（forcetrunc.core.exceptions）

异常分类：
- ConfigurationError：配置文件不可读或校验失败
- DatabaseError / DatabaseConnectionError：目录查询失败、连接失败（连接阶段可重试）
- TruncateError 及其子类：强制清空流程中的致命错误，context["phase"] 记录失败阶段
  - SelectorValidationError：选择器组合非法、名称无法解析（变更前失败）
  - IrreproducibleDefinitionError：依赖对象定义无法还原（加密视图/触发器）
  - ReconciliationError：阶段前后计数不一致
  - CommandExecutionError：引擎拒绝执行生成的命令
  - StructuralImpossibilityError：结构上不允许清空（history 表）

使用方式：
1. 入口函数使用 @error_handler 包装，记录结构化日志后原样抛出业务异常
2. 仅在建立连接时使用 @retry_on_error
3. CLI 边界层捕获 BaseAppException，输出 message 并以退出码 1 结束
"""

from __future__ import annotations

import inspect
import logging
import random
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional, Sequence, Type, TypeVar, Union

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)


class BaseAppException(Exception):
    """
    应用基础异常

    属性：
        message: 面向用户的错误信息（CLI 原样输出）
        error_code: 默认为异常类名
        context: 结构化上下文，随日志输出
        cause: 底层异常（如 pyodbc.Error）
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.cause = cause
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(BaseAppException):
    pass


class DatabaseError(BaseAppException):
    """目录查询或事务控制语句失败"""

    pass


class DatabaseConnectionError(DatabaseError):
    pass


class TruncateError(BaseAppException):
    """强制清空流程中的致命错误基类"""

    @property
    def phase(self) -> Optional[str]:
        return self.context.get("phase")


class SelectorValidationError(TruncateError):
    pass


class IrreproducibleDefinitionError(TruncateError):
    """加密定义无法捕获；irreproducible_policy=fail 时在扫描阶段抛出"""

    pass


class ReconciliationError(TruncateError):
    pass


class CommandExecutionError(TruncateError):
    """
    引擎拒绝执行命令

    message 形如 "<引擎错误> - when executing: <命令文本>"；
    action/object_name/sql 同时写入 context 便于日志检索。
    """

    def __init__(
        self,
        message: str,
        *,
        phase: str,
        action: str,
        object_name: str,
        sql: str,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            context={
                "phase": phase,
                "action": action,
                "object_name": object_name,
                "sql": sql,
            },
            cause=cause,
        )
        self.action = action
        self.object_name = object_name
        self.sql = sql


class StructuralImpossibilityError(TruncateError):
    pass


def _context_value(value: Any) -> Any:
    # pydantic 模型（如 TruncateOptions）以字典形式写入日志
    dump = getattr(value, "model_dump", None)
    return dump() if callable(dump) else value


def error_handler(
    logger_name: Optional[str] = None,
    log_level: int = logging.ERROR,
    context_fields: Optional[Sequence[str]] = None,
) -> Callable[[F], F]:
    """
    入口函数错误处理装饰器

    - BaseAppException：合并上下文后记录 app.error 事件，原样抛出
    - 其他异常：记录 app.unexpected_error（含堆栈），包装为 BaseAppException 抛出
    - context_fields：从被装饰函数的参数中取值写入日志上下文

    使用示例：
        @error_handler(context_fields=["options"])
        def force_truncate(catalog, engine, options) -> TruncateResult:
            ...
    """

    def decorator(func: F) -> F:
        func_logger = logging.getLogger(logger_name or func.__module__)
        signature = inspect.signature(func)

        @wraps(func)
        def wrapper(*args, **kwargs):
            context: Dict[str, Any] = {"function": func.__name__}
            if context_fields:
                bound = signature.bind_partial(*args, **kwargs)
                for name in context_fields:
                    if name in bound.arguments:
                        context[name] = _context_value(bound.arguments[name])

            try:
                return func(*args, **kwargs)
            except BaseAppException as e:
                func_logger.log(
                    log_level,
                    f"应用异常: {e.message}",
                    extra={"event": "app.error", "extra": {**context, **e.to_dict()}},
                )
                raise
            except Exception as e:
                func_logger.log(
                    log_level,
                    f"未预期异常: {e}",
                    extra={
                        "event": "app.unexpected_error",
                        "extra": {**context, "error_type": type(e).__name__},
                    },
                    exc_info=True,
                )
                raise BaseAppException(
                    f"{func.__name__} failed: {e}",
                    error_code="UNEXPECTED_ERROR",
                    context=context,
                    cause=e,
                ) from e

        return wrapper  # type: ignore

    return decorator


def retry_on_error(
    exceptions: Union[Type[Exception], tuple[Type[Exception], ...]] = (
        DatabaseConnectionError,
    ),
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_multiplier: float = 2.0,
    jitter: bool = True,
) -> Callable[[F], F]:
    """
    指数退避重试装饰器

    第 n 次重试前等待 min(base_delay * backoff_multiplier**(n-1), max_delay) 秒，
    jitter 时再加最多 10% 的随机抖动。重试耗尽后抛出最后一次的异常。
    """
    retry_on = (exceptions,) if isinstance(exceptions, type) else tuple(exceptions)

    def decorator(func: F) -> F:
        func_logger = logging.getLogger(func.__module__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= max_retries:
                        func_logger.error(
                            f"{func.__name__} 重试 {max_retries} 次后仍失败: {e}",
                            extra={
                                "event": "retry.exhausted",
                                "extra": {
                                    "function": func.__name__,
                                    "max_retries": max_retries,
                                    "error_type": type(e).__name__,
                                },
                            },
                        )
                        raise
                    delay = min(base_delay * (backoff_multiplier**attempt), max_delay)
                    if jitter:
                        delay += random.uniform(0, delay * 0.1)
                    attempt += 1
                    func_logger.warning(
                        f"{func.__name__} 失败，{delay:.2f}s 后第 {attempt} 次重试: {e}",
                        extra={
                            "event": "retry.attempt",
                            "extra": {
                                "function": func.__name__,
                                "attempt": attempt,
                                "max_retries": max_retries,
                                "delay_seconds": delay,
                            },
                        },
                    )
                    time.sleep(delay)

        return wrapper  # type: ignore

    return decorator
