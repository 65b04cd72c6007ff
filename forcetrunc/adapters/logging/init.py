"""
日志适配器（forcetrunc.adapters.logging）

- JsonFormatter/TextFormatter：落盘默认 JSON，控制台始终为 text
- init_logging(settings, run_dir)：替换根 logger 的处理器，按 by_run/by_module 路由
- write_run_snapshot：把本次运行的参数与配置写入 env.json，并作为 task.begin 事件记录

by_run 目录结构：
    app.ndjson    INFO 及以上（阶段切换、对账结果、进度）
    error.ndjson  WARNING 及以上（尽力模式下的失败、对账不一致）
    sql.ndjson    "sql" logger 的全部语句（不向根 logger 传播）
    env.json      运行快照（密码与连接串已遮蔽）
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from forcetrunc.core.config.loader import Settings
from forcetrunc.core.config.logging import LOG_FORMATS, LoggingFormatting

_MASK = "***"
_SECRET_DB_FIELDS = ("password", "connection_string")

# 控制台只展示与清空流程相关的字段
_TEXT_FIELDS = ("phase", "kind", "object_name", "found", "acted", "percent", "rows")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _TruncatingFormatter(logging.Formatter):
    """时间戳与消息截断的公共部分"""

    def __init__(
        self,
        timestamp_format: str | None = None,
        max_message_length: int | None = None,
    ) -> None:
        super().__init__()
        self.ts_fmt = timestamp_format
        self.max_len = max(0, int(max_message_length or 0))

    def timestamp(self) -> str:
        now = _utc_now()
        if self.ts_fmt:
            return now.strftime(self.ts_fmt)
        return now.isoformat(timespec="seconds").replace("+00:00", "Z")

    def message(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self.max_len and len(msg) > self.max_len:
            return msg[: self.max_len] + "…"
        return msg


class JsonFormatter(_TruncatingFormatter):
    """单行 JSON；record.extra 字典平铺到顶层，field_order 中的字段排在最前"""

    def __init__(
        self,
        timestamp_format: str | None = None,
        max_message_length: int | None = None,
        field_order: tuple[str, ...] | None = None,
    ) -> None:
        super().__init__(timestamp_format, max_message_length)
        self.field_order = tuple(field_order or ())

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None),
            "message": self.message(record),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        head = {k: payload[k] for k in self.field_order if k in payload}
        payload = {**head, **{k: v for k, v in payload.items() if k not in head}}
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


class TextFormatter(_TruncatingFormatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [record.levelname, f"ts={self.timestamp()}", f"logger={record.name}"]
        event = getattr(record, "event", None)
        if event:
            parts.append(f"event={event}")
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            parts.extend(
                f"{k}={extra[k]}" for k in _TEXT_FIELDS if extra.get(k) is not None
            )
        msg = self.message(record)
        if msg:
            parts.append(f"msg={msg}")
        return " ".join(parts)


class ByModuleHandler(logging.Handler):
    """按 logger 名称分文件：<base>/<logger>.log，文件在首条记录时打开"""

    def __init__(self, base: Path, formatter: logging.Formatter) -> None:
        super().__init__()
        self.base = base
        self.setFormatter(formatter)
        self._files: dict[str, logging.FileHandler] = {}

    def emit(self, record: logging.LogRecord) -> None:
        name = record.name or "root"
        handler = self._files.get(name)
        if handler is None:
            handler = logging.FileHandler(self.base / f"{name}.log", encoding="utf-8")
            handler.setFormatter(self.formatter)
            self._files[name] = handler
        handler.emit(record)

    def close(self) -> None:
        for handler in self._files.values():
            handler.close()
        super().close()


def compute_run_dir(base: Path | None = None) -> Path:
    """logs/runs/YYYYMMDD/HHMMSS-pid<PID>"""
    base = base or Path("logs") / "runs"
    now = _utc_now()
    return base / now.strftime("%Y%m%d") / f"{now.strftime('%H%M%S')}-pid{os.getpid()}"


def _build_formatter(fmt: str, cfg: LoggingFormatting) -> logging.Formatter:
    if fmt not in LOG_FORMATS:
        raise ValueError(f"unsupported log format: {fmt}")
    if fmt == "json":
        return JsonFormatter(cfg.timestamp_format, cfg.max_message_length, cfg.field_order)
    return TextFormatter(cfg.timestamp_format, cfg.max_message_length)


def _replace_handlers(target: logging.Logger, *handlers: logging.Handler) -> None:
    for h in list(target.handlers):
        target.removeHandler(h)
    for h in handlers:
        target.addHandler(h)


def init_logging(
    settings: Settings,
    run_dir: Path,
    *,
    override_format: str | None = None,
    override_routing: str | None = None,
    override_console_level: str | None = None,
    quiet: bool | None = None,
) -> None:
    """
    初始化全局日志

    CLI 覆盖项只作用于本次调用（LoggingSettings 为冻结数据类）。
    控制台级别默认跟随 logging.level，--console-level 覆盖，--quiet 固定为 WARNING。
    """
    cfg = settings.logging
    fmt = (override_format or cfg.format).lower()
    routing = (override_routing or cfg.routing).lower()
    formatter = _build_formatter(fmt, cfg.formatting)

    root = logging.getLogger()
    root_level = getattr(logging, cfg.level.upper(), logging.INFO)
    root.setLevel(root_level)

    console_level = root_level
    if override_console_level:
        console_level = getattr(logging, override_console_level.upper(), console_level)
    if quiet:
        console_level = logging.WARNING
    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(
        TextFormatter(cfg.formatting.timestamp_format, cfg.formatting.max_message_length)
    )

    if routing == "by_module":
        modules_dir = Path(cfg.base_dir) / "modules"
        modules_dir.mkdir(parents=True, exist_ok=True)
        _replace_handlers(root, ByModuleHandler(modules_dir, formatter), console)
        return

    run_dir.mkdir(parents=True, exist_ok=True)
    ext = "ndjson" if fmt == "json" else "log"

    def rotating(stream: str, level: int) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            run_dir / f"{stream}.{ext}",
            maxBytes=cfg.rotation.max_bytes,
            backupCount=cfg.rotation.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(formatter)
        handler.setLevel(level)
        return handler

    _replace_handlers(
        root, rotating("app", logging.INFO), rotating("error", logging.WARNING), console
    )

    # catalog/engine 的语句只进 sql 流
    sql_logger = logging.getLogger("sql")
    sql_logger.setLevel(logging.DEBUG)
    sql_logger.propagate = False
    _replace_handlers(sql_logger, rotating("sql", logging.DEBUG))


def _masked_config(settings: Settings) -> Dict[str, Any]:
    snapshot = asdict(settings)
    db = snapshot.get("db", {})
    for key in _SECRET_DB_FIELDS:
        if db.get(key):
            db[key] = _MASK
    return snapshot


def write_run_snapshot(
    settings: Settings,
    run_dir: Path,
    args_summary: Dict[str, Any],
    sources: Dict[str, Any] | None = None,
) -> None:
    """env.json + 一条 task.begin 日志；sources 为各配置项的来源（DEFAULT/YAML/ENV/CLI）"""
    run_dir.mkdir(parents=True, exist_ok=True)
    snapshot: Dict[str, Any] = {
        "args_summary": args_summary,
        "config_snapshot": _masked_config(settings),
        "ts": _utc_now().isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    if sources is not None:
        snapshot["sources"] = sources
    (run_dir / "env.json").write_text(
        json.dumps(snapshot, ensure_ascii=False, indent=2, default=str),
        encoding="utf-8",
    )
    logging.getLogger("forcetrunc").info(
        "run snapshot", extra={"event": "task.begin", "extra": snapshot}
    )
