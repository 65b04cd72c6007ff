from __future__ import annotations

import json
from pathlib import Path

import typer

from forcetrunc import __version__
from forcetrunc.core.config.loader import Settings, load_settings, load_settings_with_sources
from forcetrunc.core.exceptions import BaseAppException

# 全局可选日志参数
log_run_option = typer.Option(
    None, help="启用文件日志并创建新的运行目录（默认禁用）", show_default=False
)
log_dir_option = typer.Option(
    None, help="自定义日志目录（可配合 --log-run 复用同一目录）", show_default=False
)
log_format_option = typer.Option(
    None, help="覆盖日志格式：json|text（默认 YAML 配置）", show_default=False
)
log_routing_option = typer.Option(
    None, help="覆盖日志路由：by_run|by_module（默认 YAML 配置）", show_default=False
)
log_console_level_option = typer.Option(
    None,
    help="控制台日志级别（默认同全局）：DEBUG|INFO|WARNING|ERROR|CRITICAL",
    show_default=False,
)
quiet_option = typer.Option(
    False, "--quiet", help="安静模式（仅控制台 WARNING 及以上）", show_default=False
)
config_dir_option = typer.Option(
    "configs", "--config-dir", help="配置目录（database/logging/truncate.yaml）"
)


app = typer.Typer(
    help="SQL Server 强制清空：拆除阻塞依赖（外键/schema-bound 视图/CDC/发布项目）→ TRUNCATE → 按原样重建"
)


def _init_logs(
    settings: Settings,
    log_run: bool | None,
    log_dir: str | None,
    log_format: str | None,
    log_routing: str | None,
    console_level: str | None,
    quiet: bool | None,
    args_summary: dict,
    sources: dict | None = None,
) -> None:
    if not log_run:
        return
    from forcetrunc.adapters.logging.init import (
        compute_run_dir,
        init_logging,
        write_run_snapshot,
    )

    run_dir = Path(log_dir) if log_dir else compute_run_dir()
    # 日志配置默认来自 logging.yaml；允许 CLI 临时覆盖 format/routing
    init_logging(
        settings,
        run_dir,
        override_format=log_format,
        override_routing=log_routing,
        override_console_level=console_level,
        quiet=quiet,
    )
    write_run_snapshot(settings, run_dir, args_summary=args_summary, sources=sources)


def _fail(e: BaseAppException) -> None:
    typer.echo(f"[ERROR] {e.message}", err=True)
    raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """打印版本。
    示例：python -m forcetrunc.cli.main version
    """
    typer.echo(f"forcetrunc {__version__}")


@app.command(
    name="check-config",
    help="加载并校验配置，打印每个字段的来源（YAML/ENV/DEFAULT）；常见错误：YAML 顶层不是映射、端口越界",
)
def cmd_check_config(
    config_dir: str = config_dir_option,
    log_run: bool | None = log_run_option,
    log_dir: str | None = log_dir_option,
    log_format: str | None = log_format_option,
    log_routing: str | None = log_routing_option,
    console_level: str | None = log_console_level_option,
    quiet: bool | None = quiet_option,
) -> None:
    try:
        settings, sources = load_settings_with_sources(Path(config_dir))
    except BaseAppException as e:
        _fail(e)
        return
    _init_logs(
        settings,
        log_run,
        log_dir,
        log_format,
        log_routing,
        console_level,
        quiet,
        args_summary={"command": "check-config", "config_dir": config_dir},
        sources=sources,
    )
    typer.echo(f"database: {settings.db.server},{settings.db.port}/{settings.db.database}")
    typer.echo(json.dumps(sources, ensure_ascii=False, indent=2))
    typer.echo("config ok")


@app.command(
    name="force-truncate",
    help="强制清空选中的表；示例：python -m forcetrunc.cli.main force-truncate --schemas Sales --tables SalesOrderDetail --what-if；常见错误：同时指定 --all-tables 与名称列表、例外列表不成对",
)
def cmd_force_truncate(
    schemas: str | None = typer.Option(None, "--schemas", help="模式名列表（分隔符分隔，可含通配符）"),
    tables: str | None = typer.Option(None, "--tables", help="表名列表（分隔符分隔，可含通配符）"),
    all_tables: bool = typer.Option(False, "--all-tables", help="选择库内全部用户表"),
    delimiter: str | None = typer.Option(None, "--delimiter", help="列表分隔符（默认 truncate.yaml）"),
    what_if: bool = typer.Option(False, "--what-if", help="只打印将要执行的命令，不做任何变更"),
    continue_on_error: bool = typer.Option(
        False, "--continue-on-error", help="重建阶段尽力模式：单个对象失败不回滚整体"
    ),
    row_count_threshold: int | None = typer.Option(
        None, "--row-count-threshold", help="行数严格大于该值才清空"
    ),
    schemas_except: str | None = typer.Option(None, "--schemas-except", help="例外模式名列表"),
    tables_except: str | None = typer.Option(None, "--tables-except", help="例外表名列表"),
    wildcard: str | None = typer.Option(None, "--wildcard", help="通配符哨兵（默认 *）"),
    batch_size: int | None = typer.Option(None, "--batch-size", help="行数探测批大小"),
    reenable_cdc: bool | None = typer.Option(
        None, "--reenable-cdc/--no-reenable-cdc", help="清空后重新启用 CDC", show_default=False
    ),
    recreate_articles: bool | None = typer.Option(
        None,
        "--recreate-articles/--no-recreate-articles",
        help="清空后重建发布项目",
        show_default=False,
    ),
    irreproducible_policy: str | None = typer.Option(
        None, "--irreproducible-policy", help="加密定义处理策略：fail|drop"
    ),
    config_dir: str = config_dir_option,
    log_run: bool | None = log_run_option,
    log_dir: str | None = log_dir_option,
    log_format: str | None = log_format_option,
    log_routing: str | None = log_routing_option,
    console_level: str | None = log_console_level_option,
    quiet: bool | None = quiet_option,
) -> None:
    """强制清空：
    - 解析选择器与例外列表，按行数阈值筛选
    - 扫描外键、schema-bound 视图（含索引/触发器）、CDC、发布项目
    - 单个事务内：拆除 → TRUNCATE → 重建 → 采集清空后行数
    - --what-if 时打印命令脚本（每条命令后跟 GO）与汇总
    """
    from forcetrunc.schemas.options import build_options
    from forcetrunc.services.truncate import (
        force_truncate,
        render_errors,
        render_plan,
        render_summary,
    )

    try:
        settings = load_settings(Path(config_dir))
        options = build_options(
            settings.truncate,
            schema_names=schemas,
            table_names=tables,
            truncate_all_tables=all_tables,
            delimiter=delimiter,
            what_if=what_if,
            continue_on_error=continue_on_error,
            row_count_threshold=row_count_threshold,
            schemas_except=schemas_except,
            tables_except=tables_except,
            wildcard=wildcard,
            batch_size=batch_size,
            reenable_cdc=reenable_cdc,
            recreate_published_articles=recreate_articles,
            irreproducible_policy=irreproducible_policy,
        )
    except BaseAppException as e:
        _fail(e)
        return

    _init_logs(
        settings,
        log_run,
        log_dir,
        log_format,
        log_routing,
        console_level,
        quiet,
        args_summary={"command": "force-truncate", "options": options.summary()},
    )

    # pyodbc 依赖系统 ODBC 驱动，参数校验通过后再导入
    from forcetrunc.adapters.db import SqlServerCatalog, SqlServerEngine, get_conn

    sql_cfg = settings.logging.sql
    try:
        with get_conn(settings) as conn:
            result = force_truncate(
                SqlServerCatalog(conn, sql_cfg.text, sql_cfg.max_sql_length),
                SqlServerEngine(conn, sql_cfg.text, sql_cfg.max_sql_length),
                options,
            )
    except BaseAppException as e:
        _fail(e)
        return

    if result.what_if and result.plan:
        typer.echo(render_plan(result.plan))
        typer.echo("")
    for warning in result.warnings:
        typer.echo(f"[WARN] {warning}")
    typer.echo(render_summary(result))
    errors = render_errors(result)
    if errors:
        typer.echo("")
        typer.echo(errors)
    typer.echo(
        f"{result.phase.value}: truncated {result.tables_truncated} table(s), {len(result.errors)} error(s)"
    )


if __name__ == "__main__":
    app()
