from contextlib import contextmanager
from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import build_sales_db
from forcetrunc import __version__
from forcetrunc.cli.main import app

runner = CliRunner()


def _config_dir(tmp_path: Path, database: str = "server: sql01\nuser: loader\n") -> Path:
    cdir = tmp_path / "configs"
    cdir.mkdir(parents=True, exist_ok=True)
    (cdir / "database.yaml").write_text(database, encoding="utf-8")
    (cdir / "logging.yaml").write_text("level: INFO\nformat: text\n", encoding="utf-8")
    (cdir / "truncate.yaml").write_text("batch_size: 3\n", encoding="utf-8")
    return cdir


def test_cli_help():
    r = runner.invoke(app, ["--help"])
    assert r.exit_code == 0
    assert "force-truncate" in r.output
    assert "check-config" in r.output


def test_cli_version():
    r = runner.invoke(app, ["version"])
    assert r.exit_code == 0
    assert r.output.strip() == f"forcetrunc {__version__}"


def test_cli_check_config(tmp_path):
    cdir = _config_dir(tmp_path)
    r = runner.invoke(app, ["check-config", "--config-dir", str(cdir)])
    assert r.exit_code == 0
    assert "database: sql01,1433/master" in r.output
    assert '"batch_size": "YAML"' in r.output
    assert "config ok" in r.output


def test_cli_check_config_invalid(tmp_path):
    cdir = _config_dir(tmp_path, database="server: sql01\nport: 0\nuser: loader\n")
    r = runner.invoke(app, ["check-config", "--config-dir", str(cdir)])
    assert r.exit_code == 1
    assert "[ERROR]" in r.output


def test_cli_force_truncate_rejects_invalid_option(tmp_path):
    cdir = _config_dir(tmp_path)
    r = runner.invoke(
        app,
        [
            "force-truncate",
            "--config-dir",
            str(cdir),
            "--all-tables",
            "--irreproducible-policy",
            "ignore",
        ],
    )
    assert r.exit_code == 1
    assert "[ERROR]" in r.output


@pytest.fixture
def fake_connection(monkeypatch):
    """用内存替身替换真实连接；pyodbc 需要系统 ODBC 库"""
    pytest.importorskip("pyodbc")
    import forcetrunc.adapters.db as db_adapter

    database = build_sales_db()

    @contextmanager
    def _get_conn(settings):
        yield database

    monkeypatch.setattr(db_adapter, "get_conn", _get_conn)
    monkeypatch.setattr(db_adapter, "SqlServerCatalog", lambda conn, *a: conn.catalog())
    monkeypatch.setattr(db_adapter, "SqlServerEngine", lambda conn, *a: conn.engine())
    return database


def test_cli_force_truncate_what_if(tmp_path, fake_connection):
    cdir = _config_dir(tmp_path)
    r = runner.invoke(
        app,
        [
            "force-truncate",
            "--config-dir",
            str(cdir),
            "--schemas",
            "Sales",
            "--tables",
            "SalesOrderHeader,SalesOrderDetail",
            "--what-if",
        ],
    )
    assert r.exit_code == 0, r.output
    assert "DROP VIEW [Sales].[vOrderTotalsSummary];\nGO" in r.output
    assert "SchemaName" in r.output
    assert "Committed: truncated 2 table(s), 0 error(s)" in r.output
    assert fake_connection.executed == []


def test_cli_force_truncate_selector_conflict(tmp_path, fake_connection):
    cdir = _config_dir(tmp_path)
    r = runner.invoke(
        app,
        ["force-truncate", "--config-dir", str(cdir), "--all-tables", "--schemas", "Sales"],
    )
    assert r.exit_code == 1
    assert "[ERROR] Either specify schema/table name lists or truncate_all_tables" in r.output
    assert fake_connection.events == []


def test_cli_force_truncate_runs(tmp_path, fake_connection):
    cdir = _config_dir(tmp_path)
    r = runner.invoke(
        app,
        [
            "force-truncate",
            "--config-dir",
            str(cdir),
            "--schemas",
            "Sales",
            "--tables",
            "*",
            "--schemas-except",
            "Sales",
            "--tables-except",
            "Customer",
        ],
    )
    assert r.exit_code == 0, r.output
    assert "Committed: truncated 2 table(s), 0 error(s)" in r.output
    assert fake_connection.events[-1] == "COMMIT"
