import pytest

from conftest import SALES_TABLES
from forcetrunc.core.exceptions import (
    CommandExecutionError,
    IrreproducibleDefinitionError,
    ReconciliationError,
    SelectorValidationError,
    StructuralImpossibilityError,
)
from forcetrunc.services.truncate import render_errors, render_plan, render_summary
from forcetrunc.services.truncate.models import CommandAction, DependencyKind, Phase
from forcetrunc.services.truncate.service import NOTHING_TO_TRUNCATE


def _rows(db):
    return {t.table_name: t.rows for t in db.state.tables.values()}


def _row(result, table_name):
    return next(r for r in result.rows if r.table_name == table_name)


# ---------------------------------------------------------------------------
# 选择器互斥：两种模式都给或都不给，在任何变更之前失败
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(truncate_all_tables=True, **SALES_TABLES),
        dict(),
        dict(schema_names="Sales"),
        dict(table_names="SalesOrderHeader"),
    ],
)
def test_selector_modes_are_exclusive(db, run_truncate, kwargs):
    before = db.metadata()
    with pytest.raises(SelectorValidationError):
        run_truncate(db, **kwargs)
    assert db.executed == []
    assert db.events == []
    assert db.count_rows_calls == []
    assert db.metadata() == before


# ---------------------------------------------------------------------------
# 完整往返：拆除 → 清空 → 重建后，依赖与原来一致、表为空
# ---------------------------------------------------------------------------


def test_round_trip_restores_every_dependency(db, run_truncate):
    before = db.metadata()
    rows_before = _rows(db)

    result = run_truncate(db, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert result.errors == []
    assert result.fully_restored
    assert db.metadata() == before

    rows_after = _rows(db)
    for name in ("SalesOrderHeader", "SalesOrderDetail", "Product", "Customer"):
        assert rows_after[name] == 0
        assert _row(result, name).row_count_after == 0
        assert _row(result, name).is_truncated
    for name in ("ErrorLog", "Employee", "EmployeeHistory"):
        assert rows_after[name] == rows_before[name]

    # 一个环境事务：只有一次 BEGIN / COMMIT
    assert db.events[0] == "BEGIN"
    assert db.events[-1] == "COMMIT"
    assert db.events.count("BEGIN") == 1


def test_teardown_and_reconstruct_order(db, run_truncate):
    run_truncate(db, **SALES_TABLES)
    actions = [c.action for c in db.executed]
    names = [f"{c.action.value} {c.object_name}" for c in db.executed]

    # 拆除：外键 → 视图（外层先删）→ CDC → 发布项目
    teardown = actions[: actions.index(CommandAction.TRUNCATE_TABLE)]
    assert teardown == [
        CommandAction.DROP_FOREIGN_KEY,
        CommandAction.DROP_FOREIGN_KEY,
        CommandAction.DROP_FOREIGN_KEY,
        CommandAction.DROP_VIEW,
        CommandAction.DROP_VIEW,
        CommandAction.DISABLE_CDC,
        CommandAction.DROP_ARTICLE,
    ]
    assert names.index("drop_view [Sales].[vOrderTotalsSummary]") < names.index(
        "drop_view [Sales].[vOrderTotals]"
    )

    # 重建：发布项目 → CDC → 视图（内层先建，索引聚集优先，再触发器）→ 外键
    last_truncate = max(i for i, a in enumerate(actions) if a is CommandAction.UPDATE_STATISTICS)
    assert actions[last_truncate + 1 :] == [
        CommandAction.ADD_ARTICLE,
        CommandAction.ENABLE_CDC,
        CommandAction.CREATE_VIEW,
        CommandAction.ADD_EXTENDED_PROPERTY,
        CommandAction.CREATE_VIEW_INDEX,
        CommandAction.CREATE_VIEW_INDEX,
        CommandAction.CREATE_VIEW_TRIGGER,
        CommandAction.DISABLE_VIEW_TRIGGER,
        CommandAction.CREATE_VIEW,
        CommandAction.ADD_FOREIGN_KEY,
        CommandAction.ADD_FOREIGN_KEY,
        CommandAction.ADD_FOREIGN_KEY,
    ]


def test_per_table_counters(db, run_truncate):
    result = run_truncate(db, **SALES_TABLES)
    header = _row(result, "SalesOrderHeader").counters
    assert header[DependencyKind.FOREIGN_KEY.value] == {
        "referencing": 1,
        "dropped": 1,
        "recreated": 1,
    }
    # 两层视图都阻塞 SalesOrderHeader
    assert header[DependencyKind.SCHEMA_BOUND_VIEW.value]["referencing"] == 2
    assert header[DependencyKind.PUBLICATION_ARTICLE.value]["recreated"] == 1
    detail = _row(result, "SalesOrderDetail").counters
    assert detail[DependencyKind.FOREIGN_KEY.value]["referencing"] == 0
    assert detail[DependencyKind.CDC_INSTANCE.value]["recreated"] == 1

    assert result.totals[DependencyKind.VIEW_INDEX.value]["recreated"] == 2
    assert result.totals[DependencyKind.VIEW_TRIGGER.value]["recreated"] == 1


def test_summary_sorted_by_row_count(db, run_truncate):
    result = run_truncate(db, **SALES_TABLES)
    assert [r.table_name for r in result.rows] == [
        "SalesOrderDetail",
        "SalesOrderHeader",
        "Customer",
        "Product",
    ]
    text = render_summary(result)
    assert text.splitlines()[0].startswith("SchemaName  TableName")
    assert "NumFkReferencing" in text
    assert render_errors(result) == ""


# ---------------------------------------------------------------------------
# 默认模式全有或全无：任一阶段失败都回滚到运行前状态
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "action, phase",
    [
        (CommandAction.DROP_FOREIGN_KEY, Phase.TEARING_DOWN),
        (CommandAction.DROP_VIEW, Phase.TEARING_DOWN),
        (CommandAction.DISABLE_CDC, Phase.TEARING_DOWN),
        (CommandAction.DROP_ARTICLE, Phase.TEARING_DOWN),
        (CommandAction.TRUNCATE_TABLE, Phase.TRUNCATING),
        (CommandAction.ADD_ARTICLE, Phase.RECONSTRUCTING),
        (CommandAction.ENABLE_CDC, Phase.RECONSTRUCTING),
        (CommandAction.ADD_EXTENDED_PROPERTY, Phase.RECONSTRUCTING),
        (CommandAction.CREATE_VIEW_INDEX, Phase.RECONSTRUCTING),
        (CommandAction.CREATE_VIEW_TRIGGER, Phase.RECONSTRUCTING),
        (CommandAction.ADD_FOREIGN_KEY, Phase.RECONSTRUCTING),
    ],
)
def test_default_mode_rolls_back_everything(db, run_truncate, action, phase):
    before = db.metadata()
    rows_before = _rows(db)
    db.fail_on(action, message="synthetic failure")

    with pytest.raises(CommandExecutionError) as exc_info:
        run_truncate(db, **SALES_TABLES)

    err = exc_info.value
    assert err.phase == phase.value
    assert err.action == action.value
    assert "synthetic failure - when executing: " in err.message
    assert db.metadata() == before
    assert _rows(db) == rows_before
    assert db.events[-1] == "ROLLBACK"


def test_table_still_holding_rows_after_truncate_is_fatal(db, run_truncate):
    before = db.metadata()
    db.keep_rows.add(db.table_id("Sales", "Customer"))

    with pytest.raises(ReconciliationError) as exc_info:
        run_truncate(db, **SALES_TABLES)

    assert "[Sales].[Customer]" in exc_info.value.message
    assert exc_info.value.context["phase"] == Phase.TRUNCATING.value
    assert db.metadata() == before
    assert db.rows(db.table_id("Sales", "SalesOrderHeader")) == 31465


# ---------------------------------------------------------------------------
# 尽力模式：单个重建失败只记录，其他工作保留
# ---------------------------------------------------------------------------


def test_best_effort_keeps_other_work(db, run_truncate):
    failing = "[Sales].[SalesOrderDetail].[FK_SalesOrderDetail_Product_ProductID]"
    db.fail_on(CommandAction.ADD_FOREIGN_KEY, object_name=failing, message="boom")

    result = run_truncate(db, continue_on_error=True, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert result.best_effort
    assert not result.fully_restored
    assert result.tables_truncated == 4
    assert db.rows(db.table_id("Sales", "SalesOrderHeader")) == 0

    fk_names = {fk.name for fk in db.state.foreign_keys.values()}
    assert fk_names == {
        "FK_SalesOrderDetail_SalesOrderHeader_SalesOrderID",
        "FK_SalesOrderHeader_Customer_CustomerID",
    }
    # 其余依赖都已重建
    assert "Sales_SalesOrderDetail" in db.state.cdc_instances
    assert db.view_id("Sales", "vOrderTotalsSummary") is not None

    # 依赖记录上的错误在前，被阻塞表上的错误在后
    fk_error, table_error = result.errors
    assert fk_error.kind == "FK Constraints"
    assert fk_error.object_name == failing
    assert "boom" in fk_error.message
    assert table_error.kind == "Table"
    assert table_error.object_name == "[Production].[Product]"
    product = _row(result, "Product")
    assert "boom" in product.error_message
    assert product.counters[DependencyKind.FOREIGN_KEY.value] == {
        "referencing": 1,
        "dropped": 1,
        "recreated": 0,
    }
    assert "ROLLBACK" in db.events
    assert db.events[-1] == "COMMIT"
    assert "ObjectKind" in render_errors(result)


def test_best_effort_view_failure_skips_children(db, run_truncate):
    db.fail_on(CommandAction.CREATE_VIEW, object_name="[Sales].[vOrderTotals]")

    result = run_truncate(db, continue_on_error=True, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert db.view_id("Sales", "vOrderTotals") is None
    failed = {e.object_name for e in result.errors}
    assert "[Sales].[vOrderTotals]" in failed
    # 内层视图缺失，外层视图与子对象都无法重建
    assert "[Sales].[vOrderTotalsSummary]" in failed
    assert "[Sales].[vOrderTotals].[IX_vOrderTotals]" in failed
    assert "[Sales].[tr_vOrderTotals_Insert]" in failed
    assert len(db.state.foreign_keys) == 3


def test_best_effort_extended_property_failure_keeps_view(db, run_truncate):
    db.fail_on(CommandAction.ADD_EXTENDED_PROPERTY, message="property rejected")

    result = run_truncate(db, continue_on_error=True, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    view_id = db.view_id("Sales", "vOrderTotals")
    assert view_id is not None
    view = db.state.views[view_id]
    assert view.extended_properties == []
    assert [ix.index_name for ix in view.indexes] == ["IX_vOrderTotals", "IX_vOrderTotals_Total"]
    assert [(t.trigger_name, t.is_disabled) for t in view.triggers] == [
        ("tr_vOrderTotals_Insert", True)
    ]
    assert db.view_id("Sales", "vOrderTotalsSummary") is not None

    # 失败记在视图上，视图本身仍计为已重建
    record_errors = [e for e in result.errors if e.kind != "Table"]
    assert [(e.kind, e.object_name) for e in record_errors] == [
        ("Schema-Bound Views", "[Sales].[vOrderTotals]")
    ]
    assert "property rejected" in record_errors[0].message
    assert result.totals[DependencyKind.SCHEMA_BOUND_VIEW.value]["recreated"] == 2
    assert result.totals[DependencyKind.VIEW_INDEX.value]["recreated"] == 2
    assert result.totals[DependencyKind.VIEW_TRIGGER.value]["recreated"] == 1
    assert "property rejected" in _row(result, "SalesOrderHeader").error_message


def test_best_effort_index_failure_keeps_sibling_index(db, run_truncate):
    failing = "[Sales].[vOrderTotals].[IX_vOrderTotals_Total]"
    db.fail_on(CommandAction.CREATE_VIEW_INDEX, object_name=failing)

    result = run_truncate(db, continue_on_error=True, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    view = db.state.views[db.view_id("Sales", "vOrderTotals")]
    assert [ix.index_name for ix in view.indexes] == ["IX_vOrderTotals"]
    assert [t.trigger_name for t in view.triggers] == ["tr_vOrderTotals_Insert"]
    assert view.extended_properties[0].name == "MS_Description"
    assert {e.object_name for e in result.errors if e.kind != "Table"} == {failing}
    assert result.totals[DependencyKind.VIEW_INDEX.value]["recreated"] == 1


def test_best_effort_article_failure_keeps_other_work(db, run_truncate):
    db.fail_on(CommandAction.ADD_ARTICLE, message="publication locked")

    result = run_truncate(db, continue_on_error=True, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert db.state.articles == {}
    assert not db.state.tables[db.table_id("Sales", "SalesOrderHeader")].published
    assert "Sales_SalesOrderDetail" in db.state.cdc_instances
    assert db.view_id("Sales", "vOrderTotalsSummary") is not None
    assert len(db.state.foreign_keys) == 3

    article_error = result.errors[0]
    assert article_error.kind == "Published Articles"
    assert article_error.object_name == "[AdvWorksSales].[SalesOrderHeader]"
    assert "publication locked" in article_error.message
    assert _row(result, "SalesOrderHeader").counters[
        DependencyKind.PUBLICATION_ARTICLE.value
    ] == {"referencing": 1, "dropped": 1, "recreated": 0}


def test_best_effort_row_count_probe_failure_is_recorded(db, run_truncate):
    detail = db.table_id("Sales", "SalesOrderDetail")
    db.fail_row_count_after_truncate.add(detail)

    result = run_truncate(db, continue_on_error=True, batch_size=1, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert "RowCountAfter probe failed" in _row(result, "SalesOrderDetail").error_message
    assert _row(result, "SalesOrderDetail").row_count_after is None
    assert _row(result, "Product").error_message is None


# ---------------------------------------------------------------------------
# WhatIf：只渲染，不修改；重复运行结果一致
# ---------------------------------------------------------------------------


def test_what_if_leaves_catalog_untouched(db, run_truncate):
    before = db.metadata()
    rows_before = _rows(db)

    first = run_truncate(db, what_if=True, **SALES_TABLES)
    second = run_truncate(db, what_if=True, **SALES_TABLES)

    assert db.executed == []
    assert db.events == []
    assert db.metadata() == before
    assert _rows(db) == rows_before

    assert first.phase is Phase.COMMITTED
    assert first.what_if
    assert [c.sql for c in first.plan] == [c.sql for c in second.plan]
    plan = render_plan(first.plan)
    assert "TRUNCATE TABLE [Sales].[SalesOrderHeader];\nGO" in plan
    assert "EXEC sys.sp_droparticle" in plan
    assert plan.count("\nGO") == len(first.plan)
    assert _row(first, "SalesOrderHeader").row_count_after == 31465
    assert first.tables_truncated == 4


def test_what_if_with_best_effort_flag_is_not_best_effort(db, run_truncate):
    result = run_truncate(db, what_if=True, continue_on_error=True, **SALES_TABLES)
    assert not result.best_effort
    assert db.events == []


# ---------------------------------------------------------------------------
# 例外列表与行数阈值
# ---------------------------------------------------------------------------


def test_exception_list_excludes_matching_table(db, run_truncate):
    for name in ("Alpha", "Beta", "Gamma"):
        db.add_table("Staging", name, rows=3)

    result = run_truncate(
        db, schema_names="Staging", table_names="*", schemas_except="stag", tables_except="bet"
    )

    flags = {r.table_name: (r.is_to_be_truncated, r.is_on_exception_list) for r in result.rows}
    assert flags == {
        "Alpha": (True, False),
        "Beta": (False, True),
        "Gamma": (True, False),
    }
    assert db.rows(db.table_id("Staging", "Beta")) == 3
    assert db.rows(db.table_id("Staging", "Alpha")) == 0


def test_wildcard_exception_matches_everything(db, run_truncate):
    result = run_truncate(db, schemas_except="*", tables_except="*", **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert result.warnings == [NOTHING_TO_TRUNCATE]
    assert all(r.is_on_exception_list and not r.is_to_be_truncated for r in result.rows)
    assert all(r.row_count_after is None for r in result.rows)
    assert db.events == []


def test_wildcard_mixed_with_text_is_rejected(db, run_truncate):
    with pytest.raises(SelectorValidationError) as exc_info:
        run_truncate(db, schemas_except="Sales", tables_except="Sales*", **SALES_TABLES)
    assert "must be used alone" in exc_info.value.message


def test_one_sided_exception_list_is_rejected(db, run_truncate):
    with pytest.raises(SelectorValidationError):
        run_truncate(db, tables_except="Customer", **SALES_TABLES)


@pytest.mark.parametrize(
    "threshold, expected",
    [(0, {"B10", "C11", "A5"}), (10, {"C11"}), (11, set())],
)
def test_row_count_threshold_is_strictly_greater(db, run_truncate, threshold, expected):
    for name, rows in (("A5", 5), ("B10", 10), ("C11", 11), ("Empty", 0)):
        db.add_table("Load", name, rows=rows)

    result = run_truncate(
        db, schema_names="Load", table_names="*", row_count_threshold=threshold
    )

    assert {r.table_name for r in result.rows if r.is_to_be_truncated} == expected
    assert {r.table_name for r in result.rows if r.is_truncated} == expected


# ---------------------------------------------------------------------------
# 结构性限制与不可还原定义
# ---------------------------------------------------------------------------


def test_history_table_is_rejected_before_any_work(db, run_truncate):
    with pytest.raises(StructuralImpossibilityError) as exc_info:
        run_truncate(db, schema_names="HumanResources", table_names="*")

    assert "[HumanResources].[EmployeeHistory]" in exc_info.value.message
    assert db.count_rows_calls == []
    assert db.executed == []


def test_excepted_history_table_is_skipped(db, run_truncate):
    result = run_truncate(
        db,
        schema_names="HumanResources",
        table_names="*",
        schemas_except="HumanResources",
        tables_except="History",
    )
    assert result.phase is Phase.COMMITTED
    assert db.rows(db.table_id("HumanResources", "Employee")) == 0
    assert db.rows(db.table_id("HumanResources", "EmployeeHistory")) == 12


def test_encrypted_view_fails_before_mutation_by_default(db, run_truncate):
    db.add_view("Sales", "vSecret", [db.table_id("Sales", "Customer")], encrypted=True)
    before = db.metadata()

    with pytest.raises(IrreproducibleDefinitionError) as exc_info:
        run_truncate(db, **SALES_TABLES)

    assert "[Sales].[vSecret]" in exc_info.value.message
    assert db.events == []
    assert db.metadata() == before


def test_encrypted_view_is_abandoned_under_drop_policy(db, run_truncate):
    secret = db.add_view("Sales", "vSecret", [db.table_id("Sales", "Customer")], encrypted=True)
    db.add_view_index(secret, "IX_vSecret", [], clustered=True, unique=True)

    result = run_truncate(db, irreproducible_policy="drop", **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert db.view_id("Sales", "vSecret") is None
    assert db.view_id("Sales", "vOrderTotals") is not None
    assert {e.object_name for e in result.errors} == {
        "[Sales].[vSecret]",
        "[Sales].[vSecret].[IX_vSecret]",
    }
    assert any("vSecret" in w for w in result.warnings)
    assert result.totals[DependencyKind.SCHEMA_BOUND_VIEW.value]["abandoned"] == 1


def test_encrypted_trigger_only_warns_in_what_if(db, run_truncate):
    view = db.view_id("Sales", "vOrderTotals")
    db.add_view_trigger(view, "tr_Secret", encrypted=True)

    result = run_truncate(db, what_if=True, **SALES_TABLES)

    assert result.phase is Phase.COMMITTED
    assert any("tr_Secret" in w for w in result.warnings)
    assert not any(c.object_name == "[Sales].[tr_Secret]" for c in result.plan)


def test_published_table_without_article_is_fatal(db, run_truncate):
    db.state.tables[db.table_id("Production", "Product")].published = True

    with pytest.raises(ReconciliationError) as exc_info:
        run_truncate(db, **SALES_TABLES)

    assert "[Production].[Product]" in exc_info.value.message
    assert db.events == []


def test_disabled_categories_are_not_recreated(db, run_truncate):
    result = run_truncate(
        db, reenable_cdc=False, recreate_published_articles=False, **SALES_TABLES
    )

    assert result.phase is Phase.COMMITTED
    assert db.state.cdc_instances == {}
    assert db.state.articles == {}
    assert len(db.state.foreign_keys) == 3
    header = _row(result, "SalesOrderHeader").counters
    assert header[DependencyKind.PUBLICATION_ARTICLE.value]["recreated"] == 0


def test_cdc_scan_skipped_when_database_not_enabled(run_truncate):
    from fake_db import FakeDatabase

    db = FakeDatabase(cdc_enabled=False)
    db.add_table("dbo", "Orders", rows=7)

    result = run_truncate(db, schema_names="dbo", table_names="Orders")

    assert result.phase is Phase.COMMITTED
    assert db.rows(db.table_id("dbo", "Orders")) == 0
    assert result.totals[DependencyKind.CDC_INSTANCE.value]["found"] == 0
