import pytest

from fake_db import FakeDatabase
from forcetrunc.core.types import IndexColumn
from forcetrunc.schemas.options import TruncateOptions
from forcetrunc.services.truncate import force_truncate

# 常用选择：Sales/Production 下四张有依赖关系的表
SALES_TABLES = dict(
    schema_names="Sales,Production",
    table_names="SalesOrderHeader,SalesOrderDetail,Product,Customer",
)


def build_sales_db() -> FakeDatabase:
    """
    AdventureWorks 风格的小库：
    - 3 个外键（其中 SalesOrderDetail → SalesOrderHeader 为 ON DELETE CASCADE）
    - 两层 schema-bound 视图（内层带扩展属性、聚集/非聚集索引、已禁用的触发器）
    - SalesOrderDetail 启用 CDC，SalesOrderHeader 已发布
    - 一张非 schema-bound 视图、一对时态表、一张空表
    """
    db = FakeDatabase()
    header = db.add_table(
        "Sales", "SalesOrderHeader", rows=31465, columns=["SalesOrderID", "CustomerID", "TotalDue"]
    )
    detail = db.add_table(
        "Sales",
        "SalesOrderDetail",
        rows=121317,
        columns=["SalesOrderID", "SalesOrderDetailID", "ProductID", "LineTotal"],
    )
    db.add_table("Sales", "Customer", rows=19820, columns=["CustomerID", "AccountNumber"])
    product = db.add_table("Production", "Product", rows=504, columns=["ProductID", "Name"])
    db.add_table("dbo", "ErrorLog", rows=0, columns=["ErrorLogID"])
    db.add_table("HumanResources", "Employee", rows=290, temporal_type=2)
    db.add_table("HumanResources", "EmployeeHistory", rows=12, temporal_type=1)

    db.add_foreign_key(
        "FK_SalesOrderDetail_SalesOrderHeader_SalesOrderID",
        ("Sales", "SalesOrderDetail"),
        ["SalesOrderID"],
        ("Sales", "SalesOrderHeader"),
        ["SalesOrderID"],
        delete_action=1,
    )
    db.add_foreign_key(
        "FK_SalesOrderDetail_Product_ProductID",
        ("Sales", "SalesOrderDetail"),
        ["ProductID"],
        ("Production", "Product"),
        ["ProductID"],
    )
    db.add_foreign_key(
        "FK_SalesOrderHeader_Customer_CustomerID",
        ("Sales", "SalesOrderHeader"),
        ["CustomerID"],
        ("Sales", "Customer"),
        ["CustomerID"],
    )

    totals = db.add_view(
        "Sales",
        "vOrderTotals",
        [header, detail],
        extended_properties=[("MS_Description", "Order totals, it's indexed")],
    )
    db.add_view_index(
        totals, "IX_vOrderTotals", [IndexColumn("SalesOrderID")], clustered=True, unique=True
    )
    db.add_view_index(
        totals,
        "IX_vOrderTotals_Total",
        [IndexColumn("LineTotal", descending=True), IndexColumn("CustomerID", included=True)],
    )
    db.add_view_trigger(totals, "tr_vOrderTotals_Insert", disabled=True)
    db.add_view("Sales", "vOrderTotalsSummary", [totals])
    db.add_view("Production", "vProductNames", [product], schema_bound=False)

    db.enable_cdc(
        detail,
        "Sales_SalesOrderDetail",
        columns=["SalesOrderID", "ProductID"],
        supports_net_changes=True,
        role_name="cdc_reader",
        index_name="PK_SalesOrderDetail",
    )
    db.publish(header, "AdvWorksSales", "SalesOrderHeader", auto_identity_range=False)
    return db


@pytest.fixture
def db() -> FakeDatabase:
    return build_sales_db()


@pytest.fixture
def run_truncate():
    """force_truncate 的快捷调用：run_truncate(db, **options)"""

    def _run(database: FakeDatabase, **kwargs):
        return force_truncate(database.catalog(), database.engine(), TruncateOptions(**kwargs))

    return _run
