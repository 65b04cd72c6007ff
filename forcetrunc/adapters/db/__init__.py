from forcetrunc.adapters.db.catalog import SqlServerCatalog
from forcetrunc.adapters.db.engine import SqlServerEngine
from forcetrunc.adapters.db.gateway import conn_str_preview, connect, get_conn, make_conn_str

__all__ = [
    "SqlServerCatalog",
    "SqlServerEngine",
    "conn_str_preview",
    "connect",
    "get_conn",
    "make_conn_str",
]
