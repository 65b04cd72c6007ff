from __future__ import annotations

"""
SQL Server 目录查询（adapters.db.catalog）

只读查询，返回 core.types 中的行类型：
- 用户表、外键列、schema-bound 视图（含引用关系）、视图索引/触发器/扩展属性
- CDC 实例（cdc.change_tables × cdc.captured_columns）
- 发布项目（sysarticles × syspublications，并按发布调用 sp_helparticle 补充）

注意：
- 对象 id 集合统一通过 STRING_SPLIT 传入（避免 2100 个参数上限）
- 与引擎共用连接，事务内查询能看到未提交的变更（用于 TRUNCATE 后的非空校验）
"""


import logging
import time
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pyodbc

from forcetrunc.core.exceptions import DatabaseError
from forcetrunc.core.types import (
    ArticleInfo,
    CdcInstanceInfo,
    ExtendedProperty,
    ForeignKeyColumn,
    IndexColumn,
    TableInfo,
    ViewIndexInfo,
    ViewInfo,
    ViewTriggerInfo,
)
from forcetrunc.utils.logging_ext import log_sql_execution, log_sql_statement, summarize_sql
from forcetrunc.utils.tsql import qualified

logger = logging.getLogger(__name__)

_ID_SET = "SELECT CAST([value] AS INT) FROM STRING_SPLIT(?, ',')"

SQL_LIST_TABLES = """
SELECT [t].[object_id], [t].[schema_id], [s].[name], [t].[name], [t].[temporal_type]
FROM sys.tables AS [t]
JOIN sys.schemas AS [s] ON [s].[schema_id] = [t].[schema_id]
WHERE [t].[is_ms_shipped] = 0
ORDER BY [s].[name], [t].[name];
"""

SQL_FOREIGN_KEY_COLUMNS = f"""
SELECT [fk].[object_id]
     , [fk].[name]
     , SCHEMA_NAME([src].[schema_id])
     , [src].[name]
     , [sc].[name]
     , [fk].[referenced_object_id]
     , SCHEMA_NAME([trg].[schema_id])
     , [trg].[name]
     , [tc].[name]
     , [fkc].[referenced_column_id]
     , [fk].[delete_referential_action]
     , [fk].[update_referential_action]
FROM sys.foreign_keys AS [fk]
JOIN sys.foreign_key_columns AS [fkc] ON [fkc].[constraint_object_id] = [fk].[object_id]
JOIN sys.tables AS [src] ON [src].[object_id] = [fk].[parent_object_id]
JOIN sys.columns AS [sc]
    ON [sc].[object_id] = [fkc].[parent_object_id] AND [sc].[column_id] = [fkc].[parent_column_id]
JOIN sys.tables AS [trg] ON [trg].[object_id] = [fk].[referenced_object_id]
JOIN sys.columns AS [tc]
    ON [tc].[object_id] = [fkc].[referenced_object_id]
   AND [tc].[column_id] = [fkc].[referenced_column_id]
WHERE [fk].[referenced_object_id] IN ({_ID_SET})
ORDER BY [src].[name], [fk].[name], [fkc].[referenced_column_id];
"""

SQL_SCHEMA_BOUND_VIEWS = f"""
SELECT DISTINCT [v].[object_id], SCHEMA_NAME([v].[schema_id]), [v].[name], [m].[definition]
FROM sys.sql_expression_dependencies AS [d]
JOIN sys.views AS [v] ON [v].[object_id] = [d].[referencing_id]
JOIN sys.sql_modules AS [m] ON [m].[object_id] = [v].[object_id]
WHERE [m].[is_schema_bound] = 1
AND   [d].[referenced_id] IN ({_ID_SET});
"""

SQL_VIEW_REFERENCES = f"""
SELECT DISTINCT [referencing_id], [referenced_id]
FROM sys.sql_expression_dependencies
WHERE [referenced_id] IS NOT NULL
AND   [referencing_id] IN ({_ID_SET});
"""

SQL_VIEW_INDEXES = """
SELECT [i].[index_id], [i].[name], [i].[type], [i].[is_unique], [i].[filter_definition]
     , [c].[name], [ic].[is_descending_key], [ic].[is_included_column]
FROM sys.indexes AS [i]
JOIN sys.index_columns AS [ic]
    ON [ic].[object_id] = [i].[object_id] AND [ic].[index_id] = [i].[index_id]
JOIN sys.columns AS [c]
    ON [c].[object_id] = [ic].[object_id] AND [c].[column_id] = [ic].[column_id]
WHERE [i].[object_id] = ?
AND   [i].[type] IN (1, 2)
ORDER BY [i].[type], [i].[index_id], [ic].[is_included_column], [ic].[key_ordinal], [ic].[index_column_id];
"""

SQL_VIEW_TRIGGERS = """
SELECT [tr].[name], [m].[definition], [tr].[is_disabled]
FROM sys.triggers AS [tr]
LEFT JOIN sys.sql_modules AS [m] ON [m].[object_id] = [tr].[object_id]
WHERE [tr].[parent_id] = ?
ORDER BY [tr].[name];
"""

SQL_EXTENDED_PROPERTIES = """
SELECT CAST([name] AS NVARCHAR(128)), CAST([value] AS NVARCHAR(MAX))
FROM sys.fn_listextendedproperty(NULL, N'SCHEMA', ?, N'VIEW', ?, NULL, NULL)
ORDER BY [name];
"""

SQL_CDC_INSTANCES = f"""
SELECT [ct].[object_id], [ct].[source_object_id], SCHEMA_NAME([t].[schema_id]), [t].[name]
     , [ct].[capture_instance], [ct].[supports_net_changes], [ct].[role_name]
     , [ct].[index_name], [ct].[filegroup_name], [ct].[partition_switch]
FROM cdc.change_tables AS [ct]
JOIN sys.tables AS [t] ON [t].[object_id] = [ct].[source_object_id]
WHERE [ct].[source_object_id] IN ({_ID_SET})
ORDER BY [t].[name], [ct].[capture_instance];
"""

SQL_CDC_CAPTURED_COLUMNS = f"""
SELECT [object_id], [column_name]
FROM cdc.captured_columns
WHERE [object_id] IN ({_ID_SET})
ORDER BY [object_id], [column_ordinal];
"""

SQL_ARTICLES = f"""
SELECT [sp].[pubid], [sa].[artid], [sp].[name], [sa].[name], [sa].[objid], [sa].[dest_table]
     , [sa].[type], [sa].[ins_cmd], [sa].[del_cmd], [sa].[upd_cmd], [sa].[creation_script]
     , [sa].[description], [sa].[pre_creation_cmd], [sa].[filter_clause], [sa].[schema_option]
     , [sa].[dest_owner], [sa].[fire_triggers_on_snapshot]
FROM [dbo].[sysarticles] AS [sa]
JOIN [dbo].[syspublications] AS [sp] ON [sp].[pubid] = [sa].[pubid]
WHERE [sa].[objid] IN ({_ID_SET})
ORDER BY [sp].[name], [sa].[name];
"""

# sp_helparticle 结果列 -> ArticleInfo 字段
_HELPARTICLE_FIELDS = {
    "filter": "filter",
    "source_owner": "source_owner",
    "sync_object_owner": "sync_object_owner",
    "filter_owner": "filter_owner",
    "unqua_source_object": "source_object",
    "publisher_identity_range": "pub_identity_range",
    "identity_range": "identity_range",
    "threshold": "threshold",
    "identityrangemanagementoption": "identity_range_management_code",
}


def _id_list(object_ids: Iterable[int]) -> str:
    return ",".join(str(int(i)) for i in object_ids)


class SqlServerCatalog:
    def __init__(self, conn: pyodbc.Connection, sql_text: str = "full", max_sql_length: int = 2000):
        self.conn = conn
        self.sql_text = sql_text
        self.max_sql_length = max_sql_length

    def _query(
        self, sql: str, params: Sequence[Any] = (), label: str = "SELECT"
    ) -> Tuple[List[Any], List[str]]:
        started = time.perf_counter()
        log_sql_statement(sql)
        cur = self.conn.cursor()
        try:
            cur.execute(sql, *params)
            columns = [d[0] for d in cur.description] if cur.description else []
            rows = cur.fetchall() if cur.description else []
        except pyodbc.Error as e:
            log_sql_execution(
                "SELECT",
                summarize_sql(sql, "summary", 200) or "",
                (time.perf_counter() - started) * 1000,
                object_name=label,
                error=str(e),
            )
            raise DatabaseError(
                f"目录查询失败 ({label}): {e}",
                context={"sql": summarize_sql(sql, self.sql_text, self.max_sql_length)},
                cause=e,
            ) from e
        finally:
            cur.close()
        log_sql_execution(
            "SELECT",
            summarize_sql(sql, "summary", 200) or "",
            (time.perf_counter() - started) * 1000,
            object_name=label,
        )
        return rows, columns

    def _rows(self, sql: str, params: Sequence[Any] = (), label: str = "SELECT") -> List[Any]:
        return self._query(sql, params, label)[0]

    # ------------------------------------------------------------------
    # 表与行数
    # ------------------------------------------------------------------

    def database_name(self) -> str:
        return self._rows("SELECT DB_NAME();", label="database_name")[0][0]

    def schema_exists(self, name: str) -> bool:
        return bool(self._rows("SELECT 1 FROM sys.schemas WHERE [name] = ?;", (name,), "schema_exists"))

    def list_tables(self) -> List[TableInfo]:
        return [
            TableInfo(int(r[0]), int(r[1]), r[2], r[3], int(r[4] or 0))
            for r in self._rows(SQL_LIST_TABLES, label="list_tables")
        ]

    def count_rows(self, tables: Sequence[Tuple[int, str, str]]) -> Dict[int, int]:
        if not tables:
            return {}
        sql = "\nUNION ALL\n".join(
            f"SELECT {int(object_id)}, COUNT_BIG(1) FROM {qualified(schema, name)}"
            for object_id, schema, name in tables
        )
        return {int(r[0]): int(r[1]) for r in self._rows(sql + ";", label="count_rows")}

    def has_rows(self, schema: str, table: str) -> bool:
        sql = f"SELECT TOP (1) 1 FROM {qualified(schema, table)};"
        return bool(self._rows(sql, label="has_rows"))

    # ------------------------------------------------------------------
    # 外键与视图
    # ------------------------------------------------------------------

    def foreign_key_columns(self, object_ids: Sequence[int]) -> List[ForeignKeyColumn]:
        if not object_ids:
            return []
        rows = self._rows(SQL_FOREIGN_KEY_COLUMNS, (_id_list(object_ids),), "foreign_keys")
        return [
            ForeignKeyColumn(
                foreign_key_id=int(r[0]),
                foreign_key_name=r[1],
                source_schema=r[2],
                source_table=r[3],
                source_column=r[4],
                target_object_id=int(r[5]),
                target_schema=r[6],
                target_table=r[7],
                target_column=r[8],
                target_column_id=int(r[9]),
                delete_action=int(r[10]),
                update_action=int(r[11]),
            )
            for r in rows
        ]

    def schema_bound_views(self, object_ids: Sequence[int]) -> List[ViewInfo]:
        if not object_ids:
            return []
        views = self._rows(SQL_SCHEMA_BOUND_VIEWS, (_id_list(object_ids),), "schema_bound_views")
        if not views:
            return []
        refs: Dict[int, set[int]] = {}
        for referencing, referenced in self._rows(
            SQL_VIEW_REFERENCES, (_id_list(r[0] for r in views),), "view_references"
        ):
            refs.setdefault(int(referencing), set()).add(int(referenced))
        return [
            ViewInfo(
                object_id=int(r[0]),
                schema_name=r[1],
                view_name=r[2],
                definition=r[3],
                referenced_ids=frozenset(refs.get(int(r[0]), ())),
            )
            for r in views
        ]

    def view_indexes(self, view_id: int) -> List[ViewIndexInfo]:
        grouped: Dict[int, Dict[str, Any]] = {}
        for r in self._rows(SQL_VIEW_INDEXES, (int(view_id),), "view_indexes"):
            entry = grouped.setdefault(
                int(r[0]),
                {
                    "index_name": r[1],
                    "is_clustered": int(r[2]) == 1,
                    "is_unique": bool(r[3]),
                    "filter_definition": r[4],
                    "columns": [],
                },
            )
            entry["columns"].append(IndexColumn(r[5], bool(r[6]), bool(r[7])))
        return [
            ViewIndexInfo(
                index_name=e["index_name"],
                is_clustered=e["is_clustered"],
                is_unique=e["is_unique"],
                columns=tuple(e["columns"]),
                filter_definition=e["filter_definition"],
            )
            for e in grouped.values()
        ]

    def view_triggers(self, view_id: int) -> List[ViewTriggerInfo]:
        return [
            ViewTriggerInfo(r[0], r[1], bool(r[2]))
            for r in self._rows(SQL_VIEW_TRIGGERS, (int(view_id),), "view_triggers")
        ]

    def extended_properties(self, schema: str, view: str) -> List[ExtendedProperty]:
        return [
            ExtendedProperty(r[0], r[1])
            for r in self._rows(SQL_EXTENDED_PROPERTIES, (schema, view), "extended_properties")
        ]

    # ------------------------------------------------------------------
    # CDC
    # ------------------------------------------------------------------

    def is_cdc_enabled(self) -> bool:
        rows = self._rows(
            "SELECT [is_cdc_enabled] FROM sys.databases WHERE [database_id] = DB_ID();",
            label="is_cdc_enabled",
        )
        return bool(rows and rows[0][0])

    def cdc_tracked_table_ids(self, object_ids: Sequence[int]) -> List[int]:
        if not object_ids:
            return []
        sql = f"SELECT [object_id] FROM sys.tables WHERE [is_tracked_by_cdc] = 1 AND [object_id] IN ({_ID_SET});"
        return [int(r[0]) for r in self._rows(sql, (_id_list(object_ids),), "cdc_tracked")]

    def cdc_instances(self, object_ids: Sequence[int]) -> List[CdcInstanceInfo]:
        if not object_ids:
            return []
        rows = self._rows(SQL_CDC_INSTANCES, (_id_list(object_ids),), "cdc_instances")
        if not rows:
            return []
        columns: Dict[int, List[str]] = {}
        for change_table_id, column_name in self._rows(
            SQL_CDC_CAPTURED_COLUMNS, (_id_list(r[0] for r in rows),), "cdc_captured_columns"
        ):
            columns.setdefault(int(change_table_id), []).append(column_name)
        return [
            CdcInstanceInfo(
                change_table_id=int(r[0]),
                source_object_id=int(r[1]),
                source_schema=r[2],
                source_name=r[3],
                capture_instance=r[4],
                supports_net_changes=bool(r[5]),
                role_name=r[6],
                index_name=r[7],
                captured_columns=tuple(columns.get(int(r[0]), ())),
                filegroup_name=r[8],
                allow_partition_switch=bool(r[9]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # 发布项目
    # ------------------------------------------------------------------

    def published_table_ids(self, object_ids: Sequence[int]) -> List[int]:
        if not object_ids:
            return []
        sql = (
            "SELECT [object_id] FROM sys.tables "
            "WHERE ([is_published] = 1 OR [is_merge_published] = 1 OR [is_schema_published] = 1) "
            f"AND [object_id] IN ({_ID_SET});"
        )
        return [int(r[0]) for r in self._rows(sql, (_id_list(object_ids),), "published_tables")]

    def _help_article(self, publication: str) -> Dict[int, Dict[str, Any]]:
        rows, columns = self._query(
            "EXEC sys.sp_helparticle @publication = ?;", (publication,), "sp_helparticle"
        )
        result: Dict[int, Dict[str, Any]] = {}
        for r in rows:
            record = dict(zip(columns, r))
            result[int(record["article id"])] = record
        return result

    def articles(self, object_ids: Sequence[int]) -> List[ArticleInfo]:
        if not object_ids:
            return []
        rows = self._rows(SQL_ARTICLES, (_id_list(object_ids),), "articles")
        articles = [
            ArticleInfo(
                publication_id=int(r[0]),
                article_id=int(r[1]),
                publication=r[2],
                article=r[3],
                source_object_id=int(r[4]),
                destination_table=r[5],
                type_code=None if r[6] is None else int(r[6]),
                ins_cmd=r[7],
                del_cmd=r[8],
                upd_cmd=r[9],
                creation_script=r[10],
                description=r[11],
                pre_creation_code=None if r[12] is None else int(r[12]),
                filter_clause=r[13],
                schema_option=None if r[14] is None else bytes(r[14]),
                destination_owner=r[15],
                fire_triggers_on_snapshot=bool(r[16]),
            )
            for r in rows
        ]

        helped: Dict[str, Dict[int, Dict[str, Any]]] = {}
        merged: List[ArticleInfo] = []
        for info in articles:
            if info.publication not in helped:
                helped[info.publication] = self._help_article(info.publication)
            extra = helped[info.publication].get(info.article_id)
            if extra is None:
                merged.append(info)
                continue
            changes: Dict[str, Optional[Any]] = {
                field: extra.get(column) for column, field in _HELPARTICLE_FIELDS.items()
            }
            auto = extra.get("auto_identity_range")
            changes["auto_identity_range"] = None if auto is None else bool(auto)
            merged.append(replace(info, **changes))
        return merged
