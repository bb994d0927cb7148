from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from userkit.logging import get_logger
from userkit.storage.common import (
    TABLES,
    Filter,
    Order,
    TableSpec,
    check_columns,
    is_collection,
    normalize_order,
    parse_predicate,
    table_spec,
)
from userkit.storage.errors import ConstraintViolation


def build_where(filter: Optional[Filter]) -> Tuple[sql.Composable, List[Any]]:
    """Compose an AND-ed equality/IN filter into SQL plus parameters."""

    if not filter:
        return sql.SQL("TRUE"), []
    parts: List[sql.Composable] = []
    params: List[Any] = []
    for column, value in filter.items():
        ident = sql.Identifier(column)
        if is_collection(value):
            values = list(value)
            if not values:
                parts.append(sql.SQL("FALSE"))
                continue
            parts.append(sql.SQL("{} = ANY(%s)").format(ident))
            params.append(values)
        elif value is None:
            parts.append(sql.SQL("{} IS NULL").format(ident))
        else:
            parts.append(sql.SQL("{} = %s").format(ident))
            params.append(value)
    return sql.SQL(" AND ").join(parts), params


def build_exclude(exclude: Optional[Filter]) -> Tuple[sql.Composable, List[Any]]:
    if not exclude:
        return sql.SQL("TRUE"), []
    parts: List[sql.Composable] = []
    params: List[Any] = []
    for column, value in exclude.items():
        ident = sql.Identifier(column)
        if is_collection(value):
            parts.append(sql.SQL("NOT ({} = ANY(%s))").format(ident))
            params.append(list(value))
        else:
            parts.append(sql.SQL("{} IS DISTINCT FROM %s").format(ident))
            params.append(value)
    return sql.SQL(" AND ").join(parts), params


def build_order(spec: TableSpec, order: Optional[Order]) -> sql.Composable:
    pairs = normalize_order(spec, order)
    if not pairs:
        return sql.SQL("")
    return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(
        sql.SQL("{} {}").format(
            sql.Identifier(column), sql.SQL("DESC" if descending else "ASC")
        )
        for column, descending in pairs
    )


def build_predicate(
    spec: TableSpec, raw_predicate: str, params: Sequence[Any]
) -> Tuple[sql.Composable, List[Any]]:
    """Re-compose a validated raw predicate; the caller's text never reaches SQL."""

    clauses = parse_predicate(spec, raw_predicate, params)
    composed = sql.SQL(" AND ").join(
        sql.SQL("{} {} %s").format(sql.Identifier(c.column), sql.SQL(c.op))
        for c in clauses
    )
    return composed, [c.value for c in clauses]


def adapt_values(spec: TableSpec, values: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        col: Jsonb(val) if col in spec.json_columns and val is not None else val
        for col, val in values.items()
    }


def like_pattern(needle: str) -> str:
    escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class PostgresStore:
    """Thin Postgres-backed implementation of the ``Store`` protocol."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the session, identity and preference tables exist."""

        with self._connect() as conn:
            missing_tables = []
            for table in TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # ------------------------------------------------------------------
    # Store protocol
    # ------------------------------------------------------------------
    def insert(self, table: str, fields: Mapping[str, Any]) -> Optional[Any]:
        spec = table_spec(table)
        values = dict(fields)
        if spec.autoincrement and values.get(spec.primary_key) is None:
            values.pop(spec.primary_key, None)
        check_columns(spec, list(values.keys()))
        values = adapt_values(spec, values)
        columns = list(values.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING {}").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(col) for col in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            sql.Identifier(spec.primary_key),
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, [values[col] for col in columns]).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"unique constraint violated on {table}",
                {"table": table},
            ) from exc
        if not row:
            return None
        return row[spec.primary_key]

    def update(self, table: str, fields: Mapping[str, Any], filter: Filter) -> int:
        spec = table_spec(table)
        check_columns(spec, list(fields.keys()) + list((filter or {}).keys()))
        if not fields:
            return 0
        if spec.primary_key in fields:
            raise ValueError(f"{table}.{spec.primary_key} cannot be updated")
        where, where_params = build_where(filter)
        values = adapt_values(spec, fields)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(col)) for col in values
        )
        query = sql.SQL("UPDATE {} SET {} WHERE {}").format(
            sql.Identifier(table), assignments, where
        )
        try:
            with self._connect() as conn:
                result = conn.execute(query, list(values.values()) + where_params)
                return result.rowcount
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"unique constraint violated on {table}",
                {"table": table},
            ) from exc

    def delete(self, table: str, filter: Filter) -> int:
        spec = table_spec(table)
        check_columns(spec, list((filter or {}).keys()))
        where, params = build_where(filter)
        query = sql.SQL("DELETE FROM {} WHERE {}").format(sql.Identifier(table), where)
        with self._connect() as conn:
            result = conn.execute(query, params)
            return result.rowcount

    def get_one(self, table: str, filter: Filter) -> Optional[Dict[str, Any]]:
        rows = self.get_many(table, filter, limit=1)
        return rows[0] if rows else None

    def get_many(
        self,
        table: str,
        filter: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        spec = table_spec(table)
        check_columns(spec, list((filter or {}).keys()))
        where, params = build_where(filter)
        query = sql.SQL("SELECT * FROM {} WHERE {}").format(sql.Identifier(table), where)
        query = query + build_order(spec, order)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(max(0, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def delete_where(
        self, table: str, raw_predicate: str, params: Sequence[Any]
    ) -> int:
        spec = table_spec(table)
        predicate, values = build_predicate(spec, raw_predicate, params)
        query = sql.SQL("DELETE FROM {} WHERE {}").format(sql.Identifier(table), predicate)
        with self._connect() as conn:
            result = conn.execute(query, values)
            return result.rowcount

    def get_matching(
        self,
        table: str,
        columns: Sequence[str],
        needle: str,
        filter: Optional[Filter] = None,
        exclude: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        spec = table_spec(table)
        check_columns(
            spec,
            list(columns) + list((filter or {}).keys()) + list((exclude or {}).keys()),
        )
        if not columns:
            return []
        where, params = build_where(filter)
        not_in, exclude_params = build_exclude(exclude)
        pattern = like_pattern(needle)
        matches = sql.SQL(" OR ").join(
            sql.SQL("{}::text ILIKE %s").format(sql.Identifier(col)) for col in columns
        )
        query = sql.SQL("SELECT * FROM {} WHERE {} AND {} AND ({})").format(
            sql.Identifier(table), where, not_in, matches
        )
        query = query + build_order(spec, order)
        all_params = params + exclude_params + [pattern] * len(columns)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            all_params.append(max(0, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(query, all_params).fetchall()
        return [dict(row) for row in rows]
