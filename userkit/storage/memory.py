from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from userkit.logging import get_logger
from userkit.storage.common import (
    TABLES,
    Filter,
    Order,
    TableSpec,
    check_columns,
    clause_matches,
    contains_ci,
    excluded,
    matches_filter,
    normalize_order,
    parse_predicate,
    table_spec,
)
from userkit.storage.errors import ConstraintViolation

_DATETIME_TAG = "$dt"


class MemoryStore:
    """In-process backing store with optional JSON persistence.

    Rows are plain dicts keyed by primary key. When ``fs_root`` is given the
    full state is written to ``<fs_root>/state/memory_store.json`` after every
    mutation and reloaded on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.tables: Dict[str, Dict[Any, Dict[str, Any]]] = {name: {} for name in TABLES}
        self._sequences: Dict[str, int] = {
            name: spec.first_id for name, spec in TABLES.items()
        }
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # Store protocol
    # ------------------------------------------------------------------
    def insert(self, table: str, fields: Mapping[str, Any]) -> Optional[Any]:
        spec = table_spec(table)
        check_columns(spec, list(fields.keys()))
        with self._data_lock:
            rows = self.tables[table]
            row = {col: spec.defaults.get(col) for col in spec.columns}
            row.update(fields)
            pk = row.get(spec.primary_key)
            if pk is None:
                if not spec.autoincrement:
                    raise ConstraintViolation(
                        f"{table}.{spec.primary_key} is required",
                        {"table": table, "field": spec.primary_key},
                    )
                pk = self._sequences[table]
                row[spec.primary_key] = pk
            if pk in rows:
                raise ConstraintViolation(
                    f"duplicate primary key for {table}",
                    {"table": table, "field": spec.primary_key},
                )
            self._check_unique(spec, row, ignore_pk=None)
            if spec.autoincrement and isinstance(pk, int):
                self._sequences[table] = max(self._sequences[table], pk + 1)
            rows[pk] = row
            self._persist_state()
            return pk

    def update(self, table: str, fields: Mapping[str, Any], filter: Filter) -> int:
        spec = table_spec(table)
        check_columns(spec, list(fields.keys()) + list((filter or {}).keys()))
        if spec.primary_key in fields:
            raise ValueError(f"{table}.{spec.primary_key} cannot be updated")
        with self._data_lock:
            rows = self.tables[table]
            targets = [pk for pk, row in rows.items() if matches_filter(row, filter)]
            for pk in targets:
                candidate = {**rows[pk], **fields}
                self._check_unique(spec, candidate, ignore_pk=pk)
                rows[pk] = candidate
            if targets:
                self._persist_state()
            return len(targets)

    def delete(self, table: str, filter: Filter) -> int:
        spec = table_spec(table)
        check_columns(spec, list((filter or {}).keys()))
        with self._data_lock:
            rows = self.tables[table]
            targets = [pk for pk, row in rows.items() if matches_filter(row, filter)]
            for pk in targets:
                rows.pop(pk, None)
            if targets:
                self._persist_state()
            return len(targets)

    def get_one(self, table: str, filter: Filter) -> Optional[Dict[str, Any]]:
        spec = table_spec(table)
        check_columns(spec, list((filter or {}).keys()))
        with self._data_lock:
            for row in self.tables[table].values():
                if matches_filter(row, filter):
                    return dict(row)
            return None

    def get_many(
        self,
        table: str,
        filter: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        spec = table_spec(table)
        check_columns(spec, list((filter or {}).keys()))
        with self._data_lock:
            results = [
                dict(row) for row in self.tables[table].values() if matches_filter(row, filter)
            ]
        return self._order_and_limit(spec, results, order, limit)

    def delete_where(
        self, table: str, raw_predicate: str, params: Sequence[Any]
    ) -> int:
        spec = table_spec(table)
        clauses = parse_predicate(spec, raw_predicate, params)
        with self._data_lock:
            rows = self.tables[table]
            targets = [
                pk
                for pk, row in rows.items()
                if all(clause_matches(row, clause) for clause in clauses)
            ]
            for pk in targets:
                rows.pop(pk, None)
            if targets:
                self._persist_state()
            return len(targets)

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
        with self._data_lock:
            results = [
                dict(row)
                for row in self.tables[table].values()
                if matches_filter(row, filter)
                and not excluded(row, exclude)
                and contains_ci(row, columns, needle)
            ]
        return self._order_and_limit(spec, results, order, limit)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _check_unique(
        self, spec: TableSpec, row: Mapping[str, Any], *, ignore_pk: Any
    ) -> None:
        rows = self.tables[spec.name]
        for columns in spec.unique:
            values = tuple(row.get(col) for col in columns)
            if any(v is None for v in values):
                continue
            for pk, existing in rows.items():
                if pk == ignore_pk:
                    continue
                if tuple(existing.get(col) for col in columns) == values:
                    raise ConstraintViolation(
                        f"{'/'.join(columns)} already exists",
                        {"table": spec.name, "fields": list(columns)},
                    )

    @staticmethod
    def _order_and_limit(
        spec: TableSpec,
        results: List[Dict[str, Any]],
        order: Optional[Order],
        limit: Optional[int],
    ) -> List[Dict[str, Any]]:
        # stable sorts applied last-key-first give a multi-column ordering
        for column, descending in reversed(normalize_order(spec, order)):
            present = [r for r in results if r.get(column) is not None]
            missing = [r for r in results if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=descending)
            # NULLs sort last ascending and first descending, as in Postgres
            results = missing + present if descending else present + missing
        if limit is not None:
            results = results[: max(0, int(limit))]
        return results

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_value(value: Any) -> Any:
        if isinstance(value, datetime):
            return {_DATETIME_TAG: value.isoformat()}
        return value

    @staticmethod
    def _deserialize_value(value: Any) -> Any:
        if isinstance(value, dict) and set(value.keys()) == {_DATETIME_TAG}:
            return datetime.fromisoformat(value[_DATETIME_TAG])
        return value

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sequences": self._sequences,
            "tables": {
                name: [
                    {col: self._serialize_value(val) for col, val in row.items()}
                    for row in rows.values()
                ]
                for name, rows in self.tables.items()
            },
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, rows in data.get("tables", {}).items():
            spec = TABLES.get(name)
            if spec is None:
                self.logger.warning("memory_store_unknown_table", table=name)
                continue
            self.tables[name] = {}
            for raw in rows:
                row = {col: self._deserialize_value(val) for col, val in raw.items()}
                self.tables[name][row[spec.primary_key]] = row
        for name, seq in data.get("sequences", {}).items():
            if name in self._sequences:
                self._sequences[name] = int(seq)
        return True
