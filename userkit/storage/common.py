"""Common storage definitions shared between memory and postgres implementations.

The ``Store`` protocol is the only contract the session and identity services
depend on: key-filtered record CRUD over three tables. Both backends share
the table registry and the small predicate grammar accepted by
``delete_where`` so that behavior stays identical across them.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from userkit.storage.errors import UnknownTable

SESSIONS_TABLE = "sessions"
IDENTITIES_TABLE = "identities"
PREFERENCES_TABLE = "preferences"

# filter values: scalars compare for equality, collections mean "IN"
Filter = Mapping[str, Any]
# ordering: column -> "ASC" | "DESC", applied in insertion order
Order = Mapping[str, str]


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: Tuple[str, ...]
    primary_key: str
    autoincrement: bool = False
    # first generated id; lower ids are reserved for explicit inserts
    first_id: int = 1
    unique: Tuple[Tuple[str, ...], ...] = field(default_factory=tuple)
    # column defaults applied on insert by stores without DDL defaults
    defaults: Dict[str, Any] = field(default_factory=dict)
    # columns holding typed scalars; stored as JSONB by the postgres backend
    json_columns: Tuple[str, ...] = field(default_factory=tuple)


TABLES: Dict[str, TableSpec] = {
    SESSIONS_TABLE: TableSpec(
        name=SESSIONS_TABLE,
        columns=(
            "session_id",
            "data",
            "created_at",
            "updated_at",
            "expires_at",
            "user_id",
            "client_ip",
            "request_uri",
            "script_path",
            "persistent",
            "invalidated",
        ),
        primary_key="session_id",
        defaults={"data": "", "persistent": False, "invalidated": False},
    ),
    IDENTITIES_TABLE: TableSpec(
        name=IDENTITIES_TABLE,
        columns=(
            "id",
            "username",
            "name_short",
            "name_full",
            "image",
            "deleted",
            "created_at",
            "updated_at",
        ),
        primary_key="id",
        autoincrement=True,
        first_id=2,
        unique=(("username",),),
        defaults={"name_short": "", "name_full": "", "image": "", "deleted": False},
    ),
    PREFERENCES_TABLE: TableSpec(
        name=PREFERENCES_TABLE,
        columns=(
            "id",
            "user_id",
            "component",
            "key",
            "value",
            "created_at",
            "updated_at",
        ),
        primary_key="id",
        autoincrement=True,
        unique=(("user_id", "component", "key"),),
        json_columns=("value",),
    ),
}


class Store(Protocol):
    def insert(self, table: str, fields: Mapping[str, Any]) -> Optional[Any]: ...

    def update(self, table: str, fields: Mapping[str, Any], filter: Filter) -> int: ...

    def delete(self, table: str, filter: Filter) -> int: ...

    def get_one(self, table: str, filter: Filter) -> Optional[Dict[str, Any]]: ...

    def get_many(
        self,
        table: str,
        filter: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def delete_where(
        self, table: str, raw_predicate: str, params: Sequence[Any]
    ) -> int: ...

    def get_matching(
        self,
        table: str,
        columns: Sequence[str],
        needle: str,
        filter: Optional[Filter] = None,
        exclude: Optional[Filter] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...


# ============================================================================
# REGISTRY VALIDATION
# ============================================================================

def table_spec(table: str) -> TableSpec:
    spec = TABLES.get(table)
    if spec is None:
        raise UnknownTable(f"unknown table: {table}", {"table": table})
    return spec


def check_columns(spec: TableSpec, columns: Sequence[str]) -> None:
    unknown = [col for col in columns if col not in spec.columns]
    if unknown:
        raise UnknownTable(
            f"unknown column(s) for {spec.name}: {', '.join(unknown)}",
            {"table": spec.name, "columns": unknown},
        )


def normalize_order(spec: TableSpec, order: Optional[Order]) -> List[Tuple[str, bool]]:
    """Return ``(column, descending)`` pairs after validating directions."""

    if not order:
        return []
    check_columns(spec, list(order.keys()))
    normalized: List[Tuple[str, bool]] = []
    for column, direction in order.items():
        upper = str(direction).upper()
        if upper not in {"ASC", "DESC"}:
            raise ValueError(f"invalid sort direction: {direction}")
        normalized.append((column, upper == "DESC"))
    return normalized


def is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


# ============================================================================
# RAW PREDICATES
# ============================================================================

_PREDICATE_CLAUSE = re.compile(
    r"^\s*(?P<column>[a-z_][a-z0-9_]*)\s*(?P<op>!=|<=|>=|=|<|>)\s*\?\s*$"
)
_AND_SPLIT = re.compile(r"\s+AND\s+", re.IGNORECASE)

PREDICATE_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass(frozen=True)
class PredicateClause:
    column: str
    op: str
    value: Any


def parse_predicate(
    spec: TableSpec, raw_predicate: str, params: Sequence[Any]
) -> List[PredicateClause]:
    """Parse ``"col op ? AND col op ?"`` into validated clauses.

    Only this grammar is accepted so both backends can evaluate the same
    predicate; anything else raises ``ValueError``.
    """

    parts = [p for p in _AND_SPLIT.split(raw_predicate.strip()) if p]
    if not parts:
        raise ValueError("empty predicate")
    if len(parts) != len(params):
        raise ValueError(
            f"predicate expects {len(parts)} parameter(s), got {len(params)}"
        )
    clauses: List[PredicateClause] = []
    for part, value in zip(parts, params):
        match = _PREDICATE_CLAUSE.match(part)
        if not match:
            raise ValueError(f"unsupported predicate clause: {part!r}")
        column = match.group("column")
        check_columns(spec, [column])
        clauses.append(PredicateClause(column, match.group("op"), value))
    return clauses


def clause_matches(record: Mapping[str, Any], clause: PredicateClause) -> bool:
    current = record.get(clause.column)
    if current is None or clause.value is None:
        # SQL semantics: comparisons with NULL are never true
        return False
    return PREDICATE_OPERATORS[clause.op](current, clause.value)


def matches_filter(record: Mapping[str, Any], filter: Optional[Filter]) -> bool:
    if not filter:
        return True
    for column, expected in filter.items():
        current = record.get(column)
        if is_collection(expected):
            if current not in expected:
                return False
        elif current != expected:
            return False
    return True


def contains_ci(record: Mapping[str, Any], columns: Sequence[str], needle: str) -> bool:
    lowered = needle.lower()
    for column in columns:
        value = record.get(column)
        if value is not None and lowered in str(value).lower():
            return True
    return False


def excluded(record: Mapping[str, Any], exclude: Optional[Filter]) -> bool:
    """True when the record matches any ``column != value`` exclusion."""

    if not exclude:
        return False
    for column, value in exclude.items():
        if is_collection(value):
            if record.get(column) in value:
                return True
        elif record.get(column) == value:
            return True
    return False
