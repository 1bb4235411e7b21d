"""SQL text for dataclass-backed tables.

Each statement is a small dataclass that renders itself with `str()` and can be
bound to a cursor, so `table.select().where(name=x).execute().one()` reads left
to right. Only the shapes the store needs are covered.
"""

import dataclasses
import re
import sqlite3
from datetime import datetime
from itertools import chain
from types import NoneType, UnionType
from typing import Annotated, Any, Literal, Self, get_args, get_origin, get_type_hints

type ConflictResolutionType = Literal["ABORT", "ROLLBACK", "FAIL", "IGNORE", "REPLACE"]

SQL_TYPES: dict[type, str] = {
    str: "TEXT",
    int: "INTEGER",
    bool: "BOOLEAN",
    float: "REAL",
    bytes: "BLOB",
    datetime: "DATETIME",
}


@dataclasses.dataclass
class ColumnDef:
    name: str
    dtype: str
    constraints: str = ""

    def __str__(self) -> str:
        return " ".join(part for part in (self.name, self.dtype, self.constraints) if part)

    @classmethod
    def from_annotation(cls, name: str, annotation: Any) -> Self:
        """`Annotated[T, "..."]` adds a column constraint, `T | None` drops NOT NULL."""
        constraints = []
        if get_origin(annotation) is Annotated:
            annotation, *extras = get_args(annotation)
            if len(extras) != 1 or not isinstance(extras[0], str):
                raise TypeError(f"Expected one constraint string for {name}: {extras}")
            constraints.append(extras[0])

        nullable = False
        if get_origin(annotation) is UnionType:
            members = get_args(annotation)
            rest = [arg for arg in members if arg is not NoneType]
            if len(members) != 2 or len(rest) != 1:
                raise TypeError(f"Unions not supported, except X | None: {annotation}")
            annotation, nullable = rest[0], True

        try:
            dtype = SQL_TYPES[annotation]
        except KeyError:
            raise TypeError(f"No column type for {annotation}") from None
        if not nullable:
            constraints.insert(0, "NOT NULL")
        return cls(name, dtype, " ".join(constraints))


def table_name_for(model: type) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", model.__name__).lower()


def columns_of(model: type) -> list[tuple[str, Any]]:
    if not dataclasses.is_dataclass(model):
        raise TypeError(f"Unsupported model type {model}.")
    hints = get_type_hints(model, include_extras=True)
    return [(f.name, hints[f.name]) for f in dataclasses.fields(model)]


def extract_param(args: tuple, kwargs: dict) -> tuple | dict:
    """Normalize execute() arguments into one sqlite3 parameter object."""
    if kwargs:
        if args:
            raise ValueError("Pass parameters by tuple OR dict, not both.")
        return kwargs
    match args:
        case (tuple() | dict() as param,):
            return param
        case (row,) if dataclasses.is_dataclass(row) and not isinstance(row, type):
            return dataclasses.asdict(row)
        case _:
            return args


@dataclasses.dataclass(kw_only=True)
class Statement[C: sqlite3.Cursor]:
    table: str
    cursor: C | None = None
    params: tuple | dict | None = None

    def execute(self, *args: Any, cursor: C | None = None, **kwargs: Any) -> C:
        cursor = cursor or self.cursor
        if cursor is None:
            raise ValueError("Statement is not bound to a cursor.")
        bound = self.params
        if bound is None:
            bound = extract_param(args, kwargs)
        elif isinstance(bound, dict) and kwargs:
            bound = bound | kwargs
        return cursor.execute(str(self), bound)


@dataclasses.dataclass(kw_only=True)
class Filtered[C: sqlite3.Cursor](Statement[C]):
    clause: str | None = None

    def where(self, expr: str | dict | None = None, **kwparams: Any) -> Self:
        """AND a term onto the clause.

        Strings go in verbatim and may reference execute-time parameters.
        Dicts and keywords become `col=:col` terms with their values bound.
        """
        if isinstance(expr, str) and not kwparams:
            term = expr
        else:
            if expr is None and kwparams:
                values = kwparams
            elif isinstance(expr, dict) and not kwparams:
                values = dict(expr)
            else:
                raise TypeError("where() takes an expression string or column=value keywords")
            term = " AND ".join(f"{name}=:{name}" for name in values)
            self.bind(values)
        self.clause = f"({self.clause}) AND ({term})" if self.clause else term
        return self

    def bind(self, values: dict) -> None:
        self.params = (self.params or {}) | values

    def where_sql(self) -> str:
        return f" WHERE {self.clause}" if self.clause else ""


@dataclasses.dataclass(kw_only=True)
class Create[C: sqlite3.Cursor](Statement[C]):
    columns: list[ColumnDef]
    constraints: list[str] = dataclasses.field(default_factory=list)
    _if_not_exists: bool = False

    def if_not_exists(self, if_not_exists: bool = True) -> Self:
        self._if_not_exists = if_not_exists
        return self

    def __str__(self) -> str:
        body = ", ".join(chain(map(str, self.columns), self.constraints))
        guard = " IF NOT EXISTS" if self._if_not_exists else ""
        return f"CREATE TABLE{guard} {self.table}({body})"


@dataclasses.dataclass(kw_only=True)
class CreateIndex[C: sqlite3.Cursor](Statement[C]):
    columns: list[str]

    def __str__(self) -> str:
        name = f"idx_{self.table}_{'_'.join(self.columns)}"
        return f"CREATE INDEX IF NOT EXISTS {name} ON {self.table}({', '.join(self.columns)})"


@dataclasses.dataclass(kw_only=True)
class Select[C: sqlite3.Cursor](Filtered[C]):
    fields: list[str]
    _distinct: bool = False
    _orderby: list[str] | None = None
    _limit: int | None = None

    def distinct(self, distinct: bool = True) -> Self:
        self._distinct = distinct
        return self

    def orderby(self, *terms: str) -> Self:
        self._orderby = list(terms)
        return self

    def limit(self, value: int | None = None) -> Self:
        self._limit = value
        return self

    def __str__(self) -> str:
        stmt = "SELECT DISTINCT" if self._distinct else "SELECT"
        stmt += f" {', '.join(self.fields)} FROM {self.table}{self.where_sql()}"
        stmt += f" ORDER BY {', '.join(self._orderby)}" if self._orderby else ""
        stmt += f" LIMIT {self._limit}" if self._limit else ""
        return stmt


@dataclasses.dataclass(kw_only=True)
class Insert[C: sqlite3.Cursor](Statement[C]):
    columns: list[str]
    conflict_resolution: ConflictResolutionType | None = None
    placeholders: list[str] | None = None
    upsert: tuple[list[str], list[str]] | None = None

    def values(self, *args: Any, **kwargs: Any) -> Self:
        row = extract_param(args, kwargs)
        if isinstance(row, dict):
            self.columns = [col for col in self.columns if col in row]
            self.params = {col: row[col] for col in self.columns}
            self.placeholders = [f":{col}" for col in self.columns]
        else:
            if len(row) != len(self.columns):
                raise ValueError(f"Expected {len(self.columns)} values, got {len(row)}.")
            self.params = row
            self.placeholders = ["?"] * len(row)
        return self

    def on_conflict(self, *target: str, update: list[str]) -> Self:
        """Turn the insert into an upsert that overwrites `update` from `excluded`."""
        self.upsert = (list(target), list(update))
        return self

    def __str__(self) -> str:
        stmt = f"INSERT OR {self.conflict_resolution}" if self.conflict_resolution else "INSERT"
        stmt += f" INTO {self.table}({', '.join(self.columns)})"
        if self.placeholders is not None:
            stmt += f" VALUES ({', '.join(self.placeholders)})"
        if self.upsert is not None:
            target, update = self.upsert
            assignments = ", ".join(f"{col}=excluded.{col}" for col in update)
            stmt += f" ON CONFLICT({', '.join(target)}) DO UPDATE SET {assignments}"
        return stmt


@dataclasses.dataclass(kw_only=True)
class Update[C: sqlite3.Cursor](Filtered[C]):
    assignments: list[str] = dataclasses.field(default_factory=list)

    def set(self, **values: Any) -> Self:
        self.assignments.extend(f"{name}=:{name}" for name in values)
        self.bind(values)
        return self

    def __str__(self) -> str:
        if not self.assignments:
            raise ValueError("UPDATE without SET.")
        return f"UPDATE {self.table} SET {', '.join(self.assignments)}{self.where_sql()}"


@dataclasses.dataclass(kw_only=True)
class Count[C: sqlite3.Cursor](Filtered[C]):
    expr: str = "*"

    def __str__(self) -> str:
        return f"SELECT COUNT({self.expr}) FROM {self.table}{self.where_sql()}"

    def get(self, cursor: C | None = None, **kwparams: Any) -> int:
        return self.execute(cursor=cursor, **kwparams).fetchone()[0]


def create[C: sqlite3.Cursor](
    model: type,
    constraints: list[str] | None = None,
    if_not_exists: bool = False,
    cursor: C | None = None,
) -> Create[C]:
    return Create(
        table=table_name_for(model),
        columns=[ColumnDef.from_annotation(n, a) for n, a in columns_of(model)],
        constraints=list(constraints or []),
        _if_not_exists=if_not_exists,
        cursor=cursor,
    )


def index[C: sqlite3.Cursor](model: type, *columns: str, cursor: C | None = None) -> CreateIndex[C]:
    return CreateIndex(table=table_name_for(model), columns=list(columns), cursor=cursor)


def select[C: sqlite3.Cursor](
    model: type,
    *fields: str,
    where: str | None = None,
    orderby: list[str] | None = None,
    limit: int | None = None,
    cursor: C | None = None,
) -> Select[C]:
    return Select(
        table=table_name_for(model),
        fields=list(fields) or [name for name, _ in columns_of(model)],
        clause=where,
        _orderby=orderby,
        _limit=limit,
        cursor=cursor,
    )


def insert[C: sqlite3.Cursor](
    model: type,
    conflict_resolution: ConflictResolutionType | None = None,
    cursor: C | None = None,
) -> Insert[C]:
    return Insert(
        table=table_name_for(model),
        columns=[name for name, _ in columns_of(model)],
        conflict_resolution=conflict_resolution,
        cursor=cursor,
    )


def update[C: sqlite3.Cursor](model: type, cursor: C | None = None) -> Update[C]:
    return Update(table=table_name_for(model), cursor=cursor)


def count[C: sqlite3.Cursor](model: type, expr: str = "*", cursor: C | None = None) -> Count[C]:
    return Count(table=table_name_for(model), expr=expr, cursor=cursor)
