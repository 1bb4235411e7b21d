"""One SQLite connection plus cursors that hand rows back as dataclasses."""

import dataclasses
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Self

import pydantic

from gcp_iam import statements

logger = logging.getLogger(__name__)

PRAGMAS = (
    "PRAGMA journal_mode = wal",
    "PRAGMA synchronous = normal",
    "PRAGMA temp_store = memory",
    "PRAGMA cache_size = -32000",
    "PRAGMA foreign_keys = on",
)

# datetimes go in as UTC ISO-8601 and come back through the DATETIME decltype
sqlite3.register_adapter(datetime, lambda dt: dt.astimezone(timezone.utc).isoformat())
sqlite3.register_converter("datetime", lambda b: datetime.fromisoformat(b.decode()))

_row_adapters: dict[type, pydantic.TypeAdapter] = {}


def row_adapter[M](model: type[M]) -> pydantic.TypeAdapter[M]:
    if model not in _row_adapters:
        _row_adapters[model] = pydantic.TypeAdapter(model)
    return _row_adapters[model]


def validate[M](row: tuple, model: type[M]) -> M:
    """Zip a full-width row onto the dataclass fields and validate it."""
    if not dataclasses.is_dataclass(model):
        raise TypeError(f"Unsupported model type: {model}")
    names = [f.name for f in dataclasses.fields(model)]
    return row_adapter(model).validate_python(dict(zip(names, row)))


class RowCursor(sqlite3.Cursor):
    def execute(self, sql: str | statements.Statement, *args: Any, **kwargs: Any) -> Self:
        if isinstance(sql, statements.Statement):
            return sql.execute(*args, cursor=self, **kwargs)
        return super().execute(sql, statements.extract_param(args, kwargs))

    def scalars(self) -> list[Any]:
        return [row[0] for row in self]

    def parseone[M](self, model: type[M]) -> M | None:
        row = self.fetchone()
        return None if row is None else validate(row, model)

    def parseall[M](self, model: type[M]) -> list[M]:
        return [validate(row, model) for row in self]

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc, exc_type, exc_tb) -> None:
        self.close()


class ModelCursor[M](RowCursor):
    """A cursor bound to one dataclass table."""

    model: type[M]

    def one(self) -> M | None:
        return self.parseone(self.model)

    def all(self) -> list[M]:
        return self.parseall(self.model)

    def create(
        self, constraints: list[str] | None = None, if_not_exists: bool = False
    ) -> statements.Create[Self]:
        return statements.create(
            self.model, constraints=constraints, if_not_exists=if_not_exists, cursor=self
        )

    def index(self, *columns: str) -> statements.CreateIndex[Self]:
        return statements.index(self.model, *columns, cursor=self)

    def insert(
        self, conflict_resolution: statements.ConflictResolutionType | None = None
    ) -> statements.Insert[Self]:
        return statements.insert(self.model, conflict_resolution, cursor=self)

    def select(
        self,
        *fields: str,
        where: str | None = None,
        orderby: list[str] | None = None,
        limit: int | None = None,
    ) -> statements.Select[Self]:
        return statements.select(
            self.model, *fields, where=where, orderby=orderby, limit=limit, cursor=self
        )

    def update(self) -> statements.Update[Self]:
        return statements.update(self.model, cursor=self)

    def count(self, expr: str = "*") -> statements.Count[Self]:
        return statements.count(self.model, expr=expr, cursor=self)


@dataclass
class Database:
    uri: str | Path
    timeout: int = 30
    connection: sqlite3.Connection | None = None

    def table[M](self, model: type[M]) -> ModelCursor[M]:
        cursor = self.cursor(ModelCursor)
        cursor.model = model
        return cursor

    def cursor[C: sqlite3.Cursor](self, factory: Callable[..., C] = RowCursor) -> C:
        return self.connect().cursor(factory)

    def connect(self) -> sqlite3.Connection:
        if self.connection is None:
            if isinstance(self.uri, Path):
                self.uri.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Opening database %s", self.uri)
            self.connection = connect_raw(self.uri, self.timeout)
        return self.connection

    def close(self, optimize: bool = True) -> None:
        if self.connection is None:
            return
        connection, self.connection = self.connection, None
        try:
            if optimize:
                connection.execute("PRAGMA optimize")
        finally:
            connection.close()

    def __enter__(self) -> Self:
        self.connect()
        return self

    def __exit__(self, exc, exc_type, exc_tb) -> None:
        self.close()


def connect_raw(uri: str | Path, timeout: int) -> sqlite3.Connection:
    """Autocommit connection: every statement is its own transaction."""
    connection = sqlite3.connect(
        uri, autocommit=True, detect_types=sqlite3.PARSE_DECLTYPES, timeout=timeout
    )
    try:
        for pragma in PRAGMAS:
            connection.execute(pragma)
    except sqlite3.Error:
        connection.close()
        raise
    return connection


def connect(uri: str | Path, timeout: int = 30) -> Database:
    return Database(uri, timeout)
