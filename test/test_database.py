from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated
from unittest.mock import patch
import sqlite3

import pytest

from gcp_iam import database, statements


@dataclass
class Widget:
    name: Annotated[str, "PRIMARY KEY"]
    size: int
    note: str | None
    made_at: datetime


@dataclass
class WidgetPart:
    part: str
    widget: Annotated[str, "REFERENCES widget(name)"]


def test_database_context_manager():
    db = database.connect(":memory:")
    with (
        patch.object(db, "connect") as connect_mock,
        patch.object(db, "close") as close_mock,
    ):
        with db:
            pass
    connect_mock.assert_called_once()
    close_mock.assert_called_once()


@pytest.fixture
def memdb():
    with database.connect(":memory:") as db:
        with db.table(Widget) as widgets:
            widgets.create().if_not_exists().execute()
        with db.table(WidgetPart) as parts:
            parts.create(constraints=["PRIMARY KEY (part, widget)"]).execute()
        yield db


def test_create_statement():
    stmt = statements.create(WidgetPart, constraints=["PRIMARY KEY (part, widget)"])
    assert str(stmt.if_not_exists()) == (
        "CREATE TABLE IF NOT EXISTS widget_part(part TEXT NOT NULL, "
        "widget TEXT NOT NULL REFERENCES widget(name), PRIMARY KEY (part, widget))"
    )


def test_nullable_column():
    assert str(statements.ColumnDef.from_annotation("note", str | None)) == "note TEXT"


def test_unsupported_union():
    with pytest.raises(TypeError):
        statements.ColumnDef.from_annotation("x", int | str)


def test_upsert_statement():
    stmt = statements.insert(Widget).values(
        Widget("a", 1, None, datetime.now(timezone.utc))
    ).on_conflict("name", update=["size"])
    assert str(stmt) == (
        "INSERT INTO widget(name, size, note, made_at)"
        " VALUES (:name, :size, :note, :made_at)"
        " ON CONFLICT(name) DO UPDATE SET size=excluded.size"
    )


def test_select_where_chaining():
    stmt = statements.select(Widget, "name").where(size=3).where("note IS NULL")
    assert str(stmt.orderby("name").limit(2)) == (
        "SELECT name FROM widget WHERE (size=:size) AND (note IS NULL)"
        " ORDER BY name LIMIT 2"
    )


def test_insert_select_roundtrip(memdb):
    made = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    with memdb.table(Widget) as widgets:
        widgets.insert().values(Widget("a", 1, None, made)).execute()
        widgets.insert().values(("b", 2, "spare", made)).execute()
        assert widgets.count().get() == 2
        got = widgets.select().where(name="a").execute().one()
    assert got == Widget("a", 1, None, made)


def test_upsert_overwrites(memdb):
    made = datetime.now(timezone.utc)
    with memdb.table(Widget) as widgets:
        for size in (1, 5):
            widgets.insert().values(Widget("a", size, None, made)).on_conflict(
                "name", update=["size"]
            ).execute()
        assert widgets.count().get() == 1
        assert widgets.select("size").execute().scalars() == [5]


def test_insert_or_ignore(memdb):
    made = datetime.now(timezone.utc)
    with memdb.table(Widget) as widgets:
        widgets.insert().values(Widget("a", 1, None, made)).execute()
    with memdb.table(WidgetPart) as parts:
        for _ in range(2):
            parts.insert("IGNORE").values(WidgetPart("bolt", "a")).execute()
        assert parts.count().get() == 1


def test_foreign_keys_enforced(memdb):
    with memdb.table(WidgetPart) as parts:
        with pytest.raises(sqlite3.IntegrityError):
            parts.insert("IGNORE").values(WidgetPart("bolt", "missing")).execute()


def test_update_and_count_where(memdb):
    made = datetime.now(timezone.utc)
    with memdb.table(Widget) as widgets:
        for name in "abc":
            widgets.insert().values(Widget(name, 1, None, made)).execute()
        widgets.update().set(size=9).where(name="b").execute()
        assert widgets.count().where(size=9).get() == 1
        assert widgets.count("DISTINCT size").get() == 2


def test_index_and_where_forms():
    assert str(statements.index(Widget, "size", "note")) == (
        "CREATE INDEX IF NOT EXISTS idx_widget_size_note ON widget(size, note)"
    )
    stmt = statements.count(Widget).where({"size": 1}).where("note IS NULL")
    assert str(stmt) == "SELECT COUNT(*) FROM widget WHERE (size=:size) AND (note IS NULL)"
    with pytest.raises(TypeError):
        statements.select(Widget).where("size = :size", size=1)
