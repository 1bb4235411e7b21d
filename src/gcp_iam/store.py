import dataclasses
import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Self

from gcp_iam.database import Database, connect
from gcp_iam.errors import StoreError
from gcp_iam.models import Permission, Role, Service, strip_role_prefix, utcnow

logger = logging.getLogger(__name__)

ROLE_COLUMNS = ", ".join(f"r.{c}" for c in Role.__dataclass_fields__)
LIVE_PERMISSIONS = (
    "FROM permission p JOIN role r ON r.name = p.role WHERE r.deleted = FALSE"
)


def like(query: str) -> str:
    """Substring pattern for `LIKE ... ESCAPE '\\'` with wildcards taken literally."""
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Store:
    """Local cache of the IAM catalog.

    Every write commits on its own, so an interrupted sync leaves each row
    intact even when the catalog as a whole is incomplete.
    """

    def __init__(self, db: Database) -> None:
        self.db: Database = db

    @classmethod
    def open(cls, uri: str | Path) -> Self:
        db = connect(uri)
        try:
            store = cls(db)
            store.create_tables()
        except sqlite3.Error as exc:
            db.close(optimize=False)
            raise StoreError(f"Failed to open database {uri}: {exc}") from exc
        return store

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc, exc_type, exc_tb) -> None:
        self.close()

    def create_tables(self) -> None:
        with self.db.table(Role) as roles:
            roles.create().if_not_exists().execute()
        with self.db.table(Permission) as permissions:
            permissions.create(
                constraints=["PRIMARY KEY (permission, role)"]
            ).if_not_exists().execute()
            permissions.index("role").execute()
            permissions.index("permission").execute()
        with self.db.table(Service) as services:
            services.create().if_not_exists().execute()
            services.index("title").execute()

    # roles

    def upsert_role(self, role: Role) -> None:
        row = dataclasses.replace(role, updated_at=utcnow())
        with self.db.table(Role) as roles:
            roles.insert().values(row).on_conflict(
                "name",
                update=["title", "description", "stage", "deleted", "updated_at"],
            ).execute()

    def get_role(self, name: str) -> Role | None:
        with self.db.table(Role) as roles:
            return (
                roles.select()
                .where(name=strip_role_prefix(name))
                .where("deleted = FALSE")
                .execute()
                .one()
            )

    def list_roles(self) -> list[Role]:
        with self.db.table(Role) as roles:
            return roles.select(where="deleted = FALSE", orderby=["name"]).execute().all()

    def search_roles(self, query: str) -> list[Role]:
        with self.db.table(Role) as roles:
            return (
                roles.select(orderby=["name"])
                .where(
                    "name LIKE :q ESCAPE '\\' OR title LIKE :q ESCAPE '\\'"
                    " OR description LIKE :q ESCAPE '\\'"
                )
                .where("deleted = FALSE")
                .execute(q=like(query))
                .all()
            )

    def role_names(self) -> list[str]:
        with self.db.table(Role) as roles:
            return (
                roles.select("name", where="deleted = FALSE", orderby=["name"])
                .execute()
                .scalars()
            )

    def count_roles(self) -> int:
        with self.db.table(Role) as roles:
            return roles.count().where("deleted = FALSE").get()

    def retire_roles(self, keep: Iterable[str]) -> int:
        """Soft-delete every live role whose name is not in `keep`."""
        keep = set(keep)
        retired = [name for name in self.role_names() if name not in keep]
        with self.db.table(Role) as roles:
            for name in retired:
                roles.update().set(deleted=True, updated_at=utcnow()).where(
                    name=name
                ).execute()
        if retired:
            logger.info("Flagged %d roles as deleted", len(retired))
        return len(retired)

    # permissions

    def upsert_permission(self, permission: str, role: str) -> None:
        with self.db.table(Permission) as permissions:
            permissions.insert("IGNORE").values(
                Permission(permission, strip_role_prefix(role))
            ).execute()

    def get_permission(self, name: str) -> Permission | None:
        with self.db.cursor() as cursor:
            return cursor.execute(
                "SELECT p.* FROM permission p JOIN role r ON r.name = p.role"
                " WHERE p.permission = :name AND r.deleted = FALSE"
                " ORDER BY p.role LIMIT 1",
                name=name,
            ).parseone(Permission)

    def role_permissions(self, role: str) -> list[str]:
        with self.db.table(Permission) as permissions:
            return (
                permissions.select("permission", orderby=["permission"])
                .where(role=strip_role_prefix(role))
                .execute()
                .scalars()
            )

    def has_any_permission(self, role: str) -> bool:
        with self.db.table(Permission) as permissions:
            found = (
                permissions.select("1", limit=1)
                .where(role=strip_role_prefix(role))
                .execute()
                .fetchone()
            )
        return found is not None

    def search_permissions(self, query: str) -> list[str]:
        with self.db.cursor() as cursor:
            return cursor.execute(
                f"SELECT DISTINCT p.permission {LIVE_PERMISSIONS}"
                " AND p.permission LIKE :q ESCAPE '\\'"
                " ORDER BY p.permission",
                q=like(query),
            ).scalars()

    def permission_names(self) -> list[str]:
        with self.db.cursor() as cursor:
            return cursor.execute(
                f"SELECT DISTINCT p.permission {LIVE_PERMISSIONS} ORDER BY p.permission"
            ).scalars()

    def roles_with_permission(self, permission: str) -> list[Role]:
        with self.db.cursor() as cursor:
            return cursor.execute(
                f"SELECT {ROLE_COLUMNS} FROM role r"
                " JOIN permission p ON p.role = r.name"
                " WHERE p.permission = :permission AND r.deleted = FALSE"
                " ORDER BY r.name",
                permission=permission,
            ).parseall(Role)

    def roles_needing_permission_refresh(self) -> list[Role]:
        with self.db.cursor() as cursor:
            return cursor.execute(
                f"SELECT {ROLE_COLUMNS} FROM role r"
                " WHERE r.deleted = FALSE"
                " AND NOT EXISTS (SELECT 1 FROM permission p WHERE p.role = r.name)"
                " ORDER BY r.name"
            ).parseall(Role)

    def count_permissions(self) -> int:
        with self.db.cursor() as cursor:
            return cursor.execute(
                f"SELECT COUNT(DISTINCT p.permission) {LIVE_PERMISSIONS}"
            ).fetchone()[0]

    # services

    def upsert_service(self, service: Service) -> None:
        row = dataclasses.replace(service, updated_at=utcnow())
        with self.db.table(Service) as services:
            services.insert().values(row).on_conflict(
                "name", update=["title", "description", "updated_at"]
            ).execute()

    def get_service(self, name: str) -> Service | None:
        with self.db.table(Service) as services:
            return services.select().where(name=name).execute().one()

    def search_services(self, query: str) -> list[Service]:
        with self.db.table(Service) as services:
            return (
                services.select(orderby=["name"])
                .where("name LIKE :q ESCAPE '\\' OR title LIKE :q ESCAPE '\\'")
                .execute(q=like(query))
                .all()
            )

    def count_services(self) -> int:
        with self.db.table(Service) as services:
            return services.count().get()
