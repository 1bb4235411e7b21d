from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated

ROLE_PREFIX = "roles/"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def strip_role_prefix(name: str) -> str:
    return name.removeprefix(ROLE_PREFIX)


def add_role_prefix(name: str) -> str:
    return name if name.startswith(ROLE_PREFIX) else ROLE_PREFIX + name


@dataclass
class Role:
    name: Annotated[str, "PRIMARY KEY"]
    title: str = ""
    description: str = ""
    stage: str = ""
    deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    permission: str
    role: Annotated[str, "REFERENCES role(name) ON DELETE CASCADE"]
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Service:
    name: Annotated[str, "PRIMARY KEY"]
    title: str = ""
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
