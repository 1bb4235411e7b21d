from dataclasses import dataclass, field
import io
import json
import os
import typing
from pathlib import Path
from typing import (
    Any,
    BinaryIO,
    Literal,
    Mapping,
    Protocol,
    TextIO,
    runtime_checkable,
)

from pydantic import TypeAdapter, ValidationError, field_validator
from pydantic.dataclasses import dataclass as pydantic_dataclass
import platformdirs
import toml
import yaml

from gcp_iam.errors import ConfigError

APP_NAME = "gcp-iam"
CONFIG_ENV = "GCP_IAM_CONFIG"
MAX_PAGE_SIZE = 1000

type Format = Literal["toml", "json", "yaml"]
SUFFIX_FORMATS: dict[str, Format] = {
    "toml": "toml",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
}


def dump_str(value: Any, format: Format) -> str:
    match format:
        case "toml":
            return toml.dumps(value)
        case "json":
            return json.dumps(value, indent=2)
        case "yaml":
            return yaml.safe_dump(value, sort_keys=False)
    raise ValueError(f"Unsupported format: {format}.")


def read_format(file: TextIO | BinaryIO, format: Format) -> dict:
    text = file.read()
    if isinstance(text, bytes):
        text = text.decode()
    match format:
        case "toml":
            return toml.loads(text)
        case "json":
            return json.loads(text)
        case "yaml":
            return yaml.safe_load(text) or {}
    raise ValueError(f"Unsupported format: {format}.")


def format_for(path: Path) -> Format:
    try:
        return SUFFIX_FORMATS[path.suffix.lstrip(".").lower()]
    except KeyError:
        raise ValueError(
            f"Unknown extension {path}, pass the format as an argument."
        ) from None


TYPEADAPTER_CACHE: dict[type, TypeAdapter] = {}


def typeadapter[M](model: type[M]) -> TypeAdapter[M]:
    try:
        return TYPEADAPTER_CACHE[model]
    except KeyError:
        TYPEADAPTER_CACHE[model] = adapter = TypeAdapter(model)
        return adapter


def parse_python[M](obj: Any, model: type[M]) -> M:
    return typeadapter(model).validate_python(obj)


def dump_python[M](obj: M) -> dict:
    return typeadapter(type(obj)).dump_python(obj, mode="json")


def load_path(path: Path, format: Format | None = None) -> dict:
    if not path.exists():
        return {}
    elif path.is_dir():
        raise ValueError(f"Expected a file not a directory: {path}")
    with path.open("rb") as file:
        return read_format(file, format or format_for(path))


@runtime_checkable
class SourceType(Protocol):
    def load(self) -> Mapping[str, Any]: ...


@dataclass
class StrSource:
    data: str
    format: Format = "toml"

    def load(self) -> dict:
        return read_format(io.StringIO(self.data), self.format)

    def __str__(self) -> str:
        return "<string>"


@dataclass
class MappingSource:
    data: Mapping

    def load(self) -> Mapping:
        return self.data

    def __str__(self) -> str:
        return "<mapping>"


@dataclass
class PathSource:
    path: Path
    format: Format | None = None

    def load(self) -> dict:
        return load_path(self.path, self.format)

    def __str__(self) -> str:
        return str(self.path)


@dataclass
class PlatformdirsSource:
    name: str = APP_NAME

    @property
    def configpath(self) -> Path:
        return self.configdir / "config.toml"

    @property
    def configdir(self) -> Path:
        return Path(platformdirs.user_config_dir(self.name)).resolve()

    @property
    def datadir(self) -> Path:
        return Path(platformdirs.user_data_dir(self.name)).resolve()

    def load(self) -> dict:
        return load_path(self.configpath)

    def __str__(self) -> str:
        return str(self.configpath)


def default_database_path() -> Path:
    return PlatformdirsSource().datadir / "database.sqlite"


@pydantic_dataclass
class DatabaseConfig:
    path: Path = field(default_factory=default_database_path)

    @field_validator("path")
    @classmethod
    def expand(cls, path: Path) -> Path:
        return path.expanduser()


@pydantic_dataclass
class LoggingConfig:
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"

    @field_validator("level", mode="before")
    @classmethod
    def upper(cls, level: Any) -> Any:
        return level.upper() if isinstance(level, str) else level


@pydantic_dataclass
class SyncConfig:
    page_size: int = MAX_PAGE_SIZE
    services: bool = True
    retire: bool = False

    @field_validator("page_size")
    @classmethod
    def cap(cls, page_size: int) -> int:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        return min(page_size, MAX_PAGE_SIZE)


SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "logging": LoggingConfig,
    "sync": SyncConfig,
}


@dataclass
class ConfigConfig[S: SourceType]:
    """Lazily parses named sections of a config source into dataclasses."""

    source: S
    section_classes: dict[str, type] = field(default_factory=SECTIONS.copy)
    section_instances: dict[str, Any] = field(default_factory=dict)
    data_cache: Mapping[str, Any] | None = None

    @property
    def data(self) -> Mapping:
        if self.data_cache is None:
            try:
                data = self.source.load()
            except (ValueError, toml.TomlDecodeError, yaml.YAMLError) as exc:
                raise ConfigError(f"Cannot read config {self.source}: {exc}") from exc
            unknown = set(data) - set(self.section_classes)
            if unknown:
                raise ConfigError(
                    f"Unknown config sections in {self.source}: {', '.join(sorted(unknown))}"
                )
            self.data_cache = data
        return self.data_cache

    def get_section(self, key: str) -> Any:
        if key not in self.section_instances:
            cls = self.section_classes[key]
            try:
                instance = parse_python(self.data.get(key, {}), cls)
            except ValidationError as exc:
                raise ConfigError(f"Invalid [{key}] in {self.source}: {exc}") from exc
            self.section_instances[key] = instance
        return self.section_instances[key]

    @property
    def database(self) -> DatabaseConfig:
        return self.get_section("database")

    @property
    def logging(self) -> LoggingConfig:
        return self.get_section("logging")

    @property
    def sync(self) -> SyncConfig:
        return self.get_section("sync")

    def to_dict(self) -> dict[str, dict]:
        return {key: dump_python(self.get_section(key)) for key in self.section_classes}

    def dumps(self, format: Format = "toml") -> str:
        return dump_str(self.to_dict(), format)

    @typing.overload
    @staticmethod
    def load[SS: SourceType](*, source: SS) -> "ConfigConfig[SS]": ...
    @typing.overload
    @staticmethod
    def load(*, name: str) -> "ConfigConfig[PlatformdirsSource]": ...
    @typing.overload
    @staticmethod
    def load(
        *, path: Path, format: Format | None = None
    ) -> "ConfigConfig[PathSource]": ...
    @typing.overload
    @staticmethod
    def load(*, text: str, format: Format = "toml") -> "ConfigConfig[StrSource]": ...
    @typing.overload
    @staticmethod
    def load(*, mapping: Mapping) -> "ConfigConfig[MappingSource]": ...
    @staticmethod
    def load(
        *, source=None, name=None, path=None, text=None, mapping=None, format=None
    ) -> "ConfigConfig":
        if source is not None:
            src = source
        elif name is not None:
            src = PlatformdirsSource(name)
        elif path is not None:
            src = PathSource(Path(path), format)
        elif text is not None:
            src = StrSource(text, format or "toml")
        elif mapping is not None:
            src = MappingSource(mapping)
        else:
            raise ValueError("Must pass a kwarg.")
        return ConfigConfig(src)

    def reload(self) -> None:
        self.data_cache = None
        self.section_instances = dict()


def resolve(path: Path | None = None) -> ConfigConfig:
    """Config for one invocation: explicit path, then $GCP_IAM_CONFIG, then platformdirs."""
    if path is None and (env := os.environ.get(CONFIG_ENV)):
        path = Path(env)
    if path is not None:
        return ConfigConfig.load(path=path.expanduser())
    return ConfigConfig.load(name=APP_NAME)


load = ConfigConfig.load
