"""
Store configuration for dbmanager.

Each store directory holds a ``dbmanager.toml``::

    [store]
    version = 1
    created = "2026-01-01T00:00:00+00:00"

    [backend]
    name = "mongo"                       # "local" (default), "mongo", or a plugin
    uri = "mongodb://localhost:27017"
    database = "app"

    [manager]
    collection = "items"
    auto_insert = false

Every key under ``[backend]`` except ``name`` is passed to the backend.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "dbmanager.toml"
CONFIG_VERSION = 1
DEFAULT_COLLECTION = "items"
STORE_PATH_ENV = "DBMANAGER_STORE_PATH"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class BackendConfig:
    """Storage backend name and its parameters (e.g. uri, database)."""
    name: str = "local"
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_section(cls, section: dict[str, Any]) -> "BackendConfig":
        name = section.get("name", "local")
        if not isinstance(name, str) or not name:
            raise ValueError(f"Invalid backend.name: {name!r}")
        return cls(name=name, params={k: v for k, v in section.items() if k != "name"})

    def to_section(self) -> dict[str, Any]:
        return {"name": self.name, **self.params}


@dataclass
class StoreConfig:
    """A store directory and the settings read from its dbmanager.toml."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=_now)
    backend: BackendConfig = field(default_factory=BackendConfig)

    # DBManager instance defaults
    collection: str = DEFAULT_COLLECTION
    auto_insert: bool = False

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILENAME


def get_config_dir(store_path: Optional[Path] = None) -> Path:
    """
    Resolve the store directory: explicit argument, then the
    DBMANAGER_STORE_PATH environment variable, then ``~/.dbmanager``.
    """
    if store_path is not None:
        return Path(store_path).expanduser()
    env = os.environ.get(STORE_PATH_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".dbmanager"


def _manager_settings(section: dict[str, Any]) -> tuple[str, bool]:
    collection = section.get("collection", DEFAULT_COLLECTION)
    if not isinstance(collection, str) or not collection:
        raise ValueError(f"Invalid manager.collection: {collection!r}")
    auto_insert = section.get("auto_insert", False)
    if not isinstance(auto_insert, bool):
        raise ValueError(f"Invalid manager.auto_insert: {auto_insert!r}")
    return collection, auto_insert


def load_config(store_path: Path) -> StoreConfig:
    """
    Read ``dbmanager.toml`` from a store directory.

    Raises:
        FileNotFoundError: if the directory has no config file
        ValueError: if the file is newer than this version understands, or
            a setting has the wrong type
    """
    path = Path(store_path) / CONFIG_FILENAME
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    data = tomllib.loads(path.read_text(encoding="utf-8"))

    store = data.get("store", {})
    version = store.get("version", CONFIG_VERSION)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    collection, auto_insert = _manager_settings(data.get("manager", {}))
    return StoreConfig(
        path=Path(store_path),
        version=version,
        created=store.get("created", ""),
        backend=BackendConfig.from_section(data.get("backend", {})),
        collection=collection,
        auto_insert=auto_insert,
    )


def save_config(config: StoreConfig) -> None:
    """Write ``config`` to its store directory, creating the directory if needed."""
    config.path.mkdir(parents=True, exist_ok=True)
    document = {
        "store": {"version": config.version, "created": config.created},
        "backend": config.backend.to_section(),
        "manager": {"collection": config.collection, "auto_insert": config.auto_insert},
    }
    config.config_path.write_text(tomli_w.dumps(document), encoding="utf-8")


def load_or_create_config(store_path: Path) -> StoreConfig:
    """Load the store's config, writing a default one on first use."""
    if (Path(store_path) / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=Path(store_path))
    save_config(config)
    return config
