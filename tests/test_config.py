"""Tests for store configuration and backend selection."""

import pytest

from dbmanager import DBManager, SqliteDatabase
from dbmanager.backend import close_database, create_database, create_manager
from dbmanager.config import (
    CONFIG_FILENAME,
    BackendConfig,
    StoreConfig,
    get_config_dir,
    load_config,
    load_or_create_config,
    save_config,
)


# ---------------------------------------------------------------------------
# Config files
# ---------------------------------------------------------------------------


class TestConfig:
    def test_create_default(self, tmp_path):
        config = load_or_create_config(tmp_path)
        assert (tmp_path / CONFIG_FILENAME).exists()
        assert config.backend.name == "local"
        assert config.collection == "items"
        assert config.auto_insert is False

    def test_round_trip(self, tmp_path):
        config = StoreConfig(
            path=tmp_path,
            backend=BackendConfig(name="mongo", params={"uri": "mongodb://db:27017", "database": "app"}),
            collection="notes",
            auto_insert=True,
        )
        save_config(config)
        loaded = load_config(tmp_path)
        assert loaded.backend.name == "mongo"
        assert loaded.backend.params == {"uri": "mongodb://db:27017", "database": "app"}
        assert loaded.collection == "notes"
        assert loaded.auto_insert is True
        assert loaded.created == config.created

    def test_existing_config_is_loaded(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[manager]\ncollection = "docs"\n')
        assert load_or_create_config(tmp_path).collection == "docs"

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer than supported"):
            load_config(tmp_path)

    def test_invalid_auto_insert(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[manager]\nauto_insert = "yes"\n')
        with pytest.raises(ValueError, match="auto_insert"):
            load_config(tmp_path)

    def test_invalid_collection(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[manager]\ncollection = ""\n')
        with pytest.raises(ValueError, match="collection"):
            load_config(tmp_path)


class TestConfigDir:
    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DBMANAGER_STORE_PATH", str(tmp_path / "env"))
        assert get_config_dir(tmp_path / "explicit") == tmp_path / "explicit"

    def test_env_var(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DBMANAGER_STORE_PATH", str(tmp_path / "env"))
        assert get_config_dir() == tmp_path / "env"

    def test_home_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DBMANAGER_STORE_PATH", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert get_config_dir() == tmp_path / ".dbmanager"


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class TestBackend:
    def test_local_database(self, tmp_path):
        db = create_database(StoreConfig(path=tmp_path))
        try:
            assert isinstance(db, SqliteDatabase)
            assert db.path == tmp_path / "documents.db"
        finally:
            db.close()

    def test_local_filename(self, tmp_path):
        config = StoreConfig(path=tmp_path, backend=BackendConfig(params={"filename": "x.db"}))
        db = create_database(config)
        try:
            assert db.path == tmp_path / "x.db"
        finally:
            db.close()

    def test_mongo_needs_database(self, tmp_path):
        config = StoreConfig(path=tmp_path, backend=BackendConfig(name="mongo"))
        with pytest.raises(ValueError, match="database"):
            create_database(config)

    def test_unknown_backend(self, tmp_path):
        config = StoreConfig(path=tmp_path, backend=BackendConfig(name="nope"))
        with pytest.raises(ValueError, match="Unknown backend"):
            create_database(config)

    @pytest.mark.asyncio
    async def test_create_manager_uses_config(self, tmp_path):
        config = StoreConfig(path=tmp_path, collection="notes", auto_insert=True)
        manager = create_manager(config)
        try:
            assert isinstance(manager, DBManager)
            assert manager.is_ready
            item = await manager.get_one(find={"slug": "x"})
            assert item["slug"] == "x"
            assert await manager.db.list_collection_names() == ["notes"]
        finally:
            await close_database(manager.db)

    @pytest.mark.asyncio
    async def test_close_database_through_client(self):
        closed = []

        class Client:
            async def close(self):
                closed.append(True)

        class Database:
            client = Client()

        await close_database(Database())
        assert closed == [True]
