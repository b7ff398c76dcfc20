"""Tests for settings parsing, address parsing and component wiring."""

import asyncio

import httpx
import pytest

from s3_gateway.backends.hierarchical import HierarchicalBackend
from s3_gateway.backends.passthrough import PassthroughBackend
from s3_gateway.cache import FolderResolutionCache
from s3_gateway.config import Settings
from s3_gateway.dependencies import build_backend, build_store, parse_object_address
from s3_gateway.stores import DuckDBStore, MemoryStore


class TestObjectAddress:
    @pytest.mark.parametrize(
        ("path", "bucket", "key"),
        [
            ("photos/2024/cat.jpg", "photos", "2024/cat.jpg"),
            ("/photos/cat.jpg", "photos", "cat.jpg"),
            ("photos//2024//cat.jpg", "photos", "2024/cat.jpg"),
            ("photos/", "photos", ""),
            ("photos", "photos", ""),
            ("", "", ""),
        ],
    )
    def test_parse(self, path, bucket, key):
        address = parse_object_address(path)
        assert (address.bucket, address.key) == (bucket, key)
        assert address.is_bucket_root == (key == "")


class TestSettings:
    def test_allowed_buckets_from_env(self, monkeypatch):
        monkeypatch.setenv("ALLOWED_BUCKETS", " photos, backups ,,")
        config = Settings(_env_file=None)
        assert config.allowed_bucket_names == ["photos", "backups"]

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        config = Settings(_env_file=None)
        assert config.allowed_bucket_names == []
        assert config.s3_region == "auto"
        assert config.cache_db_path == tmp_path / "cache.duckdb"
        assert config.cache_control == "s-maxage=300, no-store"
        assert not config.drive_oauth_configured
        assert config.s3_sig_v4_max_age_seconds == 0

    def test_invalid_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "ftp")
        with pytest.raises(ValueError):
            Settings(_env_file=None)


class TestWiring:
    def test_memory_store(self):
        assert isinstance(build_store(Settings(_env_file=None, cache_store="memory")), MemoryStore)

    def test_duckdb_store(self, tmp_path):
        config = Settings(_env_file=None, cache_store="duckdb", cache_db_path=tmp_path / "kv" / "cache.duckdb")
        store = build_store(config)
        assert isinstance(store, DuckDBStore)
        assert (tmp_path / "kv" / "cache.duckdb").exists()

    def test_passthrough_backend(self):
        config = Settings(_env_file=None, storage_backend="passthrough", upstream_endpoint="s3.example.com")
        backend = build_backend(config, httpx.AsyncClient(), FolderResolutionCache(MemoryStore()))
        assert isinstance(backend, PassthroughBackend)

    def test_drive_backend(self):
        config = Settings(
            _env_file=None,
            storage_backend="drive",
            drive_access_token="token",
            drive_root_folder_id="shared-root",
        )
        backend = build_backend(config, httpx.AsyncClient(), FolderResolutionCache(MemoryStore()))
        assert isinstance(backend, HierarchicalBackend)
        assert backend.root_folder_id == "shared-root"

    def test_drive_backend_prefers_refresh_token_grant(self):
        config = Settings(
            _env_file=None,
            storage_backend="drive",
            drive_access_token="static",
            drive_client_id="cid",
            drive_client_secret="csecret",
            drive_refresh_token="rtoken",
        )
        assert config.drive_oauth_configured

        backend = build_backend(config, httpx.AsyncClient(), FolderResolutionCache(MemoryStore()))
        assert backend.client._tokens.can_refresh

    def test_drive_backend_partial_oauth_uses_static_token(self):
        config = Settings(
            _env_file=None,
            storage_backend="drive",
            drive_access_token="static",
            drive_client_id="cid",
            drive_client_secret="csecret",
        )
        assert not config.drive_oauth_configured

        backend = build_backend(config, httpx.AsyncClient(), FolderResolutionCache(MemoryStore()))
        assert not backend.client._tokens.can_refresh
        assert asyncio.run(backend.client._tokens.get_token()) == "static"
