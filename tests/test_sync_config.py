"""Tests for environment-driven configuration."""

from unittest.mock import patch

import pytest

from escrow_sync import sync_config
from escrow_sync.sync_config import (
    DEFAULT_PROGRAM_ID,
    DEFAULT_RPC_HTTP,
    DEFAULT_RPC_WS,
    load_env,
)

ENV_KEYS = [
    "SOLANA_RPC", "SOLANA_WS", "PROGRAM_ID", "DATABASE_URL", "DB_URL",
    "SOLANA_COMMITMENT", "ESCROW_EVENT_SCHEMA", "DB_POOL_MIN", "DB_POOL_MAX",
    "WS_RECONNECT_SEC", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for k in ENV_KEYS:
        monkeypatch.delenv(k, raising=False)
    # keep a developer's .env out of the picture
    with patch.object(sync_config, "load_dotenv"):
        yield monkeypatch


class TestLoadEnv:
    def test_defaults(self, clean_env):
        cfg = load_env()
        assert cfg["rpc_http"] == DEFAULT_RPC_HTTP
        assert cfg["rpc_ws"] == DEFAULT_RPC_WS
        assert cfg["program_id"] == DEFAULT_PROGRAM_ID
        assert cfg["db_url"] == ""
        assert cfg["commitment"] == "confirmed"
        assert cfg["event_schema"] == "current"
        assert (cfg["db_pool_min"], cfg["db_pool_max"]) == (1, 4)
        assert cfg["reconnect_sec"] == 5.0
        assert cfg["log_level"] == "INFO"

    def test_overrides(self, clean_env):
        clean_env.setenv("SOLANA_RPC", "https://rpc.example")
        clean_env.setenv("SOLANA_WS", "wss://rpc.example")
        clean_env.setenv("PROGRAM_ID", "Prog111")
        clean_env.setenv("DATABASE_URL", "postgresql://a@b/c")
        clean_env.setenv("ESCROW_EVENT_SCHEMA", "legacy")
        clean_env.setenv("DB_POOL_MAX", "10")
        clean_env.setenv("LOG_LEVEL", "debug")
        cfg = load_env()
        assert cfg["rpc_http"] == "https://rpc.example"
        assert cfg["rpc_ws"] == "wss://rpc.example"
        assert cfg["program_id"] == "Prog111"
        assert cfg["db_url"] == "postgresql://a@b/c"
        assert cfg["event_schema"] == "legacy"
        assert cfg["db_pool_max"] == 10
        assert cfg["log_level"] == "DEBUG"

    def test_db_url_fallback(self, clean_env):
        clean_env.setenv("DB_URL", "postgresql://old/db")
        assert load_env()["db_url"] == "postgresql://old/db"

    def test_database_url_wins(self, clean_env):
        clean_env.setenv("DB_URL", "postgresql://old/db")
        clean_env.setenv("DATABASE_URL", "postgresql://new/db")
        assert load_env()["db_url"] == "postgresql://new/db"

    def test_empty_values_fall_back(self, clean_env):
        clean_env.setenv("SOLANA_RPC", "")
        assert load_env()["rpc_http"] == DEFAULT_RPC_HTTP
