"""Tests for the command line and diagnostics."""

from unittest.mock import AsyncMock, patch

import pytest

from escrow_sync import sync_runner
from escrow_sync.sync_runner import build_argparser, main, run_diag


def _cfg(**over):
    cfg = {
        "rpc_http": "https://rpc.test",
        "rpc_ws": "wss://rpc.test",
        "program_id": "Prog111",
        "db_url": "postgresql://u:p@localhost/escrow",
        "commitment": "confirmed",
        "event_schema": "current",
        "db_pool_min": 1,
        "db_pool_max": 2,
        "reconnect_sec": 5.0,
        "log_level": "INFO",
    }
    cfg.update(over)
    return cfg


class TestArgparser:
    def test_listen_schema(self):
        args = build_argparser().parse_args(["listen", "--schema", "legacy"])
        assert (args.cmd, args.schema) == ("listen", "legacy")

    def test_no_command(self):
        assert build_argparser().parse_args([]).cmd is None

    def test_bad_schema_rejected(self):
        with pytest.raises(SystemExit):
            build_argparser().parse_args(["listen", "--schema", "v9"])


class TestMain:
    def test_default_runs_listener(self):
        with patch.object(sync_runner, "load_env", return_value=_cfg()), \
             patch.object(sync_runner, "run_listener", new=AsyncMock(return_value=0)) as rl:
            with pytest.raises(SystemExit) as exc:
                main([])
        assert exc.value.code == 0
        assert rl.await_args.args[0]["event_schema"] == "current"

    def test_schema_flag_overrides_env(self):
        with patch.object(sync_runner, "load_env", return_value=_cfg()), \
             patch.object(sync_runner, "run_listener", new=AsyncMock(return_value=1)) as rl:
            with pytest.raises(SystemExit) as exc:
                main(["listen", "--schema", "legacy"])
        assert exc.value.code == 1
        assert rl.await_args.args[0]["event_schema"] == "legacy"

    def test_diag(self):
        with patch.object(sync_runner, "load_env", return_value=_cfg()), \
             patch.object(sync_runner, "run_diag", new=AsyncMock(return_value=0)) as rd:
            with pytest.raises(SystemExit) as exc:
                main(["diag"])
        assert exc.value.code == 0
        rd.assert_awaited_once()


class TestRunDiag:
    @pytest.mark.asyncio
    async def test_all_ok(self):
        with patch.object(sync_runner, "diag_db_check", new=AsyncMock(return_value=[])), \
             patch.object(sync_runner, "diag_rpc_check", new=AsyncMock(return_value="ok")), \
             patch.object(sync_runner, "diag_ws_check", new=AsyncMock(return_value=12)):
            assert await run_diag(_cfg()) == 0

    @pytest.mark.asyncio
    async def test_missing_tables_fail(self, caplog):
        with patch.object(sync_runner, "diag_db_check", new=AsyncMock(return_value=["trades"])), \
             patch.object(sync_runner, "diag_rpc_check", new=AsyncMock(return_value="ok")), \
             patch.object(sync_runner, "diag_ws_check", new=AsyncMock(return_value=12)):
            assert await run_diag(_cfg()) == 1
        assert "missing tables: trades" in caplog.text

    @pytest.mark.asyncio
    async def test_each_check_runs_even_after_failure(self):
        ws = AsyncMock(side_effect=OSError("refused"))
        with patch.object(sync_runner, "diag_db_check", new=AsyncMock(side_effect=OSError("down"))), \
             patch.object(sync_runner, "diag_rpc_check", new=AsyncMock(side_effect=RuntimeError("503"))), \
             patch.object(sync_runner, "diag_ws_check", new=ws):
            assert await run_diag(_cfg()) == 1
        ws.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_database_url(self):
        db = AsyncMock()
        with patch.object(sync_runner, "diag_db_check", new=db), \
             patch.object(sync_runner, "diag_rpc_check", new=AsyncMock(return_value="ok")), \
             patch.object(sync_runner, "diag_ws_check", new=AsyncMock(return_value=1)):
            assert await run_diag(_cfg(db_url="")) == 1
        db.assert_not_called()
