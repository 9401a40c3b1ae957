# escrow_sync/sync_runner.py
# Entry point: `listen` runs the event listener, `diag` does one-shot
# sanity checks (DB tables, RPC health, websocket subscription).

import argparse, asyncio, logging, sys
from typing import List

import aiohttp
import asyncpg
import orjson
import websockets

from escrow_sync.listener import run_listener, sub_msg
from escrow_sync.sync_config import LOG_FORMAT, load_env

log = logging.getLogger(__name__)

REQUIRED_TABLES = ("escrows", "trades")
DIAG_TIMEOUT = 15

###############################################################################
# Diagnostics
###############################################################################

async def diag_db_check(db_url: str) -> List[str]:
    """Returns the required tables that are missing."""
    conn = await asyncpg.connect(dsn=db_url, timeout=DIAG_TIMEOUT)
    try:
        rows = await conn.fetch("""
            SELECT tablename
            FROM pg_tables
            WHERE schemaname = ANY(current_schemas(false))
        """)
        present = {r["tablename"] for r in rows}
        return [t for t in REQUIRED_TABLES if t not in present]
    finally:
        await conn.close()

async def diag_rpc_check(rpc_http: str) -> str:
    payload = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
    timeout = aiohttp.ClientTimeout(total=DIAG_TIMEOUT)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.post(rpc_http, json=payload) as r:
            r.raise_for_status()
            body = await r.json()
    if "error" in body:
        raise RuntimeError(f"getHealth error: {body['error']}")
    return body.get("result", "?")

async def diag_ws_check(rpc_ws: str, program_id: str, commitment: str):
    async with websockets.connect(rpc_ws, max_size=20_000_000) as ws:
        await ws.send(orjson.dumps(sub_msg(program_id, commitment)))
        while True:
            msg = orjson.loads(await asyncio.wait_for(ws.recv(), timeout=DIAG_TIMEOUT))
            if isinstance(msg, dict) and msg.get("id") == 1:
                if "error" in msg:
                    raise RuntimeError(f"logsSubscribe error: {msg['error']}")
                return msg.get("result")

async def run_diag(cfg: dict) -> int:
    ok = True

    log.info("[DIAG] Checking DB…")
    if not cfg["db_url"]:
        log.error("[DIAG] DATABASE_URL not set")
        ok = False
    else:
        try:
            missing = await diag_db_check(cfg["db_url"])
            if missing:
                log.error("[DIAG] DB reachable but missing tables: %s", ", ".join(missing))
                ok = False
            else:
                log.info("[DIAG] DB OK (escrows, trades present)")
        except Exception as e:
            log.error("[DIAG] DB DOWN: %s", e)
            ok = False

    log.info("[DIAG] Checking RPC %s…", cfg["rpc_http"])
    try:
        log.info("[DIAG] RPC health: %s", await diag_rpc_check(cfg["rpc_http"]))
    except Exception as e:
        log.error("[DIAG] RPC DOWN: %s", e)
        ok = False

    log.info("[DIAG] Checking WebSocket %s…", cfg["rpc_ws"])
    try:
        subid = await diag_ws_check(cfg["rpc_ws"], cfg["program_id"], cfg["commitment"])
        log.info("[DIAG] WS OK, subscription %s for program %s", subid, cfg["program_id"])
    except Exception as e:
        log.error("[DIAG] WS DOWN: %s", e)
        ok = False

    return 0 if ok else 1

###############################################################################
# CLI
###############################################################################

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="escrow-sync — project escrow program events into Postgres"
    )
    sub = p.add_subparsers(dest="cmd")

    p_listen = sub.add_parser("listen", help="Subscribe to program events and apply them (default)")
    p_listen.add_argument(
        "--schema",
        dest="schema",
        choices=["current", "legacy"],
        default=None,
        help="Event schema version (overrides ESCROW_EVENT_SCHEMA)",
    )

    sub.add_parser("diag", help="One-shot sanity checks (DB + RPC + WS)")
    return p

def main(argv=None):
    parser = build_argparser()
    args = parser.parse_args(argv)

    cfg = load_env()
    logging.basicConfig(level=cfg["log_level"], format=LOG_FORMAT)

    if args.cmd == "diag":
        sys.exit(asyncio.run(run_diag(cfg)))
    if args.cmd in (None, "listen"):
        if getattr(args, "schema", None):
            cfg["event_schema"] = args.schema
        sys.exit(asyncio.run(run_listener(cfg)))
    parser.print_help()
    sys.exit(2)

if __name__ == "__main__":
    main()
