# escrow_sync/listener.py
# Subscribes to the escrow program's logs and applies each decoded event to
# the escrows/trades tables. Events are applied one at a time in receipt
# order; a failed event is logged and skipped (no retry, no replay).

import asyncio, contextlib, logging, signal, sys
from dataclasses import dataclass
from typing import Optional

import asyncpg
import orjson
import websockets

from escrow_sync.events import EventDecodeError, EventSchema, decode_program_data, get_schema
from escrow_sync.parser_logs import extract_program_data, parse_notification
from escrow_sync.reconciler import apply_event
from escrow_sync.sync_config import LOG_FORMAT, load_env

log = logging.getLogger(__name__)

PROGRESS_EVERY = 25

def sub_msg(program_id: str, commitment: str, subid: int = 1):
    return {
        "jsonrpc": "2.0",
        "id": subid,
        "method": "logsSubscribe",
        "params": [
            {"mentions": [program_id]},
            {"commitment": commitment},
        ],
    }

@dataclass
class ListenerStats:
    received: int = 0
    applied: int = 0
    failed: int = 0
    undecodable: int = 0
    skipped_failed_tx: int = 0
    last_slot: Optional[int] = None

    def line(self) -> str:
        return (f"received={self.received} applied={self.applied} failed={self.failed} "
                f"undecodable={self.undecodable} failed_tx={self.skipped_failed_tx} "
                f"last_slot={self.last_slot}")

class EscrowListener:
    def __init__(self, cfg: dict, pool: asyncpg.Pool, schema: EventSchema):
        self.cfg = cfg
        self.pool = pool
        self.schema = schema
        self.program_id = cfg["program_id"]
        self.stats = ListenerStats()

    async def handle_notification(self, msg) -> int:
        """Apply every event in one logsNotification. Returns events applied."""
        note = parse_notification(msg)
        if note is None:
            return 0
        slot = note["slot"]
        if note["err"] is not None:
            # a failed tx changed nothing on chain, its events never happened
            self.stats.skipped_failed_tx += 1
            log.debug("skipping failed tx %s at slot %s", note["signature"], slot)
            return 0
        if slot is not None:
            if self.stats.last_slot is not None and slot < self.stats.last_slot:
                log.warning("slot went backwards: %s after %s (tx %s)",
                            slot, self.stats.last_slot, note["signature"])
            self.stats.last_slot = slot

        done = 0
        for b64 in extract_program_data(note["logs"], self.program_id):
            try:
                name, ev = decode_program_data(self.schema, b64)
            except EventDecodeError as e:
                self.stats.undecodable += 1
                log.warning("undecodable event in tx %s at slot %s: %s", note["signature"], slot, e)
                continue

            self.stats.received += 1
            log.info("%s event detected at slot %s: %s", name, slot, ev)
            if await apply_event(self.pool, ev, self.schema, slot):
                self.stats.applied += 1
                done += 1
            else:
                self.stats.failed += 1

            if self.stats.received % PROGRESS_EVERY == 0:
                log.info("listener: %s", self.stats.line())
        return done

    async def consume(self, ws, stop: asyncio.Event):
        await ws.send(orjson.dumps(sub_msg(self.program_id, self.cfg["commitment"])))
        async for raw in ws:
            try:
                msg = orjson.loads(raw)
            except orjson.JSONDecodeError:
                continue
            if isinstance(msg, dict) and "result" in msg and msg.get("id") == 1:
                log.info("subscribed to program %s logs (subscription %s)", self.program_id, msg["result"])
                continue
            if isinstance(msg, dict) and "error" in msg:
                log.error("subscription error: %s", msg["error"])
                continue
            await self.handle_notification(msg)
            if stop.is_set():
                break

    async def run(self, stop: asyncio.Event):
        while not stop.is_set():
            try:
                async with websockets.connect(self.cfg["rpc_ws"], max_size=20_000_000) as ws:
                    reader = asyncio.create_task(self.consume(ws, stop))
                    stopper = asyncio.create_task(stop.wait())
                    done, _ = await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)
                    if reader in done:
                        stopper.cancel()
                        reader.result()
                        if not stop.is_set():
                            log.warning("websocket closed by server")
                    else:
                        # closing ends the read loop once the current event is applied
                        await ws.close()
                        with contextlib.suppress(websockets.ConnectionClosed):
                            await reader
            except Exception as e:
                log.warning("WS error: %s; reconnecting in %.0fs...", e, self.cfg["reconnect_sec"])
            if stop.is_set():
                break
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.cfg["reconnect_sec"])
        log.info("listener stopped: %s", self.stats.line())

async def check_database(pool: asyncpg.Pool):
    async with pool.acquire() as conn:
        return await conn.fetchval("SELECT NOW()")

async def run_listener(cfg: dict) -> int:
    """Full process lifecycle. Returns the exit code."""
    try:
        schema = get_schema(cfg["event_schema"])
    except ValueError as e:
        log.error("%s", e)
        return 1
    if not cfg["db_url"]:
        log.error("DATABASE_URL missing in .env")
        return 1

    log.info("Starting event listener for program %s on %s (schema %s)",
             cfg["program_id"], cfg["rpc_http"], schema.name)
    try:
        pool = await asyncpg.create_pool(dsn=cfg["db_url"],
                                         min_size=cfg["db_pool_min"], max_size=cfg["db_pool_max"])
    except Exception as e:
        log.error("Failed to connect to Postgres: %s", e)
        return 1
    try:
        await check_database(pool)
    except Exception as e:
        log.error("Failed to connect to Postgres: %s", e)
        await pool.close()
        return 1
    log.info("Connected to Postgres")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for s in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(s, stop.set)

    try:
        await EscrowListener(cfg, pool, schema).run(stop)
    finally:
        log.info("Shutting down event listener...")
        await pool.close()
    return 0

def main():
    cfg = load_env()
    logging.basicConfig(level=cfg["log_level"], format=LOG_FORMAT)
    sys.exit(asyncio.run(run_listener(cfg)))

if __name__ == "__main__":
    main()
