# escrow_sync/sync_config.py
import os
from dotenv import load_dotenv

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEFAULT_RPC_HTTP   = "https://api.devnet.solana.com"
DEFAULT_RPC_WS     = "wss://api.devnet.solana.com"
DEFAULT_PROGRAM_ID = "4PonUp1nPEzDPnRMPjTqufLT3f37QuBJGk1CVnsTXx7x"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"

def load_env():
    load_dotenv(os.path.join(ROOT, ".env"))
    cfg = {
        "rpc_http":      os.getenv("SOLANA_RPC")          or DEFAULT_RPC_HTTP,
        "rpc_ws":        os.getenv("SOLANA_WS")           or DEFAULT_RPC_WS,
        "program_id":    os.getenv("PROGRAM_ID")          or DEFAULT_PROGRAM_ID,
        # DATABASE_URL wins; DB_URL kept for older .env files
        "db_url":        os.getenv("DATABASE_URL")        or os.getenv("DB_URL") or "",
        "commitment":    os.getenv("SOLANA_COMMITMENT")   or "confirmed",
        "event_schema":  os.getenv("ESCROW_EVENT_SCHEMA") or "current",
        "db_pool_min":   int(os.getenv("DB_POOL_MIN", "1")),
        "db_pool_max":   int(os.getenv("DB_POOL_MAX", "4")),
        "reconnect_sec": float(os.getenv("WS_RECONNECT_SEC", "5")),
        "log_level":     (os.getenv("LOG_LEVEL") or "INFO").upper(),
    }
    return cfg
