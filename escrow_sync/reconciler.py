# escrow_sync/reconciler.py
# Event -> idempotent SQL against the escrows/trades read model.
#
# Escrow state machine: CREATED -> FUNDED -> RELEASED
#                       CREATED/FUNDED -> CANCELLED
# RELEASED and CANCELLED are terminal; every UPDATE below carries a status
# guard so a late or re-delivered event cannot move a row backwards.
#
# Trades are pre-existing rows with two leg slots. The leg an escrow belongs
# to is found per row with CASE on leg1/leg2_escrow_address, and only that
# leg's columns change. In SET, column references read the pre-update row.
# overall_status rules:
#   release: COMPLETED when the leg is the only leg or the other leg is
#            COMPLETED; CANCELLED when the other leg is CANCELLED
#   cancel:  CANCELLED when the leg is the only leg or the other leg is
#            COMPLETED or CANCELLED
#   once COMPLETED/CANCELLED it never changes.

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Tuple

import asyncpg

from escrow_sync.events import (
    EscrowCancelled, EscrowCreated, EscrowReleased, EventSchema, FundsDeposited,
)

log = logging.getLogger(__name__)

TOKEN_TYPE = "USDC"

SQL_INSERT_ESCROW = """
INSERT INTO escrows (
  trade_id, escrow_address, seller_address, buyer_address, token_type, amount,
  status, sequential, sequential_escrow_address, created_at, updated_at
)
VALUES ($1, $2, $3, $4, $5, $6, 'CREATED', $7, $8, NOW(), NOW())
ON CONFLICT (escrow_address) DO NOTHING
"""

# legacy program: the first deposit is also the creation
SQL_UPSERT_FUNDED_ESCROW = """
INSERT INTO escrows (
  trade_id, escrow_address, seller_address, buyer_address, token_type, amount,
  status, deposit_timestamp, sequential, created_at, updated_at
)
VALUES ($1, $2, $3, $4, $5, $6, 'FUNDED', NOW(), false, NOW(), NOW())
ON CONFLICT (escrow_address)
DO UPDATE SET
  status = 'FUNDED',
  deposit_timestamp = COALESCE(escrows.deposit_timestamp, NOW()),
  amount = EXCLUDED.amount,
  updated_at = NOW()
WHERE escrows.status IN ('CREATED', 'FUNDED')
"""

SQL_MARK_FUNDED = """
UPDATE escrows
SET status = 'FUNDED',
    deposit_timestamp = COALESCE(deposit_timestamp, NOW()),
    amount = $3,
    updated_at = NOW()
WHERE escrow_address = $1 AND trade_id = $2
  AND status IN ('CREATED', 'FUNDED')
"""

SQL_MARK_RELEASED = """
UPDATE escrows
SET status = 'RELEASED',
    updated_at = NOW()
WHERE escrow_address = $1 AND trade_id = $2
  AND status NOT IN ('RELEASED', 'CANCELLED')
"""

SQL_MARK_CANCELLED = """
UPDATE escrows
SET status = 'CANCELLED',
    updated_at = NOW()
WHERE escrow_address = $1 AND trade_id = $2
  AND status NOT IN ('RELEASED', 'CANCELLED')
"""

# a leg is open while its state is NULL or anything non-terminal
_LEG_OPEN = """(
    (leg1_escrow_address = $1 AND COALESCE(leg1_state, '') NOT IN ('COMPLETED', 'CANCELLED'))
    OR
    (leg2_escrow_address = $1 AND COALESCE(leg2_state, '') NOT IN ('COMPLETED', 'CANCELLED'))
  )"""

SQL_RELEASE_TRADE_LEG = f"""
UPDATE trades
SET leg1_state = CASE WHEN leg1_escrow_address = $1 THEN 'COMPLETED' ELSE leg1_state END,
    leg1_released_at = CASE WHEN leg1_escrow_address = $1 THEN NOW() ELSE leg1_released_at END,
    leg2_state = CASE WHEN leg2_escrow_address = $1 THEN 'COMPLETED' ELSE leg2_state END,
    leg2_released_at = CASE WHEN leg2_escrow_address = $1 THEN NOW() ELSE leg2_released_at END,
    overall_status = CASE
      WHEN overall_status IN ('COMPLETED', 'CANCELLED') THEN overall_status
      WHEN (leg1_escrow_address = $1 AND leg2_escrow_address IS NULL) OR
           (leg1_escrow_address = $1 AND leg2_state = 'COMPLETED') OR
           (leg2_escrow_address = $1 AND leg1_state = 'COMPLETED')
      THEN 'COMPLETED'
      WHEN (leg1_escrow_address = $1 AND leg2_state = 'CANCELLED') OR
           (leg2_escrow_address = $1 AND leg1_state = 'CANCELLED')
      THEN 'CANCELLED'
      ELSE overall_status
    END
WHERE id = $2
  AND {_LEG_OPEN}
"""

SQL_CANCEL_TRADE_LEG = f"""
UPDATE trades
SET leg1_state = CASE WHEN leg1_escrow_address = $1 THEN 'CANCELLED' ELSE leg1_state END,
    leg1_cancelled_at = CASE WHEN leg1_escrow_address = $1 THEN NOW() ELSE leg1_cancelled_at END,
    leg2_state = CASE WHEN leg2_escrow_address = $1 THEN 'CANCELLED' ELSE leg2_state END,
    leg2_cancelled_at = CASE WHEN leg2_escrow_address = $1 THEN NOW() ELSE leg2_cancelled_at END,
    overall_status = CASE
      WHEN overall_status IN ('COMPLETED', 'CANCELLED') THEN overall_status
      WHEN (leg1_escrow_address = $1 AND leg2_escrow_address IS NULL) OR
           (leg1_escrow_address = $1 AND leg2_state IN ('COMPLETED', 'CANCELLED')) OR
           (leg2_escrow_address = $1 AND leg1_state IN ('COMPLETED', 'CANCELLED'))
      THEN 'CANCELLED'
      ELSE overall_status
    END
WHERE id = $2
  AND {_LEG_OPEN}
"""

@dataclass(frozen=True)
class Mutation:
    label: str
    sql: str
    args: Tuple

BIGINT_MAX = 2**63 - 1

def _trade_id(ev) -> int:
    # escrows.trade_id / trades.id are BIGINT; asyncpg wants an int.
    # A u64 above BIGINT_MAX cannot be stored, so the event is rejected here.
    n = int(ev.trade_id)
    if n > BIGINT_MAX:
        raise ValueError(f"trade id {ev.trade_id} exceeds BIGINT range")
    return n

def plan(ev, schema: EventSchema) -> List[Mutation]:
    """Mutations for one event, in the order they must run."""
    if isinstance(ev, EscrowCreated):
        return [Mutation("escrow.create", SQL_INSERT_ESCROW, (
            _trade_id(ev), ev.escrow_address, ev.seller_address, ev.buyer_address,
            TOKEN_TYPE, Decimal(ev.amount), ev.sequential, ev.sequential_escrow_address,
        ))]

    if isinstance(ev, FundsDeposited):
        if schema.deposit_creates_escrow:
            if not ev.seller_address or not ev.buyer_address:
                raise ValueError(f"{schema.name} deposit for {ev.escrow_address} lacks seller/buyer")
            return [Mutation("escrow.fund_upsert", SQL_UPSERT_FUNDED_ESCROW, (
                _trade_id(ev), ev.escrow_address, ev.seller_address, ev.buyer_address,
                TOKEN_TYPE, Decimal(ev.amount),
            ))]
        return [Mutation("escrow.fund", SQL_MARK_FUNDED,
                         (ev.escrow_address, _trade_id(ev), Decimal(ev.amount)))]

    if isinstance(ev, EscrowReleased):
        args = (ev.escrow_address, _trade_id(ev))
        return [
            Mutation("escrow.release", SQL_MARK_RELEASED, args),
            Mutation("trade.release_leg", SQL_RELEASE_TRADE_LEG, args),
        ]

    if isinstance(ev, EscrowCancelled):
        args = (ev.escrow_address, _trade_id(ev))
        return [
            Mutation("escrow.cancel", SQL_MARK_CANCELLED, args),
            Mutation("trade.cancel_leg", SQL_CANCEL_TRADE_LEG, args),
        ]

    raise TypeError(f"not an escrow event: {type(ev).__name__}")

def rows_affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1" / "INSERT 0 1"
    try:
        return int((status or "").rsplit(" ", 1)[-1])
    except ValueError:
        return 0

async def apply_event(pool: asyncpg.Pool, ev, schema: EventSchema, slot=None) -> bool:
    """
    Run the plan for `ev` in one transaction.

    Failures are logged and swallowed: the event counts as processed and is
    not retried. Returns True when every statement ran.
    """
    kind = type(ev).__name__
    try:
        mutations = plan(ev, schema)
        async with pool.acquire() as conn:
            async with conn.transaction():
                for m in mutations:
                    status = await conn.execute(m.sql, *m.args)
                    n = rows_affected(status)
                    if n:
                        log.info("%s %s trade=%s escrow=%s slot=%s: %d row(s)",
                                 kind, m.label, ev.trade_id, ev.escrow_address, slot, n)
                    else:
                        log.info("%s %s trade=%s escrow=%s slot=%s: no-op",
                                 kind, m.label, ev.trade_id, ev.escrow_address, slot)
        return True
    except Exception as e:
        log.exception("Failed to apply %s for trade %s escrow %s (slot %s): %s",
                      kind, getattr(ev, "trade_id", None),
                      getattr(ev, "escrow_address", None), slot, e)
        return False
