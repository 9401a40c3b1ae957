# escrow_sync/events.py
# Typed escrow program events + Anchor event decoding.
#
# Anchor emits an event as base64(discriminator || borsh(fields)) in a
# "Program data: " log line. discriminator = sha256("event:<Name>")[:8].
# Fields we care about are fixed-width, so decoding is a plain cursor walk.
# Extra trailing bytes are ignored so a program can append fields.

import base64, binascii, hashlib, struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

import base58

class EventDecodeError(ValueError):
    pass

def _check_digits(name: str, value: str):
    # isdigit alone lets through non-ASCII digits such as "²"
    if not isinstance(value, str) or not (value.isascii() and value.isdigit()):
        raise EventDecodeError(f"{name} must be decimal digits, got {value!r}")

def _check_address(name: str, value: str):
    if not isinstance(value, str) or not value:
        raise EventDecodeError(f"{name} must be a non-empty address")

###############################################################################
# Event variants
###############################################################################

@dataclass(frozen=True)
class EscrowCreated:
    escrow_address: str
    trade_id: str
    seller_address: str
    buyer_address: str
    amount: str                      # u64 as decimal text, never float
    sequential: bool = False
    sequential_escrow_address: Optional[str] = None

    def __post_init__(self):
        _check_address("escrow_address", self.escrow_address)
        _check_address("seller_address", self.seller_address)
        _check_address("buyer_address", self.buyer_address)
        _check_digits("trade_id", self.trade_id)
        _check_digits("amount", self.amount)

@dataclass(frozen=True)
class FundsDeposited:
    escrow_address: str
    trade_id: str
    amount: str
    # only carried by the legacy schema, where a deposit also creates the row
    seller_address: Optional[str] = None
    buyer_address: Optional[str] = None

    def __post_init__(self):
        _check_address("escrow_address", self.escrow_address)
        _check_digits("trade_id", self.trade_id)
        _check_digits("amount", self.amount)

@dataclass(frozen=True)
class EscrowReleased:
    escrow_address: str
    trade_id: str

    def __post_init__(self):
        _check_address("escrow_address", self.escrow_address)
        _check_digits("trade_id", self.trade_id)

@dataclass(frozen=True)
class EscrowCancelled:
    escrow_address: str
    trade_id: str

    def __post_init__(self):
        _check_address("escrow_address", self.escrow_address)
        _check_digits("trade_id", self.trade_id)

EscrowEvent = Union[EscrowCreated, FundsDeposited, EscrowReleased, EscrowCancelled]

###############################################################################
# Borsh reader
###############################################################################

class _Reader:
    def __init__(self, data: bytes, event_name: str):
        self.data = data
        self.pos = 0
        self.event_name = event_name

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise EventDecodeError(
                f"{self.event_name}: truncated payload ({len(self.data)} bytes, need {end})")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def pubkey(self) -> str:
        return base58.b58encode(self.take(32)).decode("ascii")

    def u64(self) -> str:
        return str(struct.unpack("<Q", self.take(8))[0])

    def bool(self) -> bool:
        b = self.take(1)[0]
        if b not in (0, 1):
            raise EventDecodeError(f"{self.event_name}: invalid bool byte {b}")
        return b == 1

    def option_pubkey(self) -> Optional[str]:
        tag = self.take(1)[0]
        if tag == 0:
            return None
        if tag != 1:
            raise EventDecodeError(f"{self.event_name}: invalid option tag {tag}")
        return self.pubkey()

def discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode("utf-8")).digest()[:8]

###############################################################################
# Field layouts per schema
###############################################################################

def _created(r: _Reader) -> EscrowCreated:
    return EscrowCreated(
        escrow_address=r.pubkey(),
        trade_id=r.u64(),
        seller_address=r.pubkey(),
        buyer_address=r.pubkey(),
        amount=r.u64(),
        sequential=r.bool(),
        sequential_escrow_address=r.option_pubkey(),
    )

def _deposited(r: _Reader) -> FundsDeposited:
    return FundsDeposited(escrow_address=r.pubkey(), trade_id=r.u64(), amount=r.u64())

def _deposited_legacy(r: _Reader) -> FundsDeposited:
    return FundsDeposited(
        escrow_address=r.pubkey(),
        trade_id=r.u64(),
        amount=r.u64(),
        seller_address=r.pubkey(),
        buyer_address=r.pubkey(),
    )

def _released(r: _Reader) -> EscrowReleased:
    return EscrowReleased(escrow_address=r.pubkey(), trade_id=r.u64())

def _cancelled(r: _Reader) -> EscrowCancelled:
    return EscrowCancelled(escrow_address=r.pubkey(), trade_id=r.u64())

@dataclass(frozen=True)
class EventSchema:
    """
    One on-chain event schema version.

    `layouts` maps the Anchor event name to the function reading its fields.
    `deposit_creates_escrow` is True for the legacy program, which has no
    EscrowCreated event: the first FundsDeposited inserts the escrow row.
    """
    name: str
    layouts: Dict[str, Callable[[_Reader], EscrowEvent]]
    deposit_creates_escrow: bool = False

    def by_discriminator(self) -> Dict[bytes, str]:
        return {discriminator(n): n for n in self.layouts}

CURRENT = EventSchema(
    name="current",
    layouts={
        "EscrowCreated":   _created,
        "FundsDeposited":  _deposited,
        "EscrowReleased":  _released,
        "EscrowCancelled": _cancelled,
    },
)

LEGACY = EventSchema(
    name="legacy",
    layouts={
        "FundsDeposited": _deposited_legacy,
        "FundsReleased":  _released,
    },
    deposit_creates_escrow=True,
)

SCHEMAS = {s.name: s for s in (CURRENT, LEGACY)}

def get_schema(name: str) -> EventSchema:
    try:
        return SCHEMAS[name]
    except KeyError:
        raise ValueError(f"unknown event schema {name!r} (expected {'|'.join(sorted(SCHEMAS))})") from None

###############################################################################
# Decoding
###############################################################################

def decode_event(schema: EventSchema, raw: bytes):
    """
    Decode one Anchor event payload.

    Returns (event_name, event). Raises EventDecodeError when the
    discriminator is unknown to `schema` or the fields do not parse.
    """
    if len(raw) < 8:
        raise EventDecodeError(f"payload too short for a discriminator ({len(raw)} bytes)")
    name = schema.by_discriminator().get(bytes(raw[:8]))
    if name is None:
        raise EventDecodeError(f"unknown event discriminator {raw[:8].hex()} for schema {schema.name}")
    return name, schema.layouts[name](_Reader(bytes(raw[8:]), name))

def decode_program_data(schema: EventSchema, b64: str):
    try:
        raw = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EventDecodeError(f"program data is not base64: {e}") from e
    return decode_event(schema, raw)
