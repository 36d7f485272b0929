"""Event envelope codec for XAG.

Application events (logs, intents, intent status updates, negotiation
snapshots, profiles) travel inside transaction memos:

    MemoType   = hex("application/json")
    MemoFormat = hex("xag:<kind>")      -- the type tag scans filter on
    MemoData   = hex(UTF-8 JSON)        -- carries "kind" and "timestamp"

Envelopes are immutable facts. An update is a new envelope that supersedes
older ones when history is reduced; nothing is rewritten in place.

Decoding is tolerant by contract: ledger history is full of memos written by
other applications, so anything that does not decode cleanly yields None.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar

from protocol import (
    EnvelopeKind, IntentType, NegotiationStatus, INTENT_STATUSES, TERMINAL_NEGOTIATION_STATUSES,
    MEMO_TYPE_JSON, MEMO_TYPE_TEXT, PROTOCOL_VERSION,
)


# --- Timestamps ---

def now_iso() -> str:
    """Current UTC time, microsecond precision, ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an envelope timestamp. Naive values are taken as UTC."""
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# --- Hex helpers ---

def hex_encode(text: str) -> str:
    return text.encode("utf-8").hex().upper()


def hex_decode(value: str) -> str:
    return bytes.fromhex(value).decode("utf-8")


# --- Envelope types ---

@dataclass
class LogEntry:
    agent_did: str
    message: str
    level: str = "info"
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    tx_hash: str = field(default="", compare=False)
    sender: str = field(default="", compare=False)  # account of the carrying tx

    KIND: ClassVar[EnvelopeKind] = EnvelopeKind.LOG

    def to_dict(self) -> dict:
        return {
            "agentDID": self.agent_did,
            "level": self.level,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "LogEntry":
        return cls(
            agent_did=d["agentDID"],
            message=str(d["message"]),
            level=d.get("level", "info"),
            data=dict(d.get("data") or {}),
            timestamp=d["timestamp"],
        )


@dataclass
class Intent:
    """An offer or request an agent advertises on-ledger."""
    agent_did: str
    type: str
    category: str
    description: str = ""
    terms: dict = field(default_factory=dict)
    status: str = "active"
    timestamp: str = field(default_factory=now_iso)
    tx_hash: str = field(default="", compare=False)
    sender: str = field(default="", compare=False)

    KIND: ClassVar[EnvelopeKind] = EnvelopeKind.INTENT

    def to_dict(self) -> dict:
        return {
            "agentDID": self.agent_did,
            "type": self.type,
            "category": self.category,
            "description": self.description,
            "terms": self.terms,
            "status": self.status,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Intent":
        intent_type = IntentType(d["type"]).value
        status = d.get("status", "active")
        if status not in INTENT_STATUSES:
            raise ValueError(f"unknown intent status: {status}")
        return cls(
            agent_did=d["agentDID"],
            type=intent_type,
            category=d.get("category", ""),
            description=d.get("description", ""),
            terms=dict(d.get("terms") or {}),
            status=status,
            timestamp=d["timestamp"],
        )


@dataclass
class IntentUpdate:
    """Status change for a previously broadcast intent (by its tx hash)."""
    agent_did: str
    intent_hash: str
    status: str
    timestamp: str = field(default_factory=now_iso)
    tx_hash: str = field(default="", compare=False)
    sender: str = field(default="", compare=False)

    KIND: ClassVar[EnvelopeKind] = EnvelopeKind.INTENT_UPDATE

    def to_dict(self) -> dict:
        return {
            "action": "update_intent",
            "agentDID": self.agent_did,
            "intentHash": self.intent_hash,
            "status": self.status,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "IntentUpdate":
        if d["status"] not in INTENT_STATUSES:
            raise ValueError(f"unknown intent status: {d['status']}")
        return cls(
            agent_did=d.get("agentDID", ""),
            intent_hash=d["intentHash"],
            status=d["status"],
            timestamp=d["timestamp"],
        )


@dataclass
class Offer:
    from_did: str
    to_did: str
    terms: dict
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {"from": self.from_did, "to": self.to_did, "terms": self.terms, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, d: dict) -> "Offer":
        return cls(from_did=d["from"], to_did=d["to"], terms=d.get("terms") or {}, timestamp=d["timestamp"])


@dataclass
class NegotiationStep:
    step: int
    from_did: str
    action: str
    terms: dict
    timestamp: str = field(default_factory=now_iso)
    tx_hash: str = ""

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "from": self.from_did,
            "action": self.action,
            "terms": self.terms,
            "timestamp": self.timestamp,
            "txHash": self.tx_hash,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "NegotiationStep":
        return cls(
            step=int(d["step"]),
            from_did=d["from"],
            action=d["action"],
            terms=d.get("terms") or {},
            timestamp=d["timestamp"],
            tx_hash=d.get("txHash", ""),
        )


@dataclass
class NegotiationSnapshot:
    """Full negotiation state, re-broadcast in full on every step."""
    negotiation_id: str
    participants: list[str]
    status: str
    current_offer: Offer
    history: list[NegotiationStep] = field(default_factory=list)
    timestamp: str = field(default_factory=now_iso)
    tx_hash: str = field(default="", compare=False)
    sender: str = field(default="", compare=False)

    KIND: ClassVar[EnvelopeKind] = EnvelopeKind.NEGOTIATION

    @property
    def is_terminal(self) -> bool:
        return NegotiationStatus(self.status) in TERMINAL_NEGOTIATION_STATUSES

    def to_dict(self) -> dict:
        return {
            "negotiationId": self.negotiation_id,
            "participants": list(self.participants),
            "status": self.status,
            "currentOffer": self.current_offer.to_dict(),
            "history": [s.to_dict() for s in self.history],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "NegotiationSnapshot":
        history = [NegotiationStep.from_dict(s) for s in d.get("history") or []]
        # Snapshots from older writers carry no top-level timestamp; their
        # latest step time is the snapshot time.
        timestamp = d.get("timestamp") or (history[-1].timestamp if history else None)
        if timestamp is None:
            raise ValueError("negotiation snapshot has no timestamp")
        return cls(
            negotiation_id=d["negotiationId"],
            participants=list(d["participants"]),
            status=NegotiationStatus(d["status"]).value,
            current_offer=Offer.from_dict(d["currentOffer"]),
            history=history,
            timestamp=timestamp,
        )


@dataclass
class ProfileSnapshot:
    agent_did: str
    capabilities: list[str] = field(default_factory=list)
    pricing: dict | None = None
    availability: str | None = None
    description: str | None = None
    contact: str | None = None
    metadata: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    tx_hash: str = field(default="", compare=False)
    sender: str = field(default="", compare=False)

    KIND: ClassVar[EnvelopeKind] = EnvelopeKind.PROFILE

    def to_dict(self) -> dict:
        return {
            "agentDID": self.agent_did,
            "capabilities": list(self.capabilities),
            "pricing": self.pricing,
            "availability": self.availability,
            "description": self.description,
            "contact": self.contact,
            "metadata": self.metadata,
            "updatedAt": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ProfileSnapshot":
        return cls(
            agent_did=d["agentDID"],
            capabilities=list(d.get("capabilities") or []),
            pricing=d.get("pricing"),
            availability=d.get("availability"),
            description=d.get("description"),
            contact=d.get("contact"),
            metadata=dict(d.get("metadata") or {}),
            timestamp=d["updatedAt"],
        )


Envelope = LogEntry | Intent | IntentUpdate | NegotiationSnapshot | ProfileSnapshot

ENVELOPE_TYPES = {
    cls.KIND: cls for cls in (LogEntry, Intent, IntentUpdate, NegotiationSnapshot, ProfileSnapshot)
}


# --- Codec ---

def encode_payload(envelope: Envelope) -> bytes:
    """JSON payload for an envelope: its fields plus kind discriminator and version."""
    body = {"kind": envelope.KIND.value, "v": PROTOCOL_VERSION, **envelope.to_dict()}
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def encode(envelope: Envelope) -> dict:
    """Wrap an envelope in a ledger memo."""
    return {
        "Memo": {
            "MemoType": hex_encode(MEMO_TYPE_JSON),
            "MemoFormat": hex_encode(envelope.KIND.value),
            "MemoData": encode_payload(envelope).hex().upper(),
        }
    }


def decode_payload(data: bytes, tag: str | None = None) -> Envelope | None:
    """Decode a JSON payload. `tag` is the memo's format tag, if known.

    The payload's own "kind" wins when no tag is given; when both exist
    they must agree.
    """
    try:
        body = json.loads(data.decode("utf-8"))
        if not isinstance(body, dict):
            return None
        kind_value = body.get("kind") or tag
        if kind_value is None or (tag is not None and kind_value != tag):
            return None
        cls = ENVELOPE_TYPES[EnvelopeKind(kind_value)]
        envelope = cls.from_dict(body)
        parse_timestamp(envelope.timestamp)
        return envelope
    except (ValueError, KeyError, TypeError, AttributeError, OverflowError, RecursionError):
        return None


def decode(raw) -> Envelope | None:
    """Decode a memo (or a bare payload) into an envelope; None if foreign or malformed."""
    if isinstance(raw, (bytes, bytearray)):
        return decode_payload(bytes(raw))
    if isinstance(raw, str):
        return decode_payload(raw.encode("utf-8"))
    if not isinstance(raw, dict):
        return None
    memo = raw.get("Memo", raw)
    if not isinstance(memo, dict):
        return None
    try:
        tag = hex_decode(memo["MemoFormat"])
        if tag not in {k.value for k in EnvelopeKind}:
            return None
        data = bytes.fromhex(memo["MemoData"])
    except (KeyError, ValueError, TypeError, AttributeError):
        return None
    return decode_payload(data, tag)


def text_memo(text: str) -> dict:
    """Plain-text memo, used for human-readable trade annotations."""
    return {
        "Memo": {
            "MemoType": hex_encode(MEMO_TYPE_TEXT),
            "MemoData": hex_encode(text),
        }
    }


def memo_texts(tx: dict) -> list[str]:
    """Decoded text of every plain-text memo on a transaction; anything else is skipped."""
    out = []
    memos = tx.get("Memos")
    if not isinstance(memos, list):
        return out
    for memo in memos:
        inner = memo.get("Memo") if isinstance(memo, dict) else None
        if not isinstance(inner, dict):
            continue
        try:
            if hex_decode(inner["MemoType"]) == MEMO_TYPE_TEXT:
                out.append(hex_decode(inner["MemoData"]))
        except (KeyError, ValueError, TypeError, AttributeError):
            continue
    return out
