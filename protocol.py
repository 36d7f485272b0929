"""Shared constants and interfaces for the XAG agent settlement engine.

All modules import from here to avoid circular dependencies.
"""

import os
from decimal import Decimal
from enum import Enum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

DID_PREFIX = "did:xrpl:1:"

NATIVE_ASSET = "XRP"
RLUSD_CURRENCY_CODE = "RLUSD"
# Testnet RLUSD issuer -- set XAG_RLUSD_ISSUER for other networks
RLUSD_ISSUER = os.environ.get("XAG_RLUSD_ISSUER", "rN7n7otQDd6FczFgLdSqtcsAUxDkw6fzRH")
DEFAULT_TRUST_LIMIT = "1000000"

DROPS_PER_XRP = 10**6

# Spendable balance must cover amount + this reserve for a native escrow
FEE_RESERVE_XRP = Decimal("0.1")

# Minimal-value broadcasts: 1 drop to the annotation carrier
BROADCAST_DROPS = "1"
# Blackhole account (ACCOUNT_ONE) -- deployments may point this elsewhere
DEFAULT_SINK_ADDRESS = "rrrrrrrrrrrrrrrrrrrrBZbvji"

# History scans
DEFAULT_SCAN_WINDOW = 100
NEGOTIATION_SCAN_WINDOW = 200
PROFILE_SCAN_WINDOW = 50

# Reputation: score = successful trades * weight
REPUTATION_WEIGHT = 10

# Network
DEFAULT_NODE_URL = "https://s.altnet.rippletest.net:51234"
DEFAULT_FAUCET_URL = "https://faucet.altnet.rippletest.net/accounts"
DEFAULT_RPC_TIMEOUT = 30.0
DEFAULT_PORT = 3000
# Ledgers a submitted transaction stays valid for (LastLedgerSequence offset)
LEDGER_OFFSET = 20

# Seconds between the Unix epoch and the Ripple epoch (2000-01-01T00:00:00Z)
RIPPLE_EPOCH_OFFSET = 946684800

EXPLORER_URL = "https://testnet.xrpl.org"

# Ledger result codes the engine inspects
TES_SUCCESS = "tesSUCCESS"


# --- Event envelopes ---

MEMO_TYPE_JSON = "application/json"
MEMO_TYPE_TEXT = "text/plain"


class EnvelopeKind(Enum):
    LOG = "xag:log"
    INTENT = "xag:intent"
    INTENT_UPDATE = "xag:intent:update"
    NEGOTIATION = "xag:negotiation"
    PROFILE = "xag:profile"


class IntentType(Enum):
    OFFER = "offer"
    REQUEST = "request"


INTENT_STATUSES = {"active", "fulfilled", "cancelled"}


# --- Negotiation state machine ---

class NegotiationStatus(Enum):
    INITIATED = "initiated"
    COUNTER_OFFER = "counter-offer"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


# Valid transitions: current status -> set of valid next statuses
NEGOTIATION_TRANSITIONS = {
    NegotiationStatus.INITIATED: {
        NegotiationStatus.COUNTER_OFFER,
        NegotiationStatus.ACCEPTED,
        NegotiationStatus.REJECTED,
    },
    NegotiationStatus.COUNTER_OFFER: {
        NegotiationStatus.COUNTER_OFFER,
        NegotiationStatus.ACCEPTED,
        NegotiationStatus.REJECTED,
    },
    NegotiationStatus.ACCEPTED: set(),
    NegotiationStatus.REJECTED: set(),
    NegotiationStatus.COMPLETED: set(),
}

TERMINAL_NEGOTIATION_STATUSES = {
    status for status, nxt in NEGOTIATION_TRANSITIONS.items() if not nxt
}

# Responder action -> resulting status
NEGOTIATION_ACTIONS = {
    "counter": NegotiationStatus.COUNTER_OFFER,
    "accept": NegotiationStatus.ACCEPTED,
    "reject": NegotiationStatus.REJECTED,
}


# --- Agents ---

AGENT_TYPES = {"buyer", "seller", "supplier", "consumer"}
# Agent types that receive RLUSD and get a trust line at creation
TRUSTLINE_AGENT_TYPES = {"seller", "supplier"}


# --- Errors ---

class XAGError(Exception):
    """Base class for tagged engine failures. `kind` is stable across releases."""

    kind = "xag_error"


class InvalidIdentifier(XAGError):
    kind = "invalid_identifier"


class InsufficientFunds(XAGError):
    kind = "insufficient_funds"


class EscrowLookupFailed(XAGError):
    kind = "escrow_lookup_failed"


class EscrowNotFound(XAGError):
    kind = "escrow_not_found"


class SettlementRejected(XAGError):
    """The ledger refused a transaction. `result` holds the ledger result code."""

    kind = "settlement_rejected"

    def __init__(self, message: str, result: str = "", tx_hash: str = ""):
        super().__init__(message)
        self.result = result
        self.tx_hash = tx_hash


class MissingCredential(XAGError):
    kind = "missing_credential"


class InvalidTransition(XAGError):
    kind = "invalid_transition"


class NegotiationNotFound(XAGError):
    kind = "negotiation_not_found"


class SubmissionTimeout(TimeoutError):
    """Submission timed out; the transaction may or may not have been applied.

    Resolve with a status query on `tx_hash` before retrying anything.
    """

    kind = "submission_timeout"

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"Submission of {tx_hash} timed out after {timeout}s; outcome unknown")
        self.tx_hash = tx_hash
        self.timeout = timeout


class LedgerRPCError(RuntimeError):
    """Error response from the ledger node (e.g. actNotFound, txnNotFound)."""

    def __init__(self, error: str, message: str = ""):
        super().__init__(f"Ledger RPC error: {error}" + (f" ({message})" if message else ""))
        self.error = error
