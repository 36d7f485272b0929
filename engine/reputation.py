"""Reputation scoring for XAG agents.

Derived on every call from the agent's recent transaction history; nothing
is stored. Because only a fixed window of recent transactions is read, a
score can drop as older trades fall out of the window.
"""

from dataclasses import dataclass

from crypto import resolve_did
from engine.ledger import LedgerClient, bounded, currency_matches, tx_body, tx_succeeded
from protocol import DEFAULT_SCAN_WINDOW, REPUTATION_WEIGHT, RLUSD_CURRENCY_CODE, RLUSD_ISSUER


@dataclass
class ReputationResult:
    """Reputation data model for an agent."""
    did: str
    address: str
    escrow_creates: int = 0
    escrow_finishes: int = 0
    payments: int = 0
    window: int = DEFAULT_SCAN_WINDOW
    weight: int = REPUTATION_WEIGHT

    @property
    def successful_trades(self) -> int:
        return self.escrow_creates + self.escrow_finishes + self.payments

    @property
    def score(self) -> int:
        return self.successful_trades * self.weight

    def to_dict(self) -> dict:
        return {
            "did": self.did,
            "address": self.address,
            "score": self.score,
            "successfulTrades": self.successful_trades,
            "escrowCreates": self.escrow_creates,
            "escrowFinishes": self.escrow_finishes,
            "payments": self.payments,
            "window": self.window,
        }

    def meets(self, min_score: int) -> bool:
        return self.score >= min_score


def count_trades(entries: list[dict], settlement_currency: str = RLUSD_CURRENCY_CODE,
                 issuer: str = RLUSD_ISSUER) -> dict:
    """Count successful EscrowCreate / EscrowFinish / settlement-asset Payments.

    A payment counts only in the settlement currency from its issuer; the
    same code issued by anyone else is a different asset.
    """
    counts = {"escrow_creates": 0, "escrow_finishes": 0, "payments": 0}
    for entry in entries:
        if not tx_succeeded(entry):
            continue
        body = tx_body(entry)
        kind = body.get("TransactionType")
        if kind == "EscrowCreate":
            counts["escrow_creates"] += 1
        elif kind == "EscrowFinish":
            counts["escrow_finishes"] += 1
        elif kind == "Payment":
            amount = body.get("Amount")
            if (isinstance(amount, dict)
                    and currency_matches(amount.get("currency", ""), settlement_currency)
                    and amount.get("issuer") == issuer):
                counts["payments"] += 1
    return counts


class ReputationScorer:
    """Scores an agent from the last `window` transactions of its account."""

    def __init__(self, client: LedgerClient, window: int = DEFAULT_SCAN_WINDOW,
                 weight: int = REPUTATION_WEIGHT, settlement_currency: str = RLUSD_CURRENCY_CODE,
                 issuer: str | None = None, timeout: float | None = None):
        self.client = client
        self.window = window
        self.weight = weight
        self.settlement_currency = settlement_currency
        self.issuer = issuer or RLUSD_ISSUER
        self.timeout = timeout

    async def score(self, did: str, timeout: float | None = None) -> ReputationResult:
        address = resolve_did(did)
        entries = await bounded(
            self.client.get_account_history(address, self.window),
            timeout if timeout is not None else self.timeout,
        )
        counts = count_trades(entries, self.settlement_currency, self.issuer)
        return ReputationResult(did=did, address=address, window=self.window,
                                weight=self.weight, **counts)
