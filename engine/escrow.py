"""Escrow settlement for XAG trades.

Two paths, chosen by the trade's asset:

  XRP   -> native EscrowCreate (optionally conditional and/or time-locked),
           released later by EscrowFinish.
  RLUSD -> immediate issued-currency Payment. Native escrows only hold XRP,
           so an RLUSD trade is NOT locked on-ledger: "escrow" on this path
           is bookkeeping and fulfilment only checks the payment settled.

An escrow is located again by listing the owner's open escrow objects and
matching PreviousTxnID against the creating transaction hash.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

from crypto import resolve_did
from engine.currency import CurrencyManager
from engine.ledger import (
    LedgerClient, bounded, drops_to_xrp, sign_and_submit, to_ripple_time,
    tx_body, tx_result, tx_succeeded, xrp_to_drops,
)
from engine.signer import Signer, Wallet
from envelope import text_memo
from protocol import (
    FEE_RESERVE_XRP, NATIVE_ASSET, RLUSD_CURRENCY_CODE,
    EscrowLookupFailed, EscrowNotFound, InsufficientFunds, MissingCredential,
    SettlementRejected,
)


def ripple_time(value: datetime | int | None) -> int | None:
    """Aware datetime -> Ripple epoch seconds; ints are taken as Ripple epoch already."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_ripple_time(value)
    return int(value)


@dataclass
class TradeConfig:
    buyer: str
    seller: str
    amount: Decimal
    asset: str = NATIVE_ASSET
    condition: str | None = None
    finish_after: datetime | int | None = None  # not-before
    cancel_after: datetime | int | None = None  # not-after
    memo: str | None = None

    def __post_init__(self):
        try:
            self.amount = Decimal(str(self.amount))
        except InvalidOperation:
            raise ValueError(f"Invalid trade amount: {self.amount!r}")
        if self.amount <= 0:
            raise ValueError(f"Trade amount must be positive, got {self.amount}")
        if self.asset not in (NATIVE_ASSET, RLUSD_CURRENCY_CODE):
            raise ValueError(f"Unsupported asset: {self.asset}")

    def default_memo(self) -> str:
        return f"XAG Trade: {self.amount} {self.asset} from {self.buyer} to {self.seller}"


@dataclass
class TradeResult:
    hash: str
    sequence: int
    amount: Decimal
    asset: str
    buyer: str
    seller: str
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "sequence": self.sequence,
            "amount": str(self.amount),
            "asset": self.asset,
            "buyer": self.buyer,
            "seller": self.seller,
            **self.extra,
        }


class SettlementManager:
    """Creates and releases trade settlements against a LedgerClient."""

    def __init__(self, client: LedgerClient, signer: Signer,
                 currency: CurrencyManager | None = None,
                 fee_reserve: Decimal = FEE_RESERVE_XRP, timeout: float | None = None):
        self.client = client
        self.signer = signer
        self.currency = currency or CurrencyManager(client, signer, timeout=timeout)
        self.fee_reserve = fee_reserve
        self.timeout = timeout

    def _timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self.timeout

    async def initiate_trade(self, trade: TradeConfig, wallet: Wallet,
                             timeout: float | None = None) -> TradeResult:
        """Lock (XRP) or pay (RLUSD) the trade amount from buyer to seller."""
        buyer = resolve_did(trade.buyer)
        seller = resolve_did(trade.seller)
        if wallet.address != buyer:
            raise MissingCredential(f"Wallet {wallet.address} does not control buyer {buyer}")
        timeout = self._timeout(timeout)
        memo = trade.memo or trade.default_memo()

        if trade.asset == RLUSD_CURRENCY_CODE:
            balance = await bounded(self.currency.get_balance(buyer), timeout)
            if balance < trade.amount:
                raise InsufficientFunds(
                    f"Insufficient {RLUSD_CURRENCY_CODE} balance. Need {trade.amount}, have {balance}"
                )
            await self.currency.ensure_trust_line(wallet, timeout=timeout)
            result = await self.currency.pay(wallet, seller, trade.amount, memo=memo, timeout=timeout)
            # Payments have no escrow sequence to hand back
            return TradeResult(hash=result["hash"], sequence=0, amount=trade.amount,
                               asset=trade.asset, buyer=buyer, seller=seller)

        state = await bounded(self.client.get_account_state(buyer), timeout)
        balance = drops_to_xrp(state.balance)
        if balance < trade.amount + self.fee_reserve:
            raise InsufficientFunds(
                f"Insufficient balance. Need {trade.amount + self.fee_reserve} XRP "
                f"(amount + fees), have {balance}"
            )

        tx = {
            "TransactionType": "EscrowCreate",
            "Account": buyer,
            "Amount": str(xrp_to_drops(trade.amount)),
            "Destination": seller,
            "Memos": [text_memo(memo)],
        }
        if trade.condition:
            tx["Condition"] = trade.condition
        finish_after = ripple_time(trade.finish_after)
        if finish_after is not None:
            tx["FinishAfter"] = finish_after
        cancel_after = ripple_time(trade.cancel_after)
        if cancel_after is not None:
            tx["CancelAfter"] = cancel_after

        result = await sign_and_submit(self.client, self.signer, wallet, tx, timeout)
        return TradeResult(hash=result["hash"], sequence=result["Sequence"], amount=trade.amount,
                           asset=trade.asset, buyer=buyer, seller=seller)

    async def find_escrow(self, creation_hash: str, timeout: float | None = None) -> dict:
        """Locate the open escrow object created by `creation_hash`.

        Raises EscrowLookupFailed if the creating transaction can't be read,
        EscrowNotFound if no open escrow matches (already finished, or the
        create never succeeded).
        """
        timeout = self._timeout(timeout)
        entry = await bounded(self.client.get_transaction(creation_hash), timeout)
        if entry is None:
            raise EscrowLookupFailed(f"Escrow transaction not found: {creation_hash}")
        body = tx_body(entry)
        owner = body.get("Account")
        sequence = body.get("Sequence")
        if not owner or not sequence:
            raise EscrowLookupFailed(
                f"Could not extract owner or sequence from escrow transaction. Hash: {creation_hash}"
            )
        if not entry.get("validated"):
            raise EscrowLookupFailed(f"Escrow transaction {creation_hash} is not validated yet")

        state = await bounded(self.client.get_account_state(owner), timeout)
        for obj in state.objects.get("escrow", []):
            if obj.get("PreviousTxnID", "").upper() == creation_hash.upper():
                return {**obj, "Owner": owner, "OfferSequence": int(sequence)}
        raise EscrowNotFound(f"No open escrow for {creation_hash} (owner {owner})")

    async def fulfill_trade(self, creation_hash: str, wallet: Wallet, asset: str = NATIVE_ASSET,
                            fulfillment: str | None = None, condition: str | None = None,
                            timeout: float | None = None) -> str:
        """Release an XRP escrow, or confirm an RLUSD payment settled. Returns a tx hash."""
        timeout = self._timeout(timeout)

        if asset == RLUSD_CURRENCY_CODE:
            entry = await bounded(self.client.get_transaction(creation_hash), timeout)
            if entry is None or not tx_succeeded(entry):
                outcome = tx_result(entry) if entry else "not found"
                raise SettlementRejected(
                    f"{RLUSD_CURRENCY_CODE} payment was not successful ({outcome or 'not validated'})",
                    result=outcome, tx_hash=creation_hash,
                )
            return creation_hash

        escrow = await self.find_escrow(creation_hash, timeout)
        tx = {
            "TransactionType": "EscrowFinish",
            "Account": wallet.address,
            "Owner": escrow["Owner"],
            "OfferSequence": escrow["OfferSequence"],
        }
        if fulfillment:
            tx["Fulfillment"] = fulfillment
            tx["Condition"] = condition or escrow.get("Condition", "")
        elif condition:
            tx["Condition"] = condition
        result = await sign_and_submit(self.client, self.signer, wallet, tx, timeout)
        return result["hash"]

    async def transaction_status(self, tx_hash: str, timeout: float | None = None) -> dict:
        """Finalized outcome of a submission: {"hash", "found", "validated", "result"}."""
        entry = await bounded(self.client.get_transaction(tx_hash), self._timeout(timeout))
        if entry is None:
            return {"hash": tx_hash, "found": False, "validated": False, "result": ""}
        return {
            "hash": tx_hash,
            "found": True,
            "validated": bool(entry.get("validated")),
            "result": tx_result(entry),
        }
