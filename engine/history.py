"""Reconstruct application state from account transaction history.

Nothing here is cached: every query re-scans the ledger. A scan fetches at
most `window` recent transactions of one account, so anything older than
the window is invisible (state can look stale for very active accounts).

Account history pages come back in no guaranteed order, so every
reduction orders by the timestamp embedded in the envelope, never by
position in the page.

I/O (HistoryReducer) is kept apart from the reductions, which are plain
functions over decoded envelopes.
"""

import os
from datetime import datetime, timezone
from typing import Callable

from crypto import resolve_did, to_did
from engine.ledger import LedgerClient, bounded, from_ripple_time, tx_body, tx_result, tx_succeeded
from envelope import (
    Envelope, Intent, IntentUpdate, LogEntry, NegotiationSnapshot, ProfileSnapshot,
    decode, memo_texts, parse_timestamp,
)
from protocol import (
    DEFAULT_SCAN_WINDOW, NEGOTIATION_SCAN_WINDOW, PROFILE_SCAN_WINDOW,
    InvalidIdentifier,
)


# --- Pure reductions ---

def decode_entry(entry: dict) -> list[Envelope]:
    """Every XAG envelope carried by one history entry, tagged with its tx hash
    and sending account.

    Entries that did not finalize with tesSUCCESS carry no facts.
    """
    if not tx_succeeded(entry):
        return []
    body = tx_body(entry)
    out = []
    for memo in body.get("Memos") or []:
        envelope = decode(memo)
        if envelope is None:
            continue
        envelope.tx_hash = body.get("hash", "")
        envelope.sender = body.get("Account", "")
        # A snapshot can't know its own hash when written; its newest step is this tx
        if isinstance(envelope, NegotiationSnapshot) and envelope.history and not envelope.history[-1].tx_hash:
            envelope.history[-1].tx_hash = envelope.tx_hash
        out.append(envelope)
    return out


def _controls(address: str, did: str) -> bool:
    try:
        return resolve_did(did) == address
    except InvalidIdentifier:
        return False


def sent_by_author(envelope: Envelope) -> bool:
    """Whether the carrying tx came from the account the envelope speaks for.

    Anyone can pay an account, so its history also holds envelopes written
    by third parties. A negotiation snapshot speaks for the author of its
    newest step, who must be a participant.
    """
    if isinstance(envelope, NegotiationSnapshot):
        if not envelope.history:
            return False
        author = envelope.history[-1].from_did
        return (_controls(envelope.sender, author)
                and any(_controls(envelope.sender, p) for p in envelope.participants))
    return _controls(envelope.sender, envelope.agent_did)


def newest_first(envelopes: list[Envelope]) -> list[Envelope]:
    return sorted(envelopes, key=lambda e: parse_timestamp(e.timestamp), reverse=True)


def reduce_intents(intents: list[Intent], updates: list[IntentUpdate]) -> list[Intent]:
    """Apply status updates to intents (latest update per intent wins), newest first.

    An update only applies when it was sent by the account that sent the intent.
    """
    latest: dict[tuple[str, str], IntentUpdate] = {}
    for update in updates:
        key = (update.intent_hash, update.sender)
        current = latest.get(key)
        if current is None or parse_timestamp(update.timestamp) > parse_timestamp(current.timestamp):
            latest[key] = update
    out = []
    for intent in intents:
        update = latest.get((intent.tx_hash, intent.sender))
        if update is not None and parse_timestamp(update.timestamp) >= parse_timestamp(intent.timestamp):
            intent.status = update.status
        out.append(intent)
    return newest_first(out)


def reduce_negotiation(snapshots: list[NegotiationSnapshot]) -> NegotiationSnapshot | None:
    """Latest snapshot by embedded timestamp wins whole; no field merging.

    Once a terminal snapshot (accepted/rejected/completed) is reached,
    later snapshots are ignored.
    """
    if not snapshots:
        return None
    ordered = sorted(snapshots, key=lambda s: (parse_timestamp(s.timestamp), len(s.history)))
    current = ordered[0]
    for snapshot in ordered:
        current = snapshot
        if snapshot.is_terminal:
            break
    return current


def reduce_profile(profiles: list[ProfileSnapshot]) -> ProfileSnapshot | None:
    if not profiles:
        return None
    return max(profiles, key=lambda p: parse_timestamp(p.timestamp))


def transaction_view(entry: dict) -> dict:
    """Plain view of a raw history entry. Only plain-text memos are decoded."""
    body = tx_body(entry)
    timestamp = None
    if body.get("date") is not None:
        timestamp = from_ripple_time(int(body["date"])).isoformat().replace("+00:00", "Z")
    return {
        "hash": body.get("hash", ""),
        "kind": body.get("TransactionType", ""),
        "outcome": tx_result(entry),
        "validated": bool(entry.get("validated")),
        "account": body.get("Account", ""),
        "destination": body.get("Destination"),
        "amount": body.get("Amount"),
        "memos": memo_texts(body),
        "timestamp": timestamp,
    }


def _ripple_date(view: dict) -> datetime:
    if view["timestamp"] is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    return parse_timestamp(view["timestamp"])


# --- Scanning ---

class HistoryReducer:
    """Read side: scans one or more accounts and reduces what it finds."""

    def __init__(self, client: LedgerClient, window: int | None = None, timeout: float | None = None):
        self.client = client
        self.window = window or int(os.environ.get("XAG_SCAN_WINDOW", DEFAULT_SCAN_WINDOW))
        self.timeout = timeout

    async def _history(self, account: str, limit: int | None, timeout: float | None) -> list[dict]:
        address = resolve_did(account)
        return await bounded(
            self.client.get_account_history(address, limit or self.window),
            timeout if timeout is not None else self.timeout,
        )

    async def scan(self, account: str, predicate: Callable[[Envelope], bool] | None = None,
                   limit: int | None = None, timeout: float | None = None,
                   own: bool = False) -> list[Envelope]:
        """Decoded envelopes in the history of `account` passing `predicate`, newest first.

        Envelopes not sent by their author are dropped. With `own`, only
        envelopes sent by `account` itself are kept.
        """
        address = resolve_did(account)
        found = []
        for entry in await self._history(address, limit, timeout):
            for envelope in decode_entry(entry):
                if not sent_by_author(envelope) or (own and envelope.sender != address):
                    continue
                if predicate is None or predicate(envelope):
                    found.append(envelope)
        return newest_first(found)

    async def logs(self, account: str, limit: int | None = None,
                   timeout: float | None = None) -> list[LogEntry]:
        return await self.scan(account, lambda e: isinstance(e, LogEntry), limit, timeout, own=True)

    async def intents(self, account: str, type: str | None = None, category: str | None = None,
                      limit: int | None = None, timeout: float | None = None) -> list[Intent]:
        """Intents of `account`, with status updates from the same window applied."""
        envelopes = await self.scan(
            account, lambda e: isinstance(e, (Intent, IntentUpdate)), limit, timeout, own=True,
        )
        intents = [
            e for e in envelopes
            if isinstance(e, Intent)
            and (type is None or e.type == type)
            and (category is None or e.category == category)
        ]
        updates = [e for e in envelopes if isinstance(e, IntentUpdate)]
        return reduce_intents(intents, updates)

    async def negotiation_snapshots(self, negotiation_id: str, *accounts: str,
                                    limit: int = NEGOTIATION_SCAN_WINDOW,
                                    timeout: float | None = None) -> list[NegotiationSnapshot]:
        """All snapshots of one negotiation across the given accounts.

        Each party broadcasts from its own account, so participants named
        in any found snapshot are scanned too.
        """
        pending = []
        for account in accounts:
            pending.append(resolve_did(account))
        seen: set[str] = set()
        snapshots: dict[str, NegotiationSnapshot] = {}

        while pending:
            address = pending.pop(0)
            if address in seen:
                continue
            seen.add(address)
            found = await self.scan(
                address,
                lambda e: isinstance(e, NegotiationSnapshot) and e.negotiation_id == negotiation_id,
                limit, timeout,
            )
            for snapshot in found:
                snapshots[snapshot.tx_hash] = snapshot
                for participant in snapshot.participants:
                    try:
                        other = resolve_did(participant)
                    except InvalidIdentifier:
                        continue
                    if other not in seen:
                        pending.append(other)
        return list(snapshots.values())

    async def negotiation(self, negotiation_id: str, *accounts: str,
                          limit: int = NEGOTIATION_SCAN_WINDOW,
                          timeout: float | None = None) -> NegotiationSnapshot | None:
        snapshots = await self.negotiation_snapshots(negotiation_id, *accounts, limit=limit, timeout=timeout)
        return reduce_negotiation(snapshots)

    async def profile(self, account: str, limit: int = PROFILE_SCAN_WINDOW,
                      timeout: float | None = None) -> ProfileSnapshot | None:
        did = to_did(resolve_did(account))
        profiles = await self.scan(
            account,
            lambda e: isinstance(e, ProfileSnapshot) and e.agent_did == did,
            limit, timeout, own=True,
        )
        return reduce_profile(profiles)

    async def transactions(self, account: str, limit: int | None = None,
                           timeout: float | None = None) -> list[dict]:
        """Raw transaction view, newest first by ledger close time."""
        views = [transaction_view(e) for e in await self._history(account, limit, timeout)]
        return sorted(views, key=_ripple_date, reverse=True)
