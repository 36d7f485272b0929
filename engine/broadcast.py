"""Write side: minimal-value broadcasts carrying event envelopes.

Every application event is a 1-drop Payment from the agent's own account
to the annotation sink, with the encoded envelope as its only memo. The
services below build envelopes and hand them to one Broadcaster.
"""

import os
import secrets
import time
from datetime import timedelta

from crypto import canonical_did, resolve_did
from engine.history import HistoryReducer, decode_entry, sent_by_author
from engine.ledger import LedgerClient, bounded, sign_and_submit
from engine.signer import Signer, Wallet
from envelope import (
    Envelope, Intent, IntentUpdate, LogEntry, NegotiationSnapshot, NegotiationStep, Offer,
    ProfileSnapshot, encode, now_iso, parse_timestamp,
)
from protocol import (
    BROADCAST_DROPS, DEFAULT_SINK_ADDRESS, NEGOTIATION_ACTIONS, NEGOTIATION_TRANSITIONS,
    IntentType, InvalidTransition, MissingCredential, NegotiationNotFound, NegotiationStatus,
)


class Broadcaster:
    """Signs and submits one envelope per call. Returns the carrying tx hash."""

    def __init__(self, client: LedgerClient, signer: Signer, sink_address: str | None = None,
                 timeout: float | None = None):
        self.client = client
        self.signer = signer
        self.sink_address = sink_address or os.environ.get("XAG_SINK_ADDRESS", DEFAULT_SINK_ADDRESS)
        self.timeout = timeout

    async def broadcast(self, wallet: Wallet, envelope: Envelope, timeout: float | None = None) -> str:
        tx = {
            "TransactionType": "Payment",
            "Account": wallet.address,
            "Destination": self.sink_address,
            "Amount": BROADCAST_DROPS,
            "Memos": [encode(envelope)],
        }
        result = await sign_and_submit(self.client, self.signer, wallet, tx,
                                       timeout if timeout is not None else self.timeout)
        envelope.tx_hash = result["hash"]
        envelope.sender = wallet.address
        return result["hash"]


def _author(wallet: Wallet, agent_did: str) -> str:
    """Canonical DID of the author; the wallet must control it."""
    did = canonical_did(agent_did)
    if resolve_did(did) != wallet.address:
        raise MissingCredential(f"Wallet {wallet.address} cannot broadcast for {did}")
    return did


class LogService:
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    async def log(self, wallet: Wallet, agent_did: str, message: str, level: str = "info",
                  data: dict | None = None) -> str:
        entry = LogEntry(agent_did=_author(wallet, agent_did), message=message,
                         level=level, data=data or {})
        return await self.broadcaster.broadcast(wallet, entry)


class IntentService:
    """Offers and requests, plus their later status changes."""

    UPDATE_STATUSES = {"fulfilled", "cancelled"}

    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    async def broadcast_intent(self, wallet: Wallet, agent_did: str, type: str, category: str,
                               description: str = "", terms: dict | None = None) -> str:
        intent = Intent(
            agent_did=_author(wallet, agent_did),
            type=IntentType(type).value,
            category=category,
            description=description,
            terms=terms or {},
        )
        return await self.broadcaster.broadcast(wallet, intent)

    async def update_intent_status(self, wallet: Wallet, agent_did: str, intent_hash: str,
                                   status: str) -> str:
        if status not in self.UPDATE_STATUSES:
            raise InvalidTransition(f"Intent status can only move to fulfilled or cancelled, not {status}")
        update = IntentUpdate(agent_did=_author(wallet, agent_did), intent_hash=intent_hash, status=status)
        return await self.broadcaster.broadcast(wallet, update)


def new_negotiation_id() -> str:
    return f"neg_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _later_than(previous: str) -> str:
    """Now, or 1us after `previous` if the clock hasn't moved past it."""
    now = now_iso()
    prev = parse_timestamp(previous)
    if parse_timestamp(now) <= prev:
        return (prev + timedelta(microseconds=1)).isoformat().replace("+00:00", "Z")
    return now


class NegotiationService:
    """Negotiations as a chain of full snapshots, one broadcast per step.

    Both parties broadcast from their own accounts; the read side merges
    them and takes the latest snapshot.
    """

    def __init__(self, broadcaster: Broadcaster, history: HistoryReducer):
        self.broadcaster = broadcaster
        self.history = history

    async def initiate(self, wallet: Wallet, initiator: str, participant: str,
                       terms: dict) -> tuple[str, str]:
        """Open a negotiation. Returns (negotiation_id, tx_hash)."""
        initiator_did = _author(wallet, initiator)
        participant_did = canonical_did(participant)
        timestamp = now_iso()
        snapshot = NegotiationSnapshot(
            negotiation_id=new_negotiation_id(),
            participants=[initiator_did, participant_did],
            status=NegotiationStatus.INITIATED.value,
            current_offer=Offer(from_did=initiator_did, to_did=participant_did,
                                terms=terms, timestamp=timestamp),
            history=[NegotiationStep(step=1, from_did=initiator_did, action="offer",
                                     terms=terms, timestamp=timestamp)],
            timestamp=timestamp,
        )
        tx_hash = await self.broadcaster.broadcast(wallet, snapshot)
        return snapshot.negotiation_id, tx_hash

    async def _snapshot_at(self, tx_hash: str) -> NegotiationSnapshot | None:
        entry = await bounded(self.broadcaster.client.get_transaction(tx_hash), self.broadcaster.timeout)
        if entry is None:
            return None
        for envelope in decode_entry(entry):
            if isinstance(envelope, NegotiationSnapshot) and sent_by_author(envelope):
                return envelope
        return None

    async def current(self, negotiation_id: str, *accounts: str,
                      previous_tx_hash: str | None = None) -> NegotiationSnapshot:
        """Latest snapshot, found from `accounts` and/or a known earlier snapshot tx."""
        scan_from = list(accounts)
        if previous_tx_hash:
            known = await self._snapshot_at(previous_tx_hash)
            if known is not None and known.negotiation_id == negotiation_id:
                scan_from.extend(known.participants)
        snapshot = await self.history.negotiation(negotiation_id, *scan_from)
        if snapshot is None:
            raise NegotiationNotFound(f"Negotiation not found: {negotiation_id}")
        return snapshot

    async def respond(self, wallet: Wallet, negotiation_id: str, responder: str, action: str,
                      terms: dict | None = None, previous_tx_hash: str | None = None,
                      counterparty: str | None = None) -> str:
        """Counter, accept or reject. Broadcasts the full next snapshot; returns its tx hash.

        A responder who has not broadcast on this negotiation yet must point
        at it: either the tx hash of an earlier snapshot or the counterparty.
        """
        responder_did = _author(wallet, responder)
        if action not in NEGOTIATION_ACTIONS:
            raise InvalidTransition(f"Unknown negotiation action: {action}")

        accounts = [responder_did] + ([counterparty] if counterparty else [])
        current = await self.current(negotiation_id, *accounts, previous_tx_hash=previous_tx_hash)
        if responder_did not in {canonical_did(p) for p in current.participants}:
            raise InvalidTransition(f"{responder_did} is not a participant in {negotiation_id}")

        new_status = NEGOTIATION_ACTIONS[action]
        if new_status not in NEGOTIATION_TRANSITIONS[NegotiationStatus(current.status)]:
            raise InvalidTransition(
                f"Cannot {action} negotiation {negotiation_id} in status {current.status}"
            )

        timestamp = _later_than(current.timestamp)
        step_terms = terms if terms is not None else current.current_offer.terms
        offer = current.current_offer
        if action == "counter" and terms is not None:
            offer = Offer(from_did=responder_did, to_did=current.current_offer.from_did,
                          terms=terms, timestamp=timestamp)

        snapshot = NegotiationSnapshot(
            negotiation_id=negotiation_id,
            participants=list(current.participants),
            status=new_status.value,
            current_offer=offer,
            history=current.history + [
                NegotiationStep(step=len(current.history) + 1, from_did=responder_did,
                                action=action, terms=step_terms, timestamp=timestamp),
            ],
            timestamp=timestamp,
        )
        return await self.broadcaster.broadcast(wallet, snapshot)


class ProfileService:
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    async def publish(self, wallet: Wallet, agent_did: str, capabilities: list[str] | None = None,
                      pricing: dict | None = None, availability: str | None = None,
                      description: str | None = None, contact: str | None = None,
                      metadata: dict | None = None) -> str:
        profile = ProfileSnapshot(
            agent_did=_author(wallet, agent_did),
            capabilities=list(capabilities or []),
            pricing=pricing,
            availability=availability,
            description=description,
            contact=contact,
            metadata=metadata or {},
        )
        return await self.broadcaster.broadcast(wallet, profile)
