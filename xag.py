"""XAG gateway -- one object wiring every engine service together.

Usage:
    xag = XAG.simulated(verbose=True)          # in-process SimLedger
    xag = XAG(RippledClient())                 # testnet, NodeSigner

    buyer = await xag.create_agent("Buyer-01", "buyer")
    seller = await xag.create_agent("Solar-01", "supplier")
    trade = await xag.initiate_trade(TradeConfig(buyer.did, seller.did, "10"))
    await xag.fulfill_trade(trade.hash, seller.did)

Wallets of agents created here are kept in a WalletStore for the life of
the process; anything else needs its seed passed explicitly.
"""

import json
import os
import sys
from dataclasses import dataclass, field

sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

import httpx

from crypto import resolve_did, to_did
from engine.broadcast import Broadcaster, IntentService, LogService, NegotiationService, ProfileService
from engine.currency import CurrencyManager
from engine.escrow import SettlementManager, TradeConfig, TradeResult
from engine.history import HistoryReducer
from engine.ledger import LedgerClient, RippledClient, SimLedger, sign_and_submit
from engine.reputation import ReputationResult, ReputationScorer
from engine.signer import LocalSigner, NodeSigner, Signer, Wallet, WalletStore
from engine.verification import VerificationResult, VerificationService
from envelope import Intent, LogEntry, NegotiationSnapshot, ProfileSnapshot, hex_encode
from protocol import (
    AGENT_TYPES, EXPLORER_URL, RLUSD_CURRENCY_CODE, TRUSTLINE_AGENT_TYPES,
    LedgerRPCError, XAGError,
)


@dataclass
class Agent:
    address: str
    did: str
    name: str
    type: str
    seed: str | None = field(default=None, repr=False)
    did_tx_hash: str = ""
    diagnostics: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "did": self.did,
            "seed": self.seed,
            "config": {"name": self.name, "type": self.type},
            "didTxHash": self.did_tx_hash,
            "diagnostics": list(self.diagnostics),
        }


def agent_slug(name: str) -> str:
    return "-".join(name.lower().split())


class XAG:
    def __init__(self, client: LedgerClient | None = None, signer: Signer | None = None,
                 wallets: WalletStore | None = None, verbose: bool = False,
                 timeout: float | None = None, window: int | None = None,
                 sink_address: str | None = None, rlusd_issuer: str | None = None):
        self.client = client or RippledClient()
        self.signer = signer or NodeSigner(self.client)
        self.wallets = wallets or WalletStore()
        self.verbose = verbose
        self.timeout = timeout

        self.currency = CurrencyManager(self.client, self.signer, issuer=rlusd_issuer, timeout=timeout)
        self.settlement = SettlementManager(self.client, self.signer, currency=self.currency, timeout=timeout)
        self.history = HistoryReducer(self.client, window=window, timeout=timeout)
        self.broadcaster = Broadcaster(self.client, self.signer, sink_address=sink_address, timeout=timeout)
        self.logs = LogService(self.broadcaster)
        self.intents = IntentService(self.broadcaster)
        self.negotiations = NegotiationService(self.broadcaster, self.history)
        self.profiles = ProfileService(self.broadcaster)
        self.reputation = ReputationScorer(self.client, window=self.history.window,
                                           issuer=self.currency.issuer, timeout=timeout)
        self.verification = VerificationService(self.client, self.reputation, self.history)

    @classmethod
    def simulated(cls, sim: SimLedger | None = None, **kwargs) -> "XAG":
        """Gateway over an in-process SimLedger with local Ed25519 signing."""
        return cls(client=sim or SimLedger(), signer=LocalSigner(), **kwargs)

    def _say(self, message: str):
        if self.verbose:
            print(f"[xag] {message}")

    async def connect(self):
        await self.client.connect()

    async def disconnect(self):
        await self.client.disconnect()

    def wallet_for(self, identifier: str, seed: str | None = None) -> Wallet:
        return self.wallets.get(identifier, seed)

    # --- Agents ---

    async def register_did(self, wallet: Wallet, name: str, agent_type: str) -> str:
        tx = {
            "TransactionType": "DIDSet",
            "Account": wallet.address,
            "URI": hex_encode(f"xag:agent:{agent_slug(name)}"),
            "Data": hex_encode(json.dumps({"name": name, "type": agent_type})),
        }
        result = await sign_and_submit(self.client, self.signer, wallet, tx, self.timeout)
        return result["hash"]

    async def create_agent(self, name: str, agent_type: str, seed: str | None = None,
                           address: str | None = None) -> Agent:
        """Fund (or restore) a wallet, register its DID, open a trust line if it sells.

        DID and trust-line failures don't fail creation; they are reported in
        Agent.diagnostics.
        """
        if agent_type not in AGENT_TYPES:
            raise ValueError(f"Unknown agent type: {agent_type}")

        if seed:
            if not address:
                raise ValueError("address is required when restoring an agent from a seed")
            wallet = Wallet.from_seed(resolve_did(address), seed)
        else:
            self._say(f"Funding new wallet for {name}...")
            wallet = await self.client.fund_wallet()

        did = to_did(wallet.address)
        agent = Agent(address=wallet.address, did=did, name=name, type=agent_type, seed=wallet.seed)
        self._say(f"Agent {name} created: {wallet.address}")
        self._say(f"  {EXPLORER_URL}/accounts/{wallet.address}")

        try:
            agent.did_tx_hash = await self.register_did(wallet, name, agent_type)
            self._say(f"DID registered for {name}: {did} ({agent.did_tx_hash})")
        except (XAGError, LedgerRPCError, httpx.HTTPError) as e:
            agent.diagnostics.append(f"DID registration skipped: {e}")
            self._say(f"DID registration skipped, using address-based DID {did}: {e}")

        if agent_type in TRUSTLINE_AGENT_TYPES:
            try:
                created = await self.currency.ensure_trust_line(wallet)
                if created:
                    self._say(f"{RLUSD_CURRENCY_CODE} trust line created for {name}")
            except (XAGError, LedgerRPCError, httpx.HTTPError) as e:
                agent.diagnostics.append(f"Could not create {RLUSD_CURRENCY_CODE} trust line: {e}")
                self._say(f"Could not create {RLUSD_CURRENCY_CODE} trust line: {e}")

        self.wallets.remember(wallet)
        return agent

    # --- Settlement ---

    async def initiate_trade(self, trade: TradeConfig, buyer_seed: str | None = None) -> TradeResult:
        wallet = self.wallet_for(trade.buyer, buyer_seed)
        self._say(f"Creating {'payment' if trade.asset == RLUSD_CURRENCY_CODE else 'escrow'}: "
                  f"{trade.amount} {trade.asset} {trade.buyer} -> {trade.seller}")
        result = await self.settlement.initiate_trade(trade, wallet)
        self._say(f"Trade initiated: {result.hash}")
        self._say(f"  {EXPLORER_URL}/transactions/{result.hash}")
        return result

    async def fulfill_trade(self, creation_hash: str, seller_did: str, asset: str = "XRP",
                            seller_seed: str | None = None, fulfillment: str | None = None,
                            condition: str | None = None) -> str:
        wallet = self.wallet_for(seller_did, seller_seed)
        self._say(f"Fulfilling {asset} trade {creation_hash}...")
        tx_hash = await self.settlement.fulfill_trade(creation_hash, wallet, asset,
                                                      fulfillment=fulfillment, condition=condition)
        self._say(f"Trade fulfilled: {tx_hash}")
        return tx_hash

    async def transaction_status(self, tx_hash: str) -> dict:
        return await self.settlement.transaction_status(tx_hash)

    async def get_reputation(self, agent_did: str) -> ReputationResult:
        result = await self.reputation.score(agent_did)
        self._say(f"Reputation for {agent_did}: {result.score} "
                  f"({result.escrow_creates} creates, {result.escrow_finishes} finishes, "
                  f"{result.payments} payments)")
        return result

    # --- Events ---

    async def log(self, agent_did: str, message: str, level: str = "info",
                  data: dict | None = None, seed: str | None = None) -> str:
        return await self.logs.log(self.wallet_for(agent_did, seed), agent_did, message, level, data)

    async def get_logs(self, agent_did: str, limit: int | None = None) -> list[LogEntry]:
        return await self.history.logs(agent_did, limit)

    async def broadcast_intent(self, agent_did: str, type: str, category: str, description: str = "",
                               terms: dict | None = None, seed: str | None = None) -> str:
        wallet = self.wallet_for(agent_did, seed)
        tx_hash = await self.intents.broadcast_intent(wallet, agent_did, type, category, description, terms)
        self._say(f"Intent broadcast ({type}/{category}): {tx_hash}")
        return tx_hash

    async def update_intent_status(self, agent_did: str, intent_hash: str, status: str,
                                   seed: str | None = None) -> str:
        wallet = self.wallet_for(agent_did, seed)
        return await self.intents.update_intent_status(wallet, agent_did, intent_hash, status)

    async def search_intents(self, agent_did: str, type: str | None = None, category: str | None = None,
                             limit: int | None = None) -> list[Intent]:
        return await self.history.intents(agent_did, type=type, category=category, limit=limit)

    async def initiate_negotiation(self, initiator: str, participant: str, terms: dict,
                                   seed: str | None = None) -> tuple[str, str]:
        wallet = self.wallet_for(initiator, seed)
        negotiation_id, tx_hash = await self.negotiations.initiate(wallet, initiator, participant, terms)
        self._say(f"Negotiation {negotiation_id} opened: {tx_hash}")
        return negotiation_id, tx_hash

    async def respond_to_negotiation(self, negotiation_id: str, responder: str, action: str,
                                     terms: dict | None = None, seed: str | None = None,
                                     previous_tx_hash: str | None = None,
                                     counterparty: str | None = None) -> str:
        wallet = self.wallet_for(responder, seed)
        tx_hash = await self.negotiations.respond(wallet, negotiation_id, responder, action, terms,
                                                  previous_tx_hash=previous_tx_hash,
                                                  counterparty=counterparty)
        self._say(f"Negotiation {negotiation_id}: {action} by {responder} ({tx_hash})")
        return tx_hash

    async def get_negotiation(self, negotiation_id: str, *participants: str) -> NegotiationSnapshot | None:
        return await self.history.negotiation(negotiation_id, *participants)

    async def publish_profile(self, agent_did: str, seed: str | None = None, **fields) -> str:
        wallet = self.wallet_for(agent_did, seed)
        return await self.profiles.publish(wallet, agent_did, **fields)

    async def get_profile(self, agent_did: str) -> ProfileSnapshot | None:
        return await self.history.profile(agent_did)

    async def get_transactions(self, agent_did: str, limit: int | None = None) -> list[dict]:
        return await self.history.transactions(agent_did, limit)

    async def verify_agent(self, agent_did: str, min_reputation: int | None = None,
                           require_profile: bool = False,
                           required_capabilities: list[str] | None = None) -> VerificationResult:
        return await self.verification.verify_agent(agent_did, min_reputation, require_profile,
                                                    required_capabilities)
