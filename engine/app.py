# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the XAG gateway (FastAPI).

Thin marshalling layer: every route parses its request, calls one XAG
operation and serializes the result. Engine failures come back as
{"error": <kind>, "detail": <message>} with a status chosen by kind.

Requests that write to the ledger carry the acting agent's DID and,
unless the agent was created by this server process, its seed.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional

from engine.escrow import TradeConfig
from protocol import (
    EscrowLookupFailed, EscrowNotFound, InsufficientFunds, InvalidIdentifier, InvalidTransition,
    LedgerRPCError, MissingCredential, NegotiationNotFound, SettlementRejected, SubmissionTimeout,
    XAGError,
)
from xag import XAG


# --- Request models ---

class CreateAgentRequest(BaseModel):
    name: str
    type: str
    seed: Optional[str] = None
    address: Optional[str] = None

class InitiateTradeRequest(BaseModel):
    buyer: str
    seller: str
    amount: str
    asset: str = "XRP"
    condition: Optional[str] = None
    finish_after: Optional[int] = None  # Ripple epoch seconds
    cancel_after: Optional[int] = None
    memo: Optional[str] = None
    buyer_seed: Optional[str] = None

class FulfillTradeRequest(BaseModel):
    escrow_hash: str
    seller: str
    asset: str = "XRP"
    fulfillment: Optional[str] = None
    condition: Optional[str] = None
    seller_seed: Optional[str] = None

class LogRequest(BaseModel):
    agent_did: str
    message: str
    level: str = "info"
    data: dict = {}
    seed: Optional[str] = None

class IntentRequest(BaseModel):
    agent_did: str
    type: str  # "offer" or "request"
    category: str
    description: str = ""
    terms: dict = {}
    seed: Optional[str] = None

class IntentStatusRequest(BaseModel):
    agent_did: str
    intent_hash: str
    status: str  # "fulfilled" or "cancelled"
    seed: Optional[str] = None

class NegotiationRequest(BaseModel):
    initiator: str
    participant: str
    terms: dict
    seed: Optional[str] = None

class NegotiationResponseRequest(BaseModel):
    responder: str
    action: str  # "counter", "accept" or "reject"
    terms: Optional[dict] = None
    previous_tx_hash: Optional[str] = None
    counterparty: Optional[str] = None
    seed: Optional[str] = None

class ProfileRequest(BaseModel):
    agent_did: str
    capabilities: list[str] = []
    pricing: Optional[dict] = None
    availability: Optional[str] = None
    description: Optional[str] = None
    contact: Optional[str] = None
    metadata: dict = {}
    seed: Optional[str] = None


# Engine failure kind -> HTTP status
ERROR_STATUS = {
    InvalidIdentifier: 400,
    MissingCredential: 401,
    InsufficientFunds: 402,
    EscrowNotFound: 404,
    EscrowLookupFailed: 404,
    NegotiationNotFound: 404,
    SettlementRejected: 409,
    InvalidTransition: 409,
}


def error_status(exc: XAGError) -> int:
    for cls, status in ERROR_STATUS.items():
        if isinstance(exc, cls):
            return status
    return 500


# --- App factory ---

def create_app(xag: XAG | None = None) -> FastAPI:
    """Create FastAPI app around an XAG gateway (RippledClient by default)."""

    app = FastAPI(title="XAG", version="1.0")
    _xag = xag or XAG()

    @app.exception_handler(XAGError)
    async def xag_error(request: Request, exc: XAGError):
        body = {"error": exc.kind, "detail": str(exc)}
        if isinstance(exc, SettlementRejected):
            body["result"] = exc.result
            body["hash"] = exc.tx_hash
        return JSONResponse(status_code=error_status(exc), content=body)

    @app.exception_handler(SubmissionTimeout)
    async def submission_timeout(request: Request, exc: SubmissionTimeout):
        return JSONResponse(status_code=504, content={
            "error": exc.kind, "detail": str(exc), "hash": exc.tx_hash,
        })

    @app.exception_handler(LedgerRPCError)
    async def ledger_error(request: Request, exc: LedgerRPCError):
        status = 404 if exc.error == "actNotFound" else 502
        return JSONResponse(status_code=status, content={"error": exc.error, "detail": str(exc)})

    @app.exception_handler(ValueError)
    async def bad_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": str(exc)})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # --- Agents and settlement ---

    @app.post("/api/create-agent")
    async def create_agent(req: CreateAgentRequest):
        agent = await _xag.create_agent(req.name, req.type, seed=req.seed, address=req.address)
        return {"success": True, "agent": agent.to_dict()}

    @app.post("/api/initiate-trade")
    async def initiate_trade(req: InitiateTradeRequest):
        trade = TradeConfig(
            buyer=req.buyer, seller=req.seller, amount=req.amount, asset=req.asset,
            condition=req.condition, finish_after=req.finish_after,
            cancel_after=req.cancel_after, memo=req.memo,
        )
        result = await _xag.initiate_trade(trade, buyer_seed=req.buyer_seed)
        return {"success": True, "trade": result.to_dict()}

    @app.post("/api/fulfill-trade")
    async def fulfill_trade(req: FulfillTradeRequest):
        tx_hash = await _xag.fulfill_trade(
            req.escrow_hash, req.seller, req.asset, seller_seed=req.seller_seed,
            fulfillment=req.fulfillment, condition=req.condition,
        )
        return {"success": True, "hash": tx_hash}

    @app.get("/api/transactions/status/{tx_hash}")
    async def transaction_status(tx_hash: str):
        return await _xag.transaction_status(tx_hash)

    @app.get("/api/reputation/{did}")
    async def reputation(did: str):
        result = await _xag.get_reputation(did)
        return result.to_dict()

    # --- Logs ---

    @app.post("/api/logs")
    async def post_log(req: LogRequest):
        tx_hash = await _xag.log(req.agent_did, req.message, req.level, req.data, seed=req.seed)
        return {"success": True, "hash": tx_hash}

    @app.get("/api/logs/{did}")
    async def get_logs(did: str, limit: Optional[int] = None):
        logs = await _xag.get_logs(did, limit)
        return {"logs": [{**e.to_dict(), "txHash": e.tx_hash} for e in logs]}

    # --- Intents ---

    @app.post("/api/intents")
    async def post_intent(req: IntentRequest):
        tx_hash = await _xag.broadcast_intent(req.agent_did, req.type, req.category,
                                              req.description, req.terms, seed=req.seed)
        return {"success": True, "hash": tx_hash}

    @app.post("/api/intents/status")
    async def intent_status(req: IntentStatusRequest):
        tx_hash = await _xag.update_intent_status(req.agent_did, req.intent_hash, req.status, seed=req.seed)
        return {"success": True, "hash": tx_hash}

    @app.get("/api/intents/{did}")
    async def get_intents(did: str, type: Optional[str] = None, category: Optional[str] = None,
                          limit: Optional[int] = None):
        intents = await _xag.search_intents(did, type=type, category=category, limit=limit)
        return {"intents": [{**i.to_dict(), "txHash": i.tx_hash} for i in intents]}

    # --- Negotiations ---

    @app.post("/api/negotiations")
    async def post_negotiation(req: NegotiationRequest):
        negotiation_id, tx_hash = await _xag.initiate_negotiation(
            req.initiator, req.participant, req.terms, seed=req.seed,
        )
        return {"success": True, "negotiationId": negotiation_id, "hash": tx_hash}

    @app.post("/api/negotiations/{negotiation_id}/respond")
    async def respond_negotiation(negotiation_id: str, req: NegotiationResponseRequest):
        tx_hash = await _xag.respond_to_negotiation(
            negotiation_id, req.responder, req.action, req.terms, seed=req.seed,
            previous_tx_hash=req.previous_tx_hash, counterparty=req.counterparty,
        )
        return {"success": True, "hash": tx_hash}

    @app.get("/api/negotiations/{negotiation_id}")
    async def get_negotiation(negotiation_id: str, participant: str):
        snapshot = await _xag.get_negotiation(negotiation_id, participant)
        if snapshot is None:
            raise NegotiationNotFound(f"Negotiation not found: {negotiation_id}")
        return {**snapshot.to_dict(), "txHash": snapshot.tx_hash}

    # --- Profiles, history, verification ---

    @app.post("/api/profile")
    async def post_profile(req: ProfileRequest):
        tx_hash = await _xag.publish_profile(
            req.agent_did, seed=req.seed, capabilities=req.capabilities, pricing=req.pricing,
            availability=req.availability, description=req.description,
            contact=req.contact, metadata=req.metadata,
        )
        return {"success": True, "hash": tx_hash}

    @app.get("/api/profile/{did}")
    async def get_profile(did: str):
        profile = await _xag.get_profile(did)
        return {"profile": profile.to_dict() if profile else None}

    @app.get("/api/transactions/{did}")
    async def get_transactions(did: str, limit: Optional[int] = None):
        return {"transactions": await _xag.get_transactions(did, limit)}

    @app.get("/api/verify/{did}")
    async def verify(did: str, min_reputation: Optional[int] = None, require_profile: bool = False,
                     capabilities: Optional[str] = None):
        required = [c for c in capabilities.split(",") if c] if capabilities else None
        result = await _xag.verify_agent(did, min_reputation, require_profile, required)
        return result.to_dict()

    return app
