"""Tests for the HTTP API: routes, request models, error mapping."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from starlette.testclient import TestClient

from conftest import make_agent
from crypto import generate_condition, to_did
from engine.app import create_app, error_status
from engine.ledger import SimLedger
from protocol import (
    EscrowNotFound, InsufficientFunds, InvalidIdentifier, InvalidTransition, MissingCredential,
    SettlementRejected, XAGError,
)
from xag import XAG


@pytest.fixture
def gateway(sim):
    return XAG.simulated(sim)


@pytest.fixture
def client(gateway):
    return TestClient(create_app(gateway))


@pytest.fixture
def agents(gateway):
    _, buyer_did = make_agent(gateway)
    _, seller_did = make_agent(gateway)
    return buyer_did, seller_did


class TestErrorStatus:
    def test_mapping(self):
        assert error_status(InvalidIdentifier("x")) == 400
        assert error_status(MissingCredential("x")) == 401
        assert error_status(InsufficientFunds("x")) == 402
        assert error_status(EscrowNotFound("x")) == 404
        assert error_status(SettlementRejected("x")) == 409
        assert error_status(InvalidTransition("x")) == 409
        assert error_status(XAGError("x")) == 500


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


# ---- Agents ----

def test_create_seller_agent(client):
    resp = client.post("/api/create-agent", json={"name": "Solar Panel 1", "type": "supplier"})
    assert resp.status_code == 200
    agent = resp.json()["agent"]
    assert agent["did"] == to_did(agent["address"])
    assert agent["config"] == {"name": "Solar Panel 1", "type": "supplier"}
    assert agent["seed"]
    assert agent["didTxHash"]
    assert agent["diagnostics"] == []


def test_create_agent_unknown_type(client):
    resp = client.post("/api/create-agent", json={"name": "x", "type": "wizard"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


def test_create_agent_missing_field(client):
    assert client.post("/api/create-agent", json={"name": "x"}).status_code == 422


# ---- Trades ----

def test_trade_lifecycle(client, sim, clock, agents):
    buyer_did, seller_did = agents
    condition, fulfillment = generate_condition()
    resp = client.post("/api/initiate-trade", json={
        "buyer": buyer_did, "seller": seller_did, "amount": "12.5", "condition": condition,
    })
    assert resp.status_code == 200
    trade = resp.json()["trade"]
    assert trade["amount"] == "12.5"
    assert trade["sequence"] > 0

    resp = client.post("/api/fulfill-trade", json={
        "escrow_hash": trade["hash"], "seller": seller_did, "fulfillment": fulfillment,
    })
    assert resp.status_code == 200
    finish_hash = resp.json()["hash"]

    status = client.get(f"/api/transactions/status/{finish_hash}").json()
    assert status["found"] and status["validated"]
    assert status["result"] == "tesSUCCESS"

    rep = client.get(f"/api/reputation/{seller_did}").json()
    assert rep["score"] == 20
    assert rep["escrowFinishes"] == 1

    # escrow is gone now
    resp = client.post("/api/fulfill-trade", json={
        "escrow_hash": trade["hash"], "seller": seller_did, "fulfillment": fulfillment,
    })
    assert resp.status_code == 404
    assert resp.json()["error"] == "escrow_not_found"


def test_trade_insufficient_funds(client, gateway, agents):
    _, seller_did = agents
    _, poor_did = make_agent(gateway, xrp="1")
    resp = client.post("/api/initiate-trade", json={
        "buyer": poor_did, "seller": seller_did, "amount": "5", "finish_after": 1,
    })
    assert resp.status_code == 402
    assert resp.json()["error"] == "insufficient_funds"


def test_trade_rejected_by_ledger(client, clock, agents):
    buyer_did, seller_did = agents
    resp = client.post("/api/initiate-trade", json={
        "buyer": buyer_did, "seller": seller_did, "amount": "5", "finish_after": clock.ripple(-10),
    })
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "settlement_rejected"
    assert body["result"] == "tecNO_PERMISSION"
    assert body["hash"]


def test_trade_without_credentials(client, sim, agents):
    _, seller_did = agents
    stranger = to_did(sim.create_wallet("50").address)
    resp = client.post("/api/initiate-trade", json={
        "buyer": stranger, "seller": seller_did, "amount": "1", "finish_after": 1,
    })
    assert resp.status_code == 401


def test_trade_bad_identifier(client, agents):
    _, seller_did = agents
    resp = client.post("/api/initiate-trade", json={"buyer": "bob", "seller": seller_did, "amount": "1"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_identifier"


def test_trade_bad_amount(client, agents):
    buyer_did, seller_did = agents
    resp = client.post("/api/initiate-trade", json={"buyer": buyer_did, "seller": seller_did, "amount": "-3"})
    assert resp.status_code == 400


def test_unknown_transaction_status(client):
    assert client.get(f"/api/transactions/status/{'EE' * 32}").json()["found"] is False


# ---- Events ----

def test_logs(client, agents):
    buyer_did, _ = agents
    for message in ("boot", "reading"):
        assert client.post("/api/logs", json={"agent_did": buyer_did, "message": message}).status_code == 200
    logs = client.get(f"/api/logs/{buyer_did}").json()["logs"]
    assert [l["message"] for l in logs] == ["reading", "boot"]
    assert all(l["txHash"] for l in logs)
    assert len(client.get(f"/api/logs/{buyer_did}", params={"limit": 1}).json()["logs"]) == 1


def test_intents(client, agents):
    buyer_did, _ = agents
    resp = client.post("/api/intents", json={
        "agent_did": buyer_did, "type": "offer", "category": "energy", "terms": {"kwh": 5},
    })
    intent_hash = resp.json()["hash"]
    client.post("/api/intents", json={"agent_did": buyer_did, "type": "request", "category": "compute"})

    resp = client.post("/api/intents/status", json={
        "agent_did": buyer_did, "intent_hash": intent_hash, "status": "cancelled",
    })
    assert resp.status_code == 200

    intents = client.get(f"/api/intents/{buyer_did}", params={"type": "offer"}).json()["intents"]
    assert len(intents) == 1
    assert intents[0]["status"] == "cancelled"
    assert intents[0]["txHash"] == intent_hash

    resp = client.post("/api/intents/status", json={
        "agent_did": buyer_did, "intent_hash": intent_hash, "status": "active",
    })
    assert resp.status_code == 409


def test_negotiation_flow(client, agents):
    buyer_did, seller_did = agents
    resp = client.post("/api/negotiations", json={
        "initiator": buyer_did, "participant": seller_did, "terms": {"price": 10},
    })
    negotiation_id = resp.json()["negotiationId"]
    first = resp.json()["hash"]

    resp = client.post(f"/api/negotiations/{negotiation_id}/respond", json={
        "responder": seller_did, "action": "accept", "previous_tx_hash": first,
    })
    assert resp.status_code == 200

    snapshot = client.get(f"/api/negotiations/{negotiation_id}", params={"participant": buyer_did}).json()
    assert snapshot["status"] == "accepted"
    assert snapshot["negotiationId"] == negotiation_id

    resp = client.post(f"/api/negotiations/{negotiation_id}/respond", json={
        "responder": buyer_did, "action": "counter", "terms": {"price": 11},
    })
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"


def test_unknown_negotiation(client, agents):
    buyer_did, _ = agents
    resp = client.get("/api/negotiations/neg_0_none", params={"participant": buyer_did})
    assert resp.status_code == 404
    assert resp.json()["error"] == "negotiation_not_found"


def test_profile_and_verify(client, agents):
    _, seller_did = agents
    assert client.get(f"/api/profile/{seller_did}").json() == {"profile": None}
    client.post("/api/profile", json={
        "agent_did": seller_did, "capabilities": ["solar", "storage"], "availability": "daylight",
    })
    profile = client.get(f"/api/profile/{seller_did}").json()["profile"]
    assert profile["capabilities"] == ["solar", "storage"]
    assert profile["updatedAt"]

    result = client.get(f"/api/verify/{seller_did}", params={
        "require_profile": "true", "capabilities": "solar,storage",
    }).json()
    assert result["verified"]
    assert result["score"] == 100

    result = client.get(f"/api/verify/{seller_did}", params={"capabilities": "wind"}).json()
    assert not result["verified"]


def test_transactions(client, agents):
    buyer_did, _ = agents
    client.post("/api/logs", json={"agent_did": buyer_did, "message": "x"})
    txs = client.get(f"/api/transactions/{buyer_did}").json()["transactions"]
    assert {t["kind"] for t in txs} == {"Payment"}
    assert len(txs) == 2


def test_reputation_of_unknown_did(client):
    assert client.get("/api/reputation/not-a-did").status_code == 400


# ---- Server entry point ----

def test_build_gateway_backends(monkeypatch):
    import run_server
    from engine.ledger import RippledClient

    monkeypatch.setattr(run_server, "BACKEND", "sim")
    assert isinstance(run_server.build_gateway().client, SimLedger)

    monkeypatch.setattr(run_server, "BACKEND", "rippled")
    assert isinstance(run_server.build_gateway().client, RippledClient)

    monkeypatch.setattr(run_server, "BACKEND", "postgres")
    with pytest.raises(SystemExit):
        run_server.build_gateway()
