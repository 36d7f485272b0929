"""Tests for envelope.py -- event envelope <-> memo codec."""

import json
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from envelope import (
    LogEntry, Intent, IntentUpdate, NegotiationSnapshot, NegotiationStep, Offer, ProfileSnapshot,
    encode, decode, decode_payload, encode_payload, hex_encode, hex_decode,
    text_memo, memo_texts, parse_timestamp, now_iso,
)

DID_A = "did:xrpl:1:rrrrrrrrrrrrrrrrrrrrBZbvji"
DID_B = "did:xrpl:1:rrrrrrrrrrrrrrrrrrrrrhoLvTp"
TS = "2026-03-01T12:00:00.000000Z"


def sample_snapshot(status="counter-offer"):
    return NegotiationSnapshot(
        negotiation_id="neg_1_abc",
        participants=[DID_A, DID_B],
        status=status,
        current_offer=Offer(from_did=DID_B, to_did=DID_A, terms={"price": 90}, timestamp=TS),
        history=[
            NegotiationStep(step=1, from_did=DID_A, action="offer", terms={"price": 100}, timestamp=TS),
            NegotiationStep(step=2, from_did=DID_B, action="counter", terms={"price": 90}, timestamp=TS),
        ],
        timestamp=TS,
    )


ENVELOPES = [
    LogEntry(agent_did=DID_A, message="panel online", level="info", data={"kw": 4.2}, timestamp=TS),
    Intent(agent_did=DID_A, type="offer", category="energy", description="solar surplus",
           terms={"kwh": 10, "price": "0.5"}, timestamp=TS),
    IntentUpdate(agent_did=DID_A, intent_hash="AB" * 32, status="fulfilled", timestamp=TS),
    sample_snapshot(),
    ProfileSnapshot(agent_did=DID_A, capabilities=["solar", "storage"], pricing={"kwh": "0.5"},
                    availability="24/7", description="Solar monitor", timestamp=TS),
]


class TestRoundTrip:
    @pytest.mark.parametrize("envelope", ENVELOPES, ids=lambda e: type(e).__name__)
    def test_decode_encode(self, envelope):
        assert decode(encode(envelope)) == envelope

    def test_memo_fields_are_hex(self):
        memo = encode(ENVELOPES[0])["Memo"]
        assert hex_decode(memo["MemoType"]) == "application/json"
        assert hex_decode(memo["MemoFormat"]) == "xag:log"
        body = json.loads(hex_decode(memo["MemoData"]))
        assert body["kind"] == "xag:log"
        assert body["timestamp"] == TS

    def test_decode_bare_payload(self):
        payload = encode_payload(ENVELOPES[1])
        assert decode(payload) == ENVELOPES[1]
        assert decode(payload.decode()) == ENVELOPES[1]

    def test_tx_hash_not_part_of_equality(self):
        decoded = decode(encode(ENVELOPES[0]))
        decoded.tx_hash = "FF" * 32
        assert decoded == ENVELOPES[0]


class TestDecodeTolerance:
    def test_foreign_memo_format(self):
        memo = {"Memo": {"MemoType": hex_encode("text/plain"), "MemoFormat": hex_encode("other:app"),
                         "MemoData": hex_encode("hello")}}
        assert decode(memo) is None

    def test_plain_text_memo(self):
        assert decode(text_memo("XAG Trade: 10 XRP")) is None

    def test_invalid_json(self):
        memo = encode(ENVELOPES[0])
        memo["Memo"]["MemoData"] = hex_encode("{not json")
        assert decode(memo) is None

    def test_invalid_hex(self):
        memo = encode(ENVELOPES[0])
        memo["Memo"]["MemoData"] = "ZZZZ"
        assert decode(memo) is None

    def test_kind_tag_mismatch(self):
        memo = encode(ENVELOPES[0])
        memo["Memo"]["MemoFormat"] = hex_encode("xag:intent")
        assert decode(memo) is None

    def test_missing_required_field(self):
        body = {"kind": "xag:log", "agentDID": DID_A, "timestamp": TS}
        assert decode_payload(json.dumps(body).encode()) is None

    def test_bad_timestamp(self):
        body = {"kind": "xag:log", "agentDID": DID_A, "message": "x", "timestamp": "yesterday"}
        assert decode_payload(json.dumps(body).encode()) is None

    def test_unknown_negotiation_status(self):
        body = encode_payload(sample_snapshot())
        body = body.replace(b'"counter-offer"', b'"haggling"')
        assert decode_payload(body) is None

    def test_unknown_intent_type(self):
        body = {"kind": "xag:intent", "agentDID": DID_A, "type": "gift", "category": "x", "timestamp": TS}
        assert decode_payload(json.dumps(body).encode()) is None

    def test_number_too_large_for_int(self):
        body = encode_payload(sample_snapshot()).replace(b'"step":1,', b'"step":1e999,')
        assert b"1e999" in body
        assert decode_payload(body) is None
        memo = encode(sample_snapshot())
        memo["Memo"]["MemoData"] = body.hex().upper()
        assert decode(memo) is None

    def test_deeply_nested_json(self):
        depth = 100000
        body = b'{"kind":"xag:log","data":' + b"[" * depth + b"]" * depth + b"}"
        assert decode_payload(body) is None

    @pytest.mark.parametrize("raw", [None, 42, [], {"Memo": "x"}, {"Memo": {}}, "[]"])
    def test_garbage(self, raw):
        assert decode(raw) is None


class TestLegacySnapshots:
    def test_snapshot_without_timestamp_uses_last_step(self):
        body = sample_snapshot().to_dict()
        del body["timestamp"]
        body["history"][-1]["timestamp"] = "2026-03-01T12:05:00Z"
        snap = decode_payload(json.dumps({"kind": "xag:negotiation", **body}).encode())
        assert snap.timestamp == "2026-03-01T12:05:00Z"

    def test_terminal(self):
        assert sample_snapshot("accepted").is_terminal
        assert sample_snapshot("rejected").is_terminal
        assert not sample_snapshot("counter-offer").is_terminal


class TestHelpers:
    def test_now_iso_parses_as_utc(self):
        ts = now_iso()
        assert ts.endswith("Z")
        assert parse_timestamp(ts).utcoffset().total_seconds() == 0

    def test_naive_timestamp_is_utc(self):
        assert parse_timestamp("2026-01-01T00:00:00") == parse_timestamp("2026-01-01T00:00:00Z")

    def test_memo_texts(self):
        tx = {"Memos": [text_memo("first"), encode(ENVELOPES[0]), text_memo("second")]}
        assert memo_texts(tx) == ["first", "second"]

    def test_memo_texts_skips_garbage(self):
        tx = {"Memos": ["x", {"Memo": "x"}, {"Memo": {"MemoType": 5}},
                          {"Memo": {"MemoType": hex_encode("text/plain"), "MemoData": None}},
                          text_memo("ok")]}
        assert memo_texts(tx) == ["ok"]
        assert memo_texts({"Memos": "nope"}) == []
