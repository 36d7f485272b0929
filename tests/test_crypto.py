"""Tests for crypto.py (identifiers, addresses, Ed25519, crypto-conditions)."""

import hashlib
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from crypto import (
    sha256_hash,
    sha512_half,
    transaction_hash,
    encode_classic_address,
    decode_classic_address,
    validate_xrpl_address,
    resolve_did,
    to_did,
    canonical_did,
    generate_ed25519_keypair,
    ed25519_privkey_to_pubkey,
    ed25519_sign,
    ed25519_verify,
    signing_pubkey_hex,
    signing_pubkey_bytes,
    canonical_json,
    preimage_condition,
    preimage_fulfillment,
    generate_condition,
    fulfillment_preimage,
    verify_fulfillment,
)
from protocol import InvalidIdentifier

ACCOUNT_ZERO = "rrrrrrrrrrrrrrrrrrrrrhoLvTp"
ACCOUNT_ONE = "rrrrrrrrrrrrrrrrrrrrBZbvji"


# ---- Hashing ----

class TestHashing:
    def test_known_empty_hash(self):
        expected = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        assert sha256_hash(b"") == expected

    def test_sha512_half_is_32_bytes(self):
        assert sha512_half(b"abc") == hashlib.sha512(b"abc").digest()[:32]

    def test_transaction_hash_uses_txn_prefix(self):
        blob = "DEADBEEF"
        expected = hashlib.sha512(b"TXN\x00" + bytes.fromhex(blob)).digest()[:32].hex().upper()
        assert transaction_hash(blob) == expected


# ---- Classic addresses ----

class TestAddresses:
    def test_account_zero(self):
        assert encode_classic_address(bytes(20)) == ACCOUNT_ZERO

    def test_account_one(self):
        assert encode_classic_address(bytes(19) + b"\x01") == ACCOUNT_ONE

    def test_decode_roundtrip(self):
        account_id = bytes(range(20))
        assert decode_classic_address(encode_classic_address(account_id)) == account_id

    def test_wrong_length_account_id(self):
        with pytest.raises(ValueError):
            encode_classic_address(b"\x01" * 19)

    def test_validate_good(self):
        ok, err = validate_xrpl_address(ACCOUNT_ONE)
        assert ok
        assert err == ""

    def test_validate_bad_prefix(self):
        ok, err = validate_xrpl_address("xrrrrrrrrrrrrrrrrrrrBZbvji")
        assert not ok
        assert "prefix" in err

    def test_validate_bad_char(self):
        ok, err = validate_xrpl_address("rrrrrrrrrrrrrrrrrrrrBZbvj0")
        assert not ok
        assert "character" in err

    def test_validate_bad_checksum(self):
        ok, err = validate_xrpl_address("rrrrrrrrrrrrrrrrrrrrBZbvjj")
        assert not ok


# ---- Identifiers ----

class TestResolver:
    def test_did_resolves_to_address(self):
        assert resolve_did("did:xrpl:1:" + ACCOUNT_ONE) == ACCOUNT_ONE

    def test_raw_address_passes_through(self):
        assert resolve_did(ACCOUNT_ONE) == ACCOUNT_ONE

    def test_roundtrip(self):
        for address in (ACCOUNT_ZERO, ACCOUNT_ONE, encode_classic_address(bytes(range(20)))):
            assert resolve_did(to_did(address)) == address

    def test_canonical_did(self):
        assert canonical_did(ACCOUNT_ONE) == "did:xrpl:1:" + ACCOUNT_ONE
        assert canonical_did(to_did(ACCOUNT_ONE)) == to_did(ACCOUNT_ONE)

    @pytest.mark.parametrize("bad", ["", "alice", "did:web:example.com", "did:xrpl:1:", "did:xrpl:1:alice"])
    def test_invalid(self, bad):
        with pytest.raises(InvalidIdentifier):
            resolve_did(bad)


# ---- Ed25519 ----

class TestEd25519:
    def test_sign_verify(self):
        priv, pub = generate_ed25519_keypair()
        sig = ed25519_sign(priv, b"payload")
        assert ed25519_verify(pub, b"payload", sig)
        assert not ed25519_verify(pub, b"other", sig)

    def test_pubkey_derivation(self):
        priv, pub = generate_ed25519_keypair()
        assert ed25519_privkey_to_pubkey(priv) == pub

    def test_signing_pubkey_form(self):
        _, pub = generate_ed25519_keypair()
        key = signing_pubkey_hex(pub)
        assert key.startswith("ED")
        assert len(key) == 66
        assert signing_pubkey_bytes(key) == pub

    def test_signing_pubkey_rejects_secp(self):
        with pytest.raises(ValueError):
            signing_pubkey_bytes("02" + "AB" * 32)

    def test_bad_signature_hex(self):
        _, pub = generate_ed25519_keypair()
        assert not ed25519_verify(pub, b"x", "not-hex")

    def test_canonical_json_sorted(self):
        assert canonical_json({"b": 1, "a": 2}) == b'{"a":2,"b":1}'


# ---- Crypto-conditions ----

class TestConditions:
    def test_empty_preimage_vector(self):
        # Reference vector for PREIMAGE-SHA-256 with an empty preimage
        assert preimage_condition(b"") == (
            "A0258020E3B0C44298FC1C149AFBF4C8996FB92427AE41E4649B934CA495991B7852B855810100"
        )
        assert preimage_fulfillment(b"") == "A0028000"

    def test_generated_pair_verifies(self):
        condition, fulfillment = generate_condition()
        assert verify_fulfillment(condition, fulfillment)

    def test_wrong_fulfillment(self):
        condition, _ = generate_condition()
        _, other = generate_condition()
        assert not verify_fulfillment(condition, other)

    def test_preimage_extraction(self):
        preimage = b"secret delivery code"
        assert fulfillment_preimage(preimage_fulfillment(preimage)) == preimage

    @pytest.mark.parametrize("bad", ["", "00", "A002", "A0038000FF", "zz"])
    def test_malformed_fulfillment(self, bad):
        condition, _ = generate_condition()
        assert not verify_fulfillment(condition, bad)

    def test_condition_case_insensitive(self):
        condition, fulfillment = generate_condition(b"abc")
        assert verify_fulfillment(condition.lower(), fulfillment)
