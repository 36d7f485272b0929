"""Shared crypto utilities for the XAG engine.

Provides:
- Agent identity: DID <-> classic address resolution
- Classic address encoding/validation (ripple base58 + double SHA-256 checksum)
- Ed25519 keys and signatures (local signing for the simulated ledger)
- PREIMAGE-SHA-256 crypto-conditions for conditional escrows
- Canonical JSON and SHA-512Half transaction hashing

Dependencies: hashlib, json, os, cryptography
"""

import hashlib
import json
import os

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from protocol import DID_PREFIX, InvalidIdentifier


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha512_half(data: bytes) -> bytes:
    """First 32 bytes of SHA-512, the ledger's standard hash."""
    return hashlib.sha512(data).digest()[:32]


# Prefix the ledger puts in front of a signed transaction before hashing ("TXN\0")
TX_HASH_PREFIX = bytes.fromhex("54584E00")


def transaction_hash(blob_hex: str) -> str:
    """Hash of a signed transaction blob, uppercase hex."""
    return sha512_half(TX_HASH_PREFIX + bytes.fromhex(blob_hex)).hex().upper()


# ---------------------------------------------------------------------------
# Classic addresses
# ---------------------------------------------------------------------------

# Ripple base58 alphabet (differs from bitcoin's ordering)
_XRPL_ALPHABET = "rpshnaf39wBUDNEGHJKLM4PQRST7VWXYZ2bcdeCg65jkm8oFqi1tuvAxyz"
_ACCOUNT_ID_VERSION = b"\x00"


def _b58encode(data: bytes) -> str:
    val = int.from_bytes(data, "big")
    chars = []
    while val > 0:
        val, rem = divmod(val, 58)
        chars.append(_XRPL_ALPHABET[rem])
    # Leading zero bytes encode as the alphabet's zero character
    pad = len(data) - len(data.lstrip(b"\x00"))
    return _XRPL_ALPHABET[0] * pad + "".join(reversed(chars))


def _b58decode(text: str) -> bytes:
    val = 0
    for c in text:
        val = val * 58 + _XRPL_ALPHABET.index(c)
    body = val.to_bytes((val.bit_length() + 7) // 8, "big") if val else b""
    pad = len(text) - len(text.lstrip(_XRPL_ALPHABET[0]))
    return b"\x00" * pad + body


def _checksum(payload: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]


def encode_classic_address(account_id: bytes) -> str:
    """Encode a 20-byte account ID as an r-address."""
    if len(account_id) != 20:
        raise ValueError(f"Account ID must be 20 bytes, got {len(account_id)}")
    payload = _ACCOUNT_ID_VERSION + account_id
    return _b58encode(payload + _checksum(payload))


def decode_classic_address(address: str) -> bytes:
    """Decode an r-address to its 20-byte account ID. Raises ValueError."""
    ok, err = validate_xrpl_address(address)
    if not ok:
        raise ValueError(err)
    return _b58decode(address)[1:21]


def looks_like_address(value: str) -> bool:
    """Cheap shape check: r-prefix, base58 alphabet, plausible length."""
    return (
        value.startswith("r")
        and 25 <= len(value) <= 35
        and all(c in _XRPL_ALPHABET for c in value)
    )


def validate_xrpl_address(address: str) -> tuple[bool, str]:
    """Validate a classic address (prefix, alphabet, length, checksum).

    Returns (True, "") on success, or (False, "error message") on failure.
    """
    if not address.startswith("r"):
        return False, f"Invalid prefix: expected 'r', got '{address[:1]}'"

    for i, c in enumerate(address):
        if c not in _XRPL_ALPHABET:
            return False, f"Invalid character '{c}' at position {i} (not in ripple base58 alphabet)"

    decoded = _b58decode(address)
    if len(decoded) != 25:
        return False, f"Invalid length: expected 25 decoded bytes, got {len(decoded)}"
    if decoded[:1] != _ACCOUNT_ID_VERSION:
        return False, "Invalid version byte"
    if _checksum(decoded[:21]) != decoded[21:]:
        return False, "Checksum mismatch: address is corrupted or invalid"

    return True, ""


# ---------------------------------------------------------------------------
# Agent identity: DID <-> address
# ---------------------------------------------------------------------------

def resolve_did(identifier: str) -> str:
    """Resolve a DID (did:xrpl:1:r...) or raw address to a classic address.

    Pure string transform; no network calls.
    """
    if identifier.startswith(DID_PREFIX):
        address = identifier[len(DID_PREFIX):]
        if looks_like_address(address):
            return address
        raise InvalidIdentifier(f"Invalid DID format: {identifier}")
    if looks_like_address(identifier):
        return identifier
    raise InvalidIdentifier(f"Invalid DID format: {identifier}")


def to_did(address: str) -> str:
    """Build the DID for a classic address."""
    return DID_PREFIX + address


def canonical_did(identifier: str) -> str:
    """DID form of any resolvable identifier."""
    return to_did(resolve_did(identifier))


# ---------------------------------------------------------------------------
# Ed25519 keys
# ---------------------------------------------------------------------------

# Ed25519 public keys are prefixed with 0xED on the ledger
ED25519_KEY_PREFIX = "ED"


def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def signing_pubkey_hex(pubkey_bytes: bytes) -> str:
    """Ledger form of an Ed25519 public key: 'ED' + 64 hex chars."""
    return ED25519_KEY_PREFIX + pubkey_bytes.hex().upper()


def signing_pubkey_bytes(signing_pubkey: str) -> bytes:
    """Inverse of signing_pubkey_hex. Raises ValueError on non-Ed25519 keys."""
    if not signing_pubkey.upper().startswith(ED25519_KEY_PREFIX) or len(signing_pubkey) != 66:
        raise ValueError(f"Not an Ed25519 signing key: {signing_pubkey[:8]}...")
    return bytes.fromhex(signing_pubkey[2:])


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Sign data with Ed25519 private key. Returns 128-char hex signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    sig = privkey.sign(data)
    return sig.hex().upper()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    from cryptography.exceptions import InvalidSignature
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(bytes.fromhex(sig_hex), data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Canonical JSON -- deterministic serialization for signing
# ---------------------------------------------------------------------------

def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# PREIMAGE-SHA-256 crypto-conditions (RFC draft, DER encoded)
# ---------------------------------------------------------------------------

_PREIMAGE_TAG = 0xA0
_FINGERPRINT_TAG = 0x80
_COST_TAG = 0x81


def _der_length(n: int) -> bytes:
    if n < 0x80:
        return bytes([n])
    body = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(body)]) + body


def _read_der_length(data: bytes, pos: int) -> tuple[int, int]:
    first = data[pos]
    if first < 0x80:
        return first, pos + 1
    size = first & 0x7F
    return int.from_bytes(data[pos + 1:pos + 1 + size], "big"), pos + 1 + size


def preimage_condition(preimage: bytes) -> str:
    """Condition (uppercase hex) that is satisfied by `preimage`."""
    fingerprint = hashlib.sha256(preimage).digest()
    cost = len(preimage).to_bytes(max(1, (len(preimage).bit_length() + 7) // 8), "big")
    body = (
        bytes([_FINGERPRINT_TAG]) + _der_length(len(fingerprint)) + fingerprint
        + bytes([_COST_TAG]) + _der_length(len(cost)) + cost
    )
    return (bytes([_PREIMAGE_TAG]) + _der_length(len(body)) + body).hex().upper()


def preimage_fulfillment(preimage: bytes) -> str:
    """Fulfillment (uppercase hex) revealing `preimage`."""
    body = bytes([_FINGERPRINT_TAG]) + _der_length(len(preimage)) + preimage
    return (bytes([_PREIMAGE_TAG]) + _der_length(len(body)) + body).hex().upper()


def generate_condition(preimage: bytes | None = None) -> tuple[str, str]:
    """Fresh (condition, fulfillment) pair. Random 32-byte preimage by default."""
    preimage = os.urandom(32) if preimage is None else preimage
    return preimage_condition(preimage), preimage_fulfillment(preimage)


def fulfillment_preimage(fulfillment_hex: str) -> bytes:
    """Extract the preimage from a fulfillment. Raises ValueError if malformed."""
    try:
        data = bytes.fromhex(fulfillment_hex)
        if not data or data[0] != _PREIMAGE_TAG:
            raise ValueError("not a PREIMAGE-SHA-256 fulfillment")
        outer_len, pos = _read_der_length(data, 1)
        if pos + outer_len != len(data) or data[pos] != _FINGERPRINT_TAG:
            raise ValueError("malformed fulfillment body")
        inner_len, pos = _read_der_length(data, pos + 1)
        preimage = data[pos:pos + inner_len]
        if len(preimage) != inner_len or pos + inner_len != len(data):
            raise ValueError("truncated preimage")
        return preimage
    except IndexError:
        raise ValueError("truncated fulfillment")


def verify_fulfillment(condition_hex: str, fulfillment_hex: str) -> bool:
    """True if `fulfillment_hex` satisfies `condition_hex`."""
    try:
        preimage = fulfillment_preimage(fulfillment_hex)
    except ValueError:
        return False
    return preimage_condition(preimage) == condition_hex.upper()
