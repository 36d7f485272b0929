"""Credentials and transaction signing.

Signing is an injected collaborator: services never hold keys themselves,
they receive a Wallet per operation and hand it to a Signer.

Two signers:
  - LocalSigner: Ed25519 via `cryptography`, signs the canonical JSON form
    understood by SimLedger. No network.
  - NodeSigner: asks a rippled node to sign with the wallet's secret (the
    `sign` RPC). Only point this at a node you run yourself; the secret
    leaves the process.

WalletStore is the in-process credential cache for agents created during
this process lifetime. It is an optimization, never a source of truth.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from crypto import (
    canonical_json, ed25519_privkey_to_pubkey, ed25519_sign,
    resolve_did, signing_pubkey_hex, transaction_hash,
)
from protocol import MissingCredential


@dataclass
class Wallet:
    """Signing material for one account.

    `secret` is a family seed (s...) used by NodeSigner; `private_key` is a
    raw 32-byte Ed25519 key used by LocalSigner.
    """
    address: str
    secret: str | None = field(default=None, repr=False)
    private_key: bytes | None = field(default=None, repr=False)

    @property
    def public_key(self) -> bytes | None:
        if self.private_key is None:
            return None
        return ed25519_privkey_to_pubkey(self.private_key)

    @property
    def seed(self) -> str | None:
        """Exportable seed string; Wallet.from_seed accepts it back."""
        if self.secret:
            return self.secret
        if self.private_key is not None:
            return self.private_key.hex()
        return None

    @classmethod
    def from_seed(cls, address: str, seed: str) -> "Wallet":
        """64 hex chars -> local Ed25519 key; anything else -> node secret."""
        if len(seed) == 64 and all(c in "0123456789abcdefABCDEF" for c in seed):
            return cls(address=address, private_key=bytes.fromhex(seed))
        return cls(address=address, secret=seed)


@dataclass
class SignedTransaction:
    blob: str
    hash: str
    tx_json: dict = field(default_factory=dict)


def signing_payload(tx: dict) -> bytes:
    """Bytes covered by a local signature: canonical JSON minus the signature."""
    return canonical_json({k: v for k, v in tx.items() if k != "TxnSignature"})


class Signer(ABC):
    """sign(unsigned tx, wallet) -> signed blob + hash."""

    @abstractmethod
    async def sign(self, tx: dict, wallet: Wallet) -> SignedTransaction:
        ...


class LocalSigner(Signer):
    """Ed25519 signer for locally generated wallets."""

    async def sign(self, tx: dict, wallet: Wallet) -> SignedTransaction:
        if wallet.private_key is None:
            raise MissingCredential(f"No local signing key for {wallet.address}")
        signed = dict(tx)
        signed["SigningPubKey"] = signing_pubkey_hex(wallet.public_key)
        signed["TxnSignature"] = ed25519_sign(wallet.private_key, signing_payload(signed))
        blob = canonical_json(signed).hex().upper()
        tx_hash = transaction_hash(blob)
        return SignedTransaction(blob=blob, hash=tx_hash, tx_json={**signed, "hash": tx_hash})


class NodeSigner(Signer):
    """Delegates signing to a trusted rippled node via the `sign` RPC."""

    def __init__(self, client):
        self.client = client

    async def sign(self, tx: dict, wallet: Wallet) -> SignedTransaction:
        if not wallet.secret:
            raise MissingCredential(f"No secret for {wallet.address}")
        result = await self.client.rpc("sign", tx_json=tx, secret=wallet.secret)
        tx_json = result.get("tx_json", {})
        return SignedTransaction(blob=result["tx_blob"], hash=tx_json.get("hash", ""), tx_json=tx_json)


class WalletStore:
    """In-memory credential provider, keyed by classic address."""

    def __init__(self):
        self._wallets: dict[str, Wallet] = {}

    def remember(self, wallet: Wallet) -> None:
        self._wallets[wallet.address] = wallet

    def forget(self, identifier: str) -> None:
        self._wallets.pop(resolve_did(identifier), None)

    def __contains__(self, identifier: str) -> bool:
        return resolve_did(identifier) in self._wallets

    def get(self, identifier: str, seed: str | None = None) -> Wallet:
        """Wallet for a DID/address: cached one first, else built from `seed`."""
        address = resolve_did(identifier)
        wallet = self._wallets.get(address)
        if wallet is not None:
            return wallet
        if seed:
            return Wallet.from_seed(address, seed)
        raise MissingCredential(
            f"Wallet not found for {identifier}. Provide a seed or create the agent first."
        )
