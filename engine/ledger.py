"""XRP Ledger client backends for the XAG engine.

LedgerClient is the only way the engine talks to the ledger:
  connect / disconnect
  autofill(tx)                    -> tx with Sequence, Fee, LastLedgerSequence
  submit(signed)                  -> {"hash", "engine_result", "validated"}
  get_account_state(account)      -> AccountState (balance, trust lines, objects)
  get_transaction(hash)           -> raw tx dict or None
  get_account_history(acct, n)    -> up to n raw entries, order NOT guaranteed
  fund_wallet()                   -> a fresh funded Wallet

Backends:
  - RippledClient: JSON-RPC over httpx against a rippled node, faucet funding.
  - SimLedger: in-process ledger persisted in SQLite. Enforces sequences,
    signatures, balances, trust lines, escrow time locks and
    PREIMAGE-SHA-256 conditions. For tests and local development.
"""

import asyncio
import json
import os
import random
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from crypto import (
    encode_classic_address, ed25519_verify, generate_ed25519_keypair,
    sha256_hash, signing_pubkey_bytes, signing_pubkey_hex, transaction_hash,
    verify_fulfillment,
)
from engine.signer import SignedTransaction, Signer, Wallet, signing_payload
from protocol import (
    DEFAULT_FAUCET_URL, DEFAULT_NODE_URL, DEFAULT_RPC_TIMEOUT, DROPS_PER_XRP,
    LEDGER_OFFSET, RIPPLE_EPOCH_OFFSET, TES_SUCCESS,
    LedgerRPCError, SettlementRejected, SubmissionTimeout,
)


# --- Units and time ---

def xrp_to_drops(amount: str | int | Decimal) -> int:
    """Convert XRP amount to drops (integer)."""
    result = Decimal(str(amount)) * DROPS_PER_XRP
    return int(result.to_integral_value())


def drops_to_xrp(drops: int | str) -> Decimal:
    """Convert drops to XRP."""
    return Decimal(str(drops)) / DROPS_PER_XRP


def to_ripple_time(when: datetime | float | int) -> int:
    """Unix timestamp (or aware datetime) -> Ripple epoch seconds."""
    if isinstance(when, datetime):
        when = when.timestamp()
    return int(when) - RIPPLE_EPOCH_OFFSET


def from_ripple_time(ripple_seconds: int) -> datetime:
    return datetime.fromtimestamp(ripple_seconds + RIPPLE_EPOCH_OFFSET, tz=timezone.utc)


def currency_code(code: str) -> str:
    """Wire form of a currency code: 3-char codes as-is, longer ones as 40 hex chars."""
    if len(code) <= 3:
        return code
    return code.encode("ascii").hex().upper().ljust(40, "0")


def currency_matches(wire_code: str, code: str) -> bool:
    """True if `wire_code` denotes `code` in either its plain or hex form."""
    return wire_code in (code, currency_code(code))


# --- Raw transaction access ---

def tx_body(entry: dict) -> dict:
    """Transaction fields of an account_tx/tx entry (API v1 or v2 shapes), with hash."""
    body = entry.get("tx") or entry.get("tx_json") or entry
    if "hash" not in body and "hash" in entry:
        body = {**body, "hash": entry["hash"]}
    if "date" not in body and "date" in entry:
        body = {**body, "date": entry["date"]}
    return body


def tx_result(entry: dict) -> str:
    meta = entry.get("meta") or entry.get("metaData") or {}
    return meta.get("TransactionResult", "") if isinstance(meta, dict) else ""


def tx_succeeded(entry: dict) -> bool:
    """Finalized (validated) with tesSUCCESS."""
    return bool(entry.get("validated")) and tx_result(entry) == TES_SUCCESS


# --- Timeouts ---

async def bounded(awaitable, timeout: float | None):
    """Await with an optional caller-supplied timeout."""
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout)


@dataclass
class AccountState:
    address: str
    balance: int  # drops
    sequence: int
    trust_lines: list[dict] = field(default_factory=list)
    objects: dict[str, list[dict]] = field(default_factory=dict)

    def trust_line(self, currency: str, issuer: str) -> dict | None:
        for line in self.trust_lines:
            if currency_matches(line.get("currency", ""), currency) and line.get("account") == issuer:
                return line
        return None


class LedgerClient(ABC):
    """Abstract ledger backend. The engine injects one into every service."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def submit(self, signed: SignedTransaction) -> dict:
        """Submit and wait for finality. Returns {"hash", "engine_result", "validated"}."""
        ...

    @abstractmethod
    async def get_account_state(self, account: str) -> AccountState:
        ...

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> dict | None:
        ...

    @abstractmethod
    async def get_account_history(self, account: str, limit: int) -> list[dict]:
        ...

    @abstractmethod
    async def fund_wallet(self) -> Wallet:
        ...

    @abstractmethod
    async def current_ledger_index(self) -> int:
        ...

    @abstractmethod
    async def fee_drops(self) -> str:
        ...

    async def autofill(self, tx: dict) -> dict:
        """Fill Sequence, Fee and LastLedgerSequence where absent."""
        prepared = dict(tx)
        if "Sequence" not in prepared:
            state = await self.get_account_state(prepared["Account"])
            prepared["Sequence"] = state.sequence
        if "Fee" not in prepared:
            prepared["Fee"] = await self.fee_drops()
        if "LastLedgerSequence" not in prepared:
            prepared["LastLedgerSequence"] = await self.current_ledger_index() + LEDGER_OFFSET
        return prepared


def _deadline(timeout: float | None):
    """Seconds left until `timeout` from now, as a callable (None if unbounded)."""
    if timeout is None:
        return lambda: None
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    return lambda: max(end - loop.time(), 0)


async def submit_signed(client: LedgerClient, signed: SignedTransaction,
                        timeout: float | None = None) -> dict:
    """Submit once. A timeout leaves the outcome unknown -> SubmissionTimeout."""
    try:
        return await bounded(client.submit(signed), timeout)
    except asyncio.TimeoutError as e:
        raise SubmissionTimeout(signed.hash, timeout) from e


async def sign_and_submit(client: LedgerClient, signer: Signer, wallet: Wallet, tx: dict,
                          timeout: float | None = None) -> dict:
    """autofill -> sign -> submit; raises SettlementRejected unless tesSUCCESS.

    `timeout` bounds the whole operation: the three steps share one deadline.
    Returns the submit result plus the prepared "Sequence".
    """
    remaining = _deadline(timeout)
    prepared = await bounded(client.autofill(tx), remaining())
    signed = await bounded(signer.sign(prepared, wallet), remaining())
    result = await submit_signed(client, signed, remaining())
    engine_result = result.get("engine_result", "")
    if engine_result != TES_SUCCESS or not result.get("validated"):
        raise SettlementRejected(
            f"{prepared['TransactionType']} rejected by ledger: {engine_result or 'not validated'}",
            result=engine_result,
            tx_hash=result.get("hash", signed.hash),
        )
    return {**result, "Sequence": prepared["Sequence"]}


class RippledClient(LedgerClient):
    """rippled JSON-RPC backend over httpx.

    Node URL from XAG_NODE_URL (default: public testnet), faucet from
    XAG_FAUCET_URL. Every request is bounded by `timeout` seconds.
    """

    def __init__(self, node_url: str | None = None, faucet_url: str | None = None,
                 timeout: float | None = None, poll_interval: float = 1.0,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.node_url = node_url or os.environ.get("XAG_NODE_URL", DEFAULT_NODE_URL)
        self.faucet_url = faucet_url or os.environ.get("XAG_FAUCET_URL", DEFAULT_FAUCET_URL)
        self.timeout = timeout if timeout is not None else float(
            os.environ.get("XAG_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT)
        )
        self.poll_interval = poll_interval
        self.transport = transport
        self._http: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        await self.rpc("server_info")

    async def disconnect(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(transport=self.transport) as client:
            return await client.post(url, json=payload, timeout=self.timeout)

    async def rpc(self, method: str, **params) -> dict:
        """Make a rippled JSON-RPC call. Raises LedgerRPCError on error results."""
        resp = await self._post(self.node_url, {"method": method, "params": [params]})
        resp.raise_for_status()
        result = resp.json().get("result", {})
        if result.get("status") == "error" or "error" in result:
            raise LedgerRPCError(result.get("error", "unknown"), result.get("error_message", ""))
        return result

    async def current_ledger_index(self) -> int:
        result = await self.rpc("ledger_current")
        return int(result["ledger_current_index"])

    async def fee_drops(self) -> str:
        result = await self.rpc("fee")
        drops = result.get("drops", {})
        return str(max(int(drops.get("open_ledger_fee", 10)), int(drops.get("base_fee", 10))))

    async def submit(self, signed: SignedTransaction) -> dict:
        result = await self.rpc("submit", tx_blob=signed.blob)
        engine_result = result.get("engine_result", "")
        tx_json = result.get("tx_json", {})
        tx_hash = tx_json.get("hash", signed.hash)
        # tem/tef/tel: never applied, nothing to wait for
        if engine_result[:3] in ("tem", "tef", "tel"):
            return {"hash": tx_hash, "engine_result": engine_result, "validated": False}

        last_ledger = tx_json.get("LastLedgerSequence") or signed.tx_json.get("LastLedgerSequence")
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                tx = await self.rpc("tx", transaction=tx_hash)
            except LedgerRPCError as e:
                if e.error != "txnNotFound":
                    raise
                tx = {}
            if tx.get("validated"):
                return {"hash": tx_hash, "engine_result": tx_result(tx), "validated": True,
                        "ledger_index": tx.get("ledger_index")}
            if last_ledger is not None and await self.current_ledger_index() > int(last_ledger):
                return {"hash": tx_hash, "engine_result": "tefMAX_LEDGER", "validated": False}

    async def get_account_state(self, account: str) -> AccountState:
        info = await self.rpc("account_info", account=account, ledger_index="validated")
        data = info["account_data"]
        lines = await self.rpc("account_lines", account=account, ledger_index="validated")
        objects: dict[str, list[dict]] = {}
        for obj_type in ("escrow", "did"):
            res = await self.rpc("account_objects", account=account, type=obj_type,
                                 ledger_index="validated")
            objects[obj_type] = res.get("account_objects", [])
        return AccountState(
            address=account,
            balance=int(data["Balance"]),
            sequence=int(data["Sequence"]),
            trust_lines=lines.get("lines", []),
            objects=objects,
        )

    async def get_transaction(self, tx_hash: str) -> dict | None:
        try:
            return await self.rpc("tx", transaction=tx_hash)
        except LedgerRPCError as e:
            if e.error in ("txnNotFound", "notImpl"):
                return None
            raise

    async def get_account_history(self, account: str, limit: int) -> list[dict]:
        result = await self.rpc("account_tx", account=account, limit=limit)
        return result.get("transactions", [])

    async def fund_wallet(self) -> Wallet:
        """Ask the testnet faucet for a new funded account."""
        resp = await self._post(self.faucet_url, {})
        resp.raise_for_status()
        account = resp.json()["account"]
        address = account.get("classicAddress") or account["address"]
        return Wallet(address=address, secret=account["secret"])


# Faucet source for simulated funding (account ID 0)
SIM_GENESIS = encode_classic_address(bytes(20))


class SimLedger(LedgerClient):
    """Simulated ledger for development/integration testing.

    Tracks real balances in SQLite. Enforces:
    - Per-account sequence numbers (tefPAST_SEQ / terPRE_SEQ)
    - Ed25519 signatures against the account's registered key (tefBAD_AUTH)
    - Insufficient balance (tecUNFUNDED / tecUNFUNDED_PAYMENT)
    - Escrow time locks (tecNO_PERMISSION) and conditions (tecCRYPTOCONDITION_ERROR)
    - Trust lines for issued currencies (tecPATH_DRY)
    tec* results consume the fee and sequence and appear in history, like
    the real ledger; tem/tef/ter results are never applied.

    `clock` returns Unix seconds; tests advance it to cross time locks.
    `history_order` controls how account history pages come back:
    "newest" (default), "oldest" or "shuffled".

    Usage:
        sim = SimLedger()
        wallet = await sim.fund_wallet()              # 1000 XRP, local key
        sim.fund(wallet.address, "50")                # top up
        sim.issue(wallet.address, "RLUSD", issuer, "100")
    """

    def __init__(self, db_path: str = ":memory:", clock=None, fee_drops: str = "12",
                 starting_xrp: str = "1000", history_order: str = "newest",
                 seed: int | None = None):
        self.clock = clock or time.time
        self._fee = fee_drops
        self.starting_xrp = starting_xrp
        self.history_order = history_order
        self._random = random.Random(seed)
        self._ledger_index = 1
        self.submitted: list[dict] = []  # every submit attempt, for test assertions

        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                address TEXT PRIMARY KEY,
                balance_drops TEXT NOT NULL DEFAULT '0',
                sequence INTEGER NOT NULL DEFAULT 1,
                signing_pubkey TEXT
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_trust_lines (
                address TEXT NOT NULL,
                currency TEXT NOT NULL,
                issuer TEXT NOT NULL,
                balance TEXT NOT NULL DEFAULT '0',
                limit_value TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (address, currency, issuer)
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                account TEXT NOT NULL,
                tx_json TEXT NOT NULL,
                result TEXT NOT NULL,
                ledger_index INTEGER NOT NULL,
                close_time INTEGER NOT NULL
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_tx_accounts (
                tx_id INTEGER NOT NULL,
                address TEXT NOT NULL,
                PRIMARY KEY (tx_id, address)
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_escrows (
                owner TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                amount_drops TEXT NOT NULL,
                destination TEXT NOT NULL,
                condition TEXT,
                finish_after INTEGER,
                cancel_after INTEGER,
                PRIMARY KEY (owner, sequence)
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_dids (
                address TEXT PRIMARY KEY,
                uri TEXT,
                data TEXT,
                tx_hash TEXT NOT NULL
            )
        """)
        self._db.commit()

    # --- Internal state helpers (caller holds the lock) ---

    def _account(self, address: str):
        return self._db.execute(
            "SELECT * FROM sim_accounts WHERE address = ?", (address,)
        ).fetchone()

    def _set_balance(self, address: str, drops: int):
        self._db.execute(
            "INSERT INTO sim_accounts (address, balance_drops) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance_drops = ?",
            (address, str(drops), str(drops)),
        )

    def _balance(self, address: str) -> int:
        row = self._account(address)
        return int(row["balance_drops"]) if row else 0

    def _line(self, address: str, currency: str, issuer: str):
        return self._db.execute(
            "SELECT * FROM sim_trust_lines WHERE address = ? AND currency = ? AND issuer = ?",
            (address, currency, issuer),
        ).fetchone()

    def _close_time(self) -> int:
        return to_ripple_time(self.clock())

    def _record(self, tx: dict, tx_hash: str, result: str, affected: set[str]) -> None:
        cur = self._db.execute(
            "INSERT INTO sim_transactions (hash, account, tx_json, result, ledger_index, close_time) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (tx_hash, tx["Account"], json.dumps(tx), result, self._ledger_index, self._close_time()),
        )
        for address in affected | {tx["Account"]}:
            self._db.execute(
                "INSERT OR IGNORE INTO sim_tx_accounts (tx_id, address) VALUES (?, ?)",
                (cur.lastrowid, address),
            )

    @staticmethod
    def _sim_address(pubkey: bytes) -> str:
        """Deterministic address for a simulated Ed25519 key (not a mainnet derivation)."""
        account_id = bytes.fromhex(sha256_hash(bytes.fromhex(sha256_hash(pubkey))))[:20]
        return encode_classic_address(account_id)

    # --- SimLedger-only methods (for test setup) ---

    def register_wallet(self, wallet: Wallet, xrp: str = "0") -> None:
        """Create an account controlled by `wallet`'s local key."""
        with self._lock:
            if self._account(wallet.address) is None:
                self._set_balance(wallet.address, 0)
            self._db.execute(
                "UPDATE sim_accounts SET signing_pubkey = ? WHERE address = ?",
                (signing_pubkey_hex(wallet.public_key), wallet.address),
            )
            self._db.commit()
        if Decimal(xrp) > 0:
            self.fund(wallet.address, xrp)

    def create_wallet(self, xrp: str | None = None) -> Wallet:
        """Generate a local Ed25519 wallet and open its account."""
        priv, pub = generate_ed25519_keypair()
        wallet = Wallet(address=self._sim_address(pub), private_key=priv)
        self.register_wallet(wallet, self.starting_xrp if xrp is None else xrp)
        return wallet

    def fund(self, address: str, xrp: str) -> str:
        """Credit an account with XRP from the simulated faucet. Returns tx hash."""
        drops = xrp_to_drops(xrp)
        with self._lock:
            self._set_balance(address, self._balance(address) + drops)
            tx = {
                "TransactionType": "Payment", "Account": SIM_GENESIS,
                "Destination": address, "Amount": str(drops), "Fee": "0",
                "Sequence": self._ledger_index,
            }
            tx_hash = transaction_hash(json.dumps(tx, sort_keys=True).encode().hex() + "00")
            self._record(tx, tx_hash, TES_SUCCESS, {address})
            self._ledger_index += 1
            self._db.commit()
        return tx_hash

    def issue(self, address: str, currency: str, issuer: str, value: str) -> None:
        """Credit issued currency on an existing trust line (simulates the issuer paying)."""
        code = currency_code(currency)
        with self._lock:
            line = self._line(address, code, issuer)
            if line is None:
                raise ValueError(f"No {currency} trust line for {address}")
            new_balance = Decimal(line["balance"]) + Decimal(value)
            self._db.execute(
                "UPDATE sim_trust_lines SET balance = ? WHERE address = ? AND currency = ? AND issuer = ?",
                (str(new_balance), address, code, issuer),
            )
            self._db.commit()

    def escrow_count(self, owner: str) -> int:
        with self._lock:
            return self._db.execute(
                "SELECT COUNT(*) FROM sim_escrows WHERE owner = ?", (owner,)
            ).fetchone()[0]

    # --- LedgerClient interface ---

    async def current_ledger_index(self) -> int:
        return self._ledger_index

    async def fee_drops(self) -> str:
        return self._fee

    async def fund_wallet(self) -> Wallet:
        return self.create_wallet()

    async def submit(self, signed: SignedTransaction) -> dict:
        try:
            tx = json.loads(bytes.fromhex(signed.blob).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return {"hash": signed.hash, "engine_result": "temMALFORMED", "validated": False}
        tx_hash = transaction_hash(signed.blob)
        self.submitted.append(tx)
        with self._lock:
            result = self._apply(tx, tx_hash)
            self._db.commit()
        applied = result.startswith("tes") or result.startswith("tec")
        return {"hash": tx_hash, "engine_result": result, "validated": applied,
                "ledger_index": self._ledger_index - 1 if applied else None}

    def _apply(self, tx: dict, tx_hash: str) -> str:
        account = self._account(tx.get("Account", ""))
        if account is None:
            return "terNO_ACCOUNT"
        if self._db.execute("SELECT 1 FROM sim_transactions WHERE hash = ?", (tx_hash,)).fetchone():
            return "tefALREADY"

        # Signature must come from the account's registered key
        try:
            pubkey = signing_pubkey_bytes(tx.get("SigningPubKey", ""))
        except ValueError:
            return "tefBAD_AUTH"
        if tx.get("SigningPubKey", "").upper() != (account["signing_pubkey"] or "").upper():
            return "tefBAD_AUTH"
        if not ed25519_verify(pubkey, signing_payload(tx), tx.get("TxnSignature", "")):
            return "tefBAD_AUTH"

        seq = tx.get("Sequence")
        if seq is None or int(seq) < account["sequence"]:
            return "tefPAST_SEQ"
        if int(seq) > account["sequence"]:
            return "terPRE_SEQ"
        last_ledger = tx.get("LastLedgerSequence")
        if last_ledger is not None and int(last_ledger) < self._ledger_index:
            return "tefMAX_LEDGER"

        fee = int(tx.get("Fee", self._fee))
        balance = int(account["balance_drops"])
        if balance < fee:
            return "terINSUF_FEE_B"

        handler = {
            "Payment": self._apply_payment,
            "EscrowCreate": self._apply_escrow_create,
            "EscrowFinish": self._apply_escrow_finish,
            "TrustSet": self._apply_trust_set,
            "DIDSet": self._apply_did_set,
        }.get(tx.get("TransactionType"))
        if handler is None:
            return "temUNKNOWN"

        # Static checks first: malformed transactions are never applied
        malformed = self._check_malformed(tx)
        if malformed:
            return malformed

        # From here the fee and sequence are consumed, success or tec
        self._set_balance(tx["Account"], balance - fee)
        self._db.execute(
            "UPDATE sim_accounts SET sequence = sequence + 1 WHERE address = ?", (tx["Account"],)
        )
        affected: set[str] = set()
        result = handler(tx, tx_hash, affected)
        self._record(tx, tx_hash, result, affected)
        self._ledger_index += 1
        return result

    def _check_malformed(self, tx: dict) -> str:
        kind = tx["TransactionType"]
        if kind == "EscrowCreate":
            if not isinstance(tx.get("Amount"), str):
                return "temBAD_AMOUNT"
            if "FinishAfter" not in tx and "Condition" not in tx:
                return "temMALFORMED"
            if "FinishAfter" in tx and "CancelAfter" in tx and int(tx["CancelAfter"]) <= int(tx["FinishAfter"]):
                return "temBAD_EXPIRATION"
        elif kind == "EscrowFinish":
            if "Owner" not in tx or "OfferSequence" not in tx:
                return "temMALFORMED"
            if ("Fulfillment" in tx) != ("Condition" in tx):
                return "temMALFORMED"
        elif kind == "Payment":
            if "Destination" not in tx or "Amount" not in tx:
                return "temMALFORMED"
        elif kind == "TrustSet":
            if not isinstance(tx.get("LimitAmount"), dict):
                return "temBAD_LIMIT"
            if tx["LimitAmount"].get("issuer") == tx["Account"]:
                return "temDST_IS_SRC"
        return ""

    def _apply_payment(self, tx: dict, tx_hash: str, affected: set[str]) -> str:
        dest = tx["Destination"]
        amount = tx["Amount"]
        affected.add(dest)
        if isinstance(amount, str):
            drops = int(amount)
            balance = self._balance(tx["Account"])
            if balance < drops:
                return "tecUNFUNDED_PAYMENT"
            self._set_balance(tx["Account"], balance - drops)
            self._set_balance(dest, self._balance(dest) + drops)
            return TES_SUCCESS

        currency, issuer = amount["currency"], amount["issuer"]
        value = Decimal(str(amount["value"]))
        affected.add(issuer)
        if tx["Account"] != issuer:
            src_line = self._line(tx["Account"], currency, issuer)
            if src_line is None or Decimal(src_line["balance"]) < value:
                return "tecPATH_DRY"
        if dest != issuer:
            dst_line = self._line(dest, currency, issuer)
            if dst_line is None:
                return "tecPATH_DRY"
            if Decimal(dst_line["balance"]) + value > Decimal(dst_line["limit_value"]):
                return "tecPATH_PARTIAL"
        if tx["Account"] != issuer:
            self._db.execute(
                "UPDATE sim_trust_lines SET balance = ? WHERE address = ? AND currency = ? AND issuer = ?",
                (str(Decimal(src_line["balance"]) - value), tx["Account"], currency, issuer),
            )
        if dest != issuer:
            self._db.execute(
                "UPDATE sim_trust_lines SET balance = ? WHERE address = ? AND currency = ? AND issuer = ?",
                (str(Decimal(dst_line["balance"]) + value), dest, currency, issuer),
            )
        return TES_SUCCESS

    def _apply_escrow_create(self, tx: dict, tx_hash: str, affected: set[str]) -> str:
        now = self._close_time()
        dest = tx.get("Destination", "")
        if self._account(dest) is None:
            return "tecNO_DST"
        affected.add(dest)
        if "FinishAfter" in tx and int(tx["FinishAfter"]) <= now:
            return "tecNO_PERMISSION"
        if "CancelAfter" in tx and int(tx["CancelAfter"]) <= now:
            return "tecNO_PERMISSION"
        drops = int(tx["Amount"])
        balance = self._balance(tx["Account"])
        if balance < drops:
            return "tecUNFUNDED"
        self._set_balance(tx["Account"], balance - drops)
        self._db.execute(
            "INSERT INTO sim_escrows (owner, sequence, tx_hash, amount_drops, destination, "
            "condition, finish_after, cancel_after) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (tx["Account"], int(tx["Sequence"]), tx_hash, str(drops), dest,
             tx.get("Condition"), tx.get("FinishAfter"), tx.get("CancelAfter")),
        )
        return TES_SUCCESS

    def _apply_escrow_finish(self, tx: dict, tx_hash: str, affected: set[str]) -> str:
        row = self._db.execute(
            "SELECT * FROM sim_escrows WHERE owner = ? AND sequence = ?",
            (tx["Owner"], int(tx["OfferSequence"])),
        ).fetchone()
        if row is None:
            return "tecNO_TARGET"
        affected.update({row["owner"], row["destination"]})
        now = self._close_time()
        if row["finish_after"] is not None and now <= int(row["finish_after"]):
            return "tecNO_PERMISSION"
        if row["cancel_after"] is not None and now >= int(row["cancel_after"]):
            return "tecNO_PERMISSION"
        if row["condition"]:
            if "Fulfillment" not in tx or tx["Condition"].upper() != row["condition"].upper():
                return "tecCRYPTOCONDITION_ERROR"
            if not verify_fulfillment(row["condition"], tx["Fulfillment"]):
                return "tecCRYPTOCONDITION_ERROR"
        elif "Fulfillment" in tx:
            return "tecCRYPTOCONDITION_ERROR"
        dest = row["destination"]
        self._set_balance(dest, self._balance(dest) + int(row["amount_drops"]))
        self._db.execute(
            "DELETE FROM sim_escrows WHERE owner = ? AND sequence = ?",
            (row["owner"], row["sequence"]),
        )
        return TES_SUCCESS

    def _apply_trust_set(self, tx: dict, tx_hash: str, affected: set[str]) -> str:
        limit = tx["LimitAmount"]
        issuer = limit["issuer"]
        affected.add(issuer)
        self._db.execute(
            "INSERT INTO sim_trust_lines (address, currency, issuer, balance, limit_value) "
            "VALUES (?, ?, ?, '0', ?) ON CONFLICT(address, currency, issuer) DO UPDATE SET limit_value = ?",
            (tx["Account"], limit["currency"], issuer, str(limit["value"]), str(limit["value"])),
        )
        return TES_SUCCESS

    def _apply_did_set(self, tx: dict, tx_hash: str, affected: set[str]) -> str:
        if "URI" not in tx and "Data" not in tx and "DIDDocument" not in tx:
            return "tecEMPTY_DID"
        self._db.execute(
            "INSERT INTO sim_dids (address, uri, data, tx_hash) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(address) DO UPDATE SET uri = ?, data = ?, tx_hash = ?",
            (tx["Account"], tx.get("URI"), tx.get("Data"), tx_hash,
             tx.get("URI"), tx.get("Data"), tx_hash),
        )
        return TES_SUCCESS

    async def get_account_state(self, account: str) -> AccountState:
        with self._lock:
            row = self._account(account)
            if row is None:
                raise LedgerRPCError("actNotFound", "Account not found.")
            lines = self._db.execute(
                "SELECT * FROM sim_trust_lines WHERE address = ?", (account,)
            ).fetchall()
            escrows = self._db.execute(
                "SELECT * FROM sim_escrows WHERE owner = ? ORDER BY sequence", (account,)
            ).fetchall()
            did = self._db.execute(
                "SELECT * FROM sim_dids WHERE address = ?", (account,)
            ).fetchone()

        escrow_objects = []
        for e in escrows:
            obj = {
                "LedgerEntryType": "Escrow",
                "Account": e["owner"],
                "Destination": e["destination"],
                "Amount": e["amount_drops"],
                "PreviousTxnID": e["tx_hash"],
            }
            if e["condition"]:
                obj["Condition"] = e["condition"]
            if e["finish_after"] is not None:
                obj["FinishAfter"] = e["finish_after"]
            if e["cancel_after"] is not None:
                obj["CancelAfter"] = e["cancel_after"]
            escrow_objects.append(obj)

        did_objects = []
        if did is not None:
            obj = {"LedgerEntryType": "DID", "Account": account, "PreviousTxnID": did["tx_hash"]}
            if did["uri"]:
                obj["URI"] = did["uri"]
            if did["data"]:
                obj["Data"] = did["data"]
            did_objects.append(obj)

        return AccountState(
            address=account,
            balance=int(row["balance_drops"]),
            sequence=row["sequence"],
            trust_lines=[
                {"account": l["issuer"], "currency": l["currency"],
                 "balance": l["balance"], "limit": l["limit_value"]}
                for l in lines
            ],
            objects={"escrow": escrow_objects, "did": did_objects},
        )

    def _entry(self, row) -> dict:
        tx = json.loads(row["tx_json"])
        tx["hash"] = row["hash"]
        tx["date"] = row["close_time"]
        tx["ledger_index"] = row["ledger_index"]
        return {"tx": tx, "meta": {"TransactionResult": row["result"]}, "validated": True}

    async def get_transaction(self, tx_hash: str) -> dict | None:
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM sim_transactions WHERE hash = ?", (tx_hash,)
            ).fetchone()
        if row is None:
            return None
        entry = self._entry(row)
        # `tx` RPC shape: fields at top level plus meta/validated
        return {**entry["tx"], "meta": entry["meta"], "validated": True}

    async def get_account_history(self, account: str, limit: int) -> list[dict]:
        with self._lock:
            rows = self._db.execute(
                "SELECT t.* FROM sim_transactions t JOIN sim_tx_accounts a ON a.tx_id = t.id "
                "WHERE a.address = ? ORDER BY t.id DESC LIMIT ?",
                (account, limit),
            ).fetchall()
        entries = [self._entry(r) for r in rows]
        if self.history_order == "oldest":
            entries.reverse()
        elif self.history_order == "shuffled":
            self._random.shuffle(entries)
        return entries
