"""Issued-currency (RLUSD) helpers: trust lines, balances, payments."""

from decimal import Decimal

from crypto import resolve_did
from engine.ledger import LedgerClient, currency_code, sign_and_submit
from engine.signer import Signer, Wallet
from envelope import text_memo
from protocol import DEFAULT_TRUST_LIMIT, RLUSD_CURRENCY_CODE, RLUSD_ISSUER


class CurrencyManager:
    """Trust lines and payments for one issued currency."""

    def __init__(self, client: LedgerClient, signer: Signer,
                 currency: str = RLUSD_CURRENCY_CODE, issuer: str | None = None,
                 timeout: float | None = None):
        self.client = client
        self.signer = signer
        self.currency = currency
        self.issuer = issuer or RLUSD_ISSUER
        self.timeout = timeout

    def amount(self, value) -> dict:
        """Wire amount object for `value` units of this currency."""
        return {"currency": currency_code(self.currency), "issuer": self.issuer, "value": str(value)}

    async def has_trust_line(self, account: str) -> bool:
        state = await self.client.get_account_state(resolve_did(account))
        return state.trust_line(self.currency, self.issuer) is not None

    async def get_balance(self, account: str) -> Decimal:
        """Issued balance of `account`; zero when it has no trust line."""
        state = await self.client.get_account_state(resolve_did(account))
        line = state.trust_line(self.currency, self.issuer)
        if line is None:
            return Decimal("0")
        return Decimal(str(line.get("balance", "0")))

    async def create_trust_line(self, wallet: Wallet, limit: str = DEFAULT_TRUST_LIMIT,
                                timeout: float | None = None) -> str:
        tx = {
            "TransactionType": "TrustSet",
            "Account": wallet.address,
            "LimitAmount": self.amount(limit),
        }
        result = await sign_and_submit(self.client, self.signer, wallet, tx,
                                       timeout if timeout is not None else self.timeout)
        return result["hash"]

    async def ensure_trust_line(self, wallet: Wallet, timeout: float | None = None) -> str | None:
        """Create the trust line if missing. Returns the TrustSet hash, or None if it existed."""
        if await self.has_trust_line(wallet.address):
            return None
        return await self.create_trust_line(wallet, timeout=timeout)

    async def pay(self, wallet: Wallet, destination: str, amount, memo: str | None = None,
                  timeout: float | None = None) -> dict:
        """Immediate issued-currency payment. Returns the submit result."""
        tx = {
            "TransactionType": "Payment",
            "Account": wallet.address,
            "Destination": resolve_did(destination),
            "Amount": self.amount(amount),
        }
        if memo:
            tx["Memos"] = [text_memo(memo)]
        return await sign_and_submit(self.client, self.signer, wallet, tx,
                                     timeout if timeout is not None else self.timeout)
