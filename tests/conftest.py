import sys
import os
import time

import pytest

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import to_did
from engine.ledger import SimLedger, to_ripple_time
from engine.signer import LocalSigner
from protocol import RLUSD_ISSUER
from xag import XAG


class FakeClock:
    """Unix-seconds clock the tests move by hand (escrow time locks)."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def ripple(self, offset: int = 0) -> int:
        """Ripple epoch seconds `offset` from now."""
        return to_ripple_time(self.now) + offset


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sim(clock):
    return SimLedger(clock=clock)


@pytest.fixture
def signer():
    return LocalSigner()


@pytest.fixture
def xag(sim):
    return XAG.simulated(sim)


def make_agent(xag: XAG, xrp: str = "1000"):
    """Funded wallet remembered by the gateway. Returns (wallet, did)."""
    wallet = xag.client.create_wallet(xrp)
    xag.wallets.remember(wallet)
    return wallet, to_did(wallet.address)


@pytest.fixture
def buyer(xag):
    return make_agent(xag)


@pytest.fixture
def seller(xag):
    return make_agent(xag)


async def open_rlusd(xag: XAG, wallet, amount: str | None = None):
    """Trust line for the default issuer, optionally credited with `amount`."""
    await xag.currency.create_trust_line(wallet)
    if amount:
        xag.client.issue(wallet.address, "RLUSD", RLUSD_ISSUER, amount)
