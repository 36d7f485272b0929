#!/usr/bin/env python3
"""XAG HTTP server.

Backend from XAG_BACKEND: "rippled" (default, XAG_NODE_URL) or "sim"
(in-process SimLedger persisted at XAG_SIM_DB, local signing).
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from engine.app import create_app
from engine.ledger import RippledClient, SimLedger
from protocol import DEFAULT_PORT, DEFAULT_RPC_TIMEOUT
from xag import XAG

BACKEND = os.environ.get("XAG_BACKEND", "rippled")
SIM_DB = os.environ.get("XAG_SIM_DB", ":memory:")
PORT = int(os.environ.get("XAG_PORT", str(DEFAULT_PORT)))
TIMEOUT = float(os.environ.get("XAG_RPC_TIMEOUT", str(DEFAULT_RPC_TIMEOUT)))


def build_gateway() -> XAG:
    if BACKEND == "sim":
        return XAG.simulated(SimLedger(SIM_DB), verbose=True, timeout=TIMEOUT)
    if BACKEND == "rippled":
        return XAG(RippledClient(timeout=TIMEOUT), verbose=True, timeout=TIMEOUT)
    print(f"Unknown XAG_BACKEND: {BACKEND} (expected 'rippled' or 'sim')", file=sys.stderr)
    sys.exit(1)


def main():
    xag = build_gateway()
    app = create_app(xag)
    if BACKEND == "rippled":
        print(f"[server] Ledger node: {xag.client.node_url}")
    else:
        print(f"[server] Simulated ledger ({SIM_DB})")
    print(f"[server] Listening on :{PORT}")

    uvicorn.run(app, host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()
