"""Agent verification: identity, reputation and profile claims.

Each claim is checked independently against the ledger. A claim whose
check fails with a ledger or network error is simply unverified; the
verdict never raises for that reason.

Scoring: +25 per satisfied claim (identity, reputation, profile), +25 more
when more than two credentials were collected. Verified means score >= 50
and every explicitly required claim holds.
"""

import asyncio
from dataclasses import dataclass, field

import httpx

from crypto import resolve_did
from engine.history import HistoryReducer
from engine.ledger import LedgerClient
from engine.reputation import ReputationScorer
from protocol import LedgerRPCError, XAGError

CLAIM_POINTS = 25
VERIFIED_THRESHOLD = 50

# Failures that make a claim unverified instead of failing the whole check
CLAIM_ERRORS = (XAGError, LedgerRPCError, httpx.HTTPError, asyncio.TimeoutError)


@dataclass
class VerificationResult:
    agent_did: str
    verified: bool = False
    identity: bool = False
    reputation: bool = False
    profile: bool = False
    credentials: list[dict] = field(default_factory=list)
    score: int = 0

    def to_dict(self) -> dict:
        return {
            "agentDID": self.agent_did,
            "verified": self.verified,
            "claims": {
                "identity": self.identity,
                "reputation": self.reputation,
                "profile": self.profile,
                "credentials": list(self.credentials),
            },
            "score": self.score,
        }


class VerificationService:
    def __init__(self, client: LedgerClient, reputation: ReputationScorer, history: HistoryReducer):
        self.client = client
        self.reputation = reputation
        self.history = history

    async def verify_agent(self, agent_did: str, min_reputation: int | None = None,
                           require_profile: bool = False,
                           required_capabilities: list[str] | None = None) -> VerificationResult:
        address = resolve_did(agent_did)
        result = VerificationResult(agent_did=agent_did)

        try:
            await self.client.get_account_state(address)
            result.identity = True
            result.credentials.append({"type": "identity", "verified": True, "source": "XRPL Account"})
        except CLAIM_ERRORS:
            result.identity = False

        try:
            reputation = await self.reputation.score(agent_did)
            result.reputation = reputation.meets(min_reputation or 0)
            if result.reputation:
                result.credentials.append({
                    "type": "reputation", "verified": True,
                    "source": f"XRPL History (Score: {reputation.score})",
                })
        except CLAIM_ERRORS:
            result.reputation = False

        has_capabilities = not required_capabilities
        try:
            profile = await self.history.profile(address)
            result.profile = profile is not None
            if profile is not None:
                result.credentials.append({"type": "profile", "verified": True, "source": "XRPL Profile Memo"})
                if required_capabilities and all(c in profile.capabilities for c in required_capabilities):
                    has_capabilities = True
                    result.credentials.append({
                        "type": "capabilities", "verified": True, "source": "Profile Capabilities",
                    })
        except CLAIM_ERRORS:
            result.profile = False

        score = CLAIM_POINTS * sum([result.identity, result.reputation, result.profile])
        if len(result.credentials) > 2:
            score += CLAIM_POINTS
        result.score = score
        result.verified = (
            score >= VERIFIED_THRESHOLD
            and (not min_reputation or result.reputation)
            and (not require_profile or result.profile)
            and has_capabilities
        )
        return result
