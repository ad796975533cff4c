"""
External name-matching oracle.

The oracle is a capability with one operation, score_candidates(). Two
implementations exist: ClaudeMatchingOracle (Claude via the Anthropic API)
and NullMatchingOracle (never available). Timeouts and the per-job budget
are applied by call_oracle(), outside both implementations.
"""

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional
import structlog

import anthropic

from config import settings
from exceptions import (
    OracleUnavailableError,
    OracleTimeoutError,
    OracleResponseError,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OracleCandidate:
    """Directory slice entry sent to the oracle."""
    id: str
    name: str
    email: Optional[str] = None


@dataclass
class OracleRequest:
    normalized_name: str
    candidates: list[OracleCandidate] = field(default_factory=list)


@dataclass(frozen=True)
class OracleMatch:
    identifier: str
    confidence: float


@dataclass
class OracleResponse:
    """Ranked matches (best first) or an explicit no-match signal."""
    matches: list[OracleMatch] = field(default_factory=list)
    no_match: bool = False


class MatchingOracle(ABC):
    """Scores a normalized name against a slice of the directory."""

    name = "oracle"

    @property
    @abstractmethod
    def available(self) -> bool:
        """True when calls can be attempted."""

    @abstractmethod
    async def score_candidates(self, request: OracleRequest) -> OracleResponse:
        """
        Raises:
            OracleUnavailableError: Service cannot be reached
            OracleResponseError: Response has an unexpected shape
        """


class NullMatchingOracle(MatchingOracle):
    """Oracle used when none is configured. Every row skips the AI stage."""

    name = "none"

    @property
    def available(self) -> bool:
        return False

    async def score_candidates(self, request: OracleRequest) -> OracleResponse:
        raise OracleUnavailableError("No matching oracle configured")


class ClaudeMatchingOracle(MatchingOracle):
    """
    Match attendance names using Claude.

    Handles nicknames, typos, reordered and partial names that string
    similarity alone scores poorly.
    """

    name = "claude"

    SYSTEM_PROMPT = """You match a person's name from an attendance sheet to an enrolled-person directory.

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation, no code blocks.

Consider nicknames, typos, initials, missing middle names and reordered names.
Only use identifiers that appear in the candidate list.

If one or more candidates plausibly match, return them ranked best first:
{"matches": [{"id": "<candidate id>", "confidence": 0.0-1.0}]}

If no candidate is a confident match, return exactly:
{"no_match": true}"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        """Initialize Claude oracle."""
        key = api_key or settings.anthropic_api_key
        self.model = model or settings.oracle_model
        self.max_tokens = max_tokens or settings.oracle_max_tokens
        # call_oracle owns timeouts; the client never retries
        self.client = anthropic.AsyncAnthropic(api_key=key, max_retries=0) if key else None

    @property
    def available(self) -> bool:
        return self.client is not None

    async def score_candidates(self, request: OracleRequest) -> OracleResponse:
        if self.client is None:
            raise OracleUnavailableError("Claude API not available. Set ANTHROPIC_API_KEY.")

        candidates = [
            {"id": c.id, "name": c.name, "email": c.email}
            for c in request.candidates
        ]
        prompt = (
            f"Attendance name: {json.dumps(request.normalized_name)}\n\n"
            f"Candidates:\n{json.dumps(candidates, ensure_ascii=False)}"
        )

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=self.SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            logger.warning("claude_oracle_api_error", error=str(e), error_type=type(e).__name__)
            raise OracleUnavailableError(f"Claude API error: {e}")

        response_text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        logger.debug("claude_oracle_response_received", response_length=len(response_text))
        return parse_oracle_response(response_text)


def parse_oracle_response(response_text: str) -> OracleResponse:
    """
    Parse the oracle's JSON reply.

    Accepted shapes:
        {"matches": [{"id": "...", "confidence": 0.9}, ...]}
        {"no_match": true}

    Raises:
        OracleResponseError: For anything else
    """
    # Clean response - remove markdown code blocks if present
    cleaned = (response_text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise OracleResponseError(f"Oracle response is not JSON: {e}", preview=response_text)

    if not isinstance(data, dict):
        raise OracleResponseError("Oracle response is not an object", preview=response_text)

    raw_matches = data.get("matches")
    if data.get("no_match") is True and not raw_matches:
        return OracleResponse(no_match=True)

    if not isinstance(raw_matches, list):
        raise OracleResponseError("Oracle response has no matches list", preview=response_text)

    matches = []
    for item in raw_matches:
        if not isinstance(item, dict):
            raise OracleResponseError("Oracle match is not an object", preview=response_text)
        identifier = item.get("id")
        confidence = item.get("confidence")
        if identifier is None or isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise OracleResponseError("Oracle match lacks id or confidence", preview=response_text)
        if not 0.0 <= float(confidence) <= 1.0:
            raise OracleResponseError("Oracle confidence outside [0, 1]", preview=response_text)
        matches.append(OracleMatch(identifier=str(identifier), confidence=float(confidence)))

    if not matches:
        return OracleResponse(no_match=True)

    # Stable sort keeps the oracle's own order among equal confidences
    matches.sort(key=lambda m: m.confidence, reverse=True)
    return OracleResponse(matches=matches)


class OracleBudget:
    """
    Cumulative oracle time allowed for one job.

    Each call may run for min(per-call timeout, remaining budget).
    """

    def __init__(self, total_seconds: float, per_call_timeout: float):
        self.total_seconds = total_seconds
        self.per_call_timeout = per_call_timeout
        self.spent = 0.0
        self.calls = 0

    @property
    def remaining(self) -> float:
        return max(0.0, self.total_seconds - self.spent)

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def next_timeout(self) -> Optional[float]:
        if self.exhausted:
            return None
        return min(self.per_call_timeout, self.remaining)

    def charge(self, seconds: float) -> None:
        self.spent += max(0.0, seconds)
        self.calls += 1


async def call_oracle(
    oracle: MatchingOracle,
    request: OracleRequest,
    budget: OracleBudget,
) -> OracleResponse:
    """
    One bounded oracle call.

    Raises:
        OracleUnavailableError: Oracle missing or failing
        OracleTimeoutError: Call timed out or the job budget is spent
        OracleResponseError: Unparsable response
    """
    if not oracle.available:
        raise OracleUnavailableError()

    timeout = budget.next_timeout()
    if timeout is None:
        raise OracleTimeoutError(0.0)

    start = time.monotonic()
    try:
        return await asyncio.wait_for(oracle.score_candidates(request), timeout=timeout)
    except asyncio.TimeoutError:
        raise OracleTimeoutError(timeout)
    finally:
        budget.charge(time.monotonic() - start)


# Singleton instance
_oracle: Optional[MatchingOracle] = None


def get_matching_oracle() -> MatchingOracle:
    """Get or create the configured oracle."""
    global _oracle
    if _oracle is None:
        if settings.oracle_configured:
            _oracle = ClaudeMatchingOracle()
        else:
            logger.info("matching_oracle_disabled", provider=settings.oracle_provider)
            _oracle = NullMatchingOracle()
    return _oracle
