"""
Matching engine for attendance rows.

Each row is tried against the directory in strict stage order:

    1. exact    email / external id equality (confidence 1.0)
    2. ai       external oracle over a bounded directory slice
    3. pattern  rapidfuzz similarity on normalized names

Candidates for all rows are computed concurrently. A final pass in original
row order resolves rows that claim the same directory entry.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional
import structlog

from rapidfuzz import fuzz

from config import settings
from exceptions import (
    JobCancelledError,
    OracleUnavailableError,
    OracleTimeoutError,
    OracleResponseError,
)
from models.columns import ColumnRole, ParsedRow
from models.matching import (
    MatchMethod,
    UnmatchedReason,
    MatchCandidate,
    Suggestion,
    MatchedRow,
    UnmatchedRow,
)
from models.processing import RowError
from services.column_detector import status_from_value
from services.directory_service import DirectorySnapshot
from services.matching_oracle import (
    MatchingOracle,
    NullMatchingOracle,
    OracleBudget,
    OracleCandidate,
    OracleRequest,
    call_oracle,
)
from services.name_normalizer import NormalizedName, normalize_name, prepare_name

logger = structlog.get_logger(__name__)

# Exact-stage lookups in priority order
EXACT_LOOKUPS = [
    (ColumnRole.EMAIL, "email"),
    (ColumnRole.IDENTIFIER, "external_id"),
]

# Pattern scores below this are noise, not suggestions
PATTERN_MIN_SCORE = 0.3

# Stage precedence when two stages give an entry the same score
_METHOD_RANK = {MatchMethod.EXACT: 0, MatchMethod.AI: 1, MatchMethod.PATTERN: 2}


def similarity(a: str, b: str) -> float:
    """
    Similarity of two normalized names in [0, 1].

    Mean of token-set overlap and edit-distance ratio, rounded so repeated
    runs compare equal.
    """
    if not a or not b:
        return 0.0
    score = 0.5 * fuzz.token_set_ratio(a, b) + 0.5 * fuzz.ratio(a, b)
    return round(score / 100.0, 4)


def _candidate_key(candidate: MatchCandidate) -> tuple:
    return (-candidate.score, _METHOD_RANK[candidate.method], candidate.entry_id)


def pool_candidates(candidates: list[MatchCandidate]) -> list[MatchCandidate]:
    """Best candidate per entry, sorted by score descending then entry id."""
    best: dict[str, MatchCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.entry_id)
        if current is None or _candidate_key(candidate) < _candidate_key(current):
            best[candidate.entry_id] = candidate
    return sorted(best.values(), key=_candidate_key)


@dataclass
class RowOutcome:
    """Scored candidates for one row, before duplicate resolution."""
    row: ParsedRow
    name: NormalizedName
    candidates: list[MatchCandidate] = field(default_factory=list)
    accepted: Optional[MatchCandidate] = None
    ambiguous: bool = False
    errors: list[RowError] = field(default_factory=list)


@dataclass
class MatchRun:
    """Output of matching one file."""
    results: list = field(default_factory=list)
    row_errors: list[RowError] = field(default_factory=list)
    oracle_calls: int = 0
    oracle_seconds: float = 0.0


class MatchingEngine:
    """
    Resolves parsed rows against one directory snapshot.

    The threshold and learned aliases are fixed for the engine's lifetime;
    a job builds one engine from its learner snapshot.
    """

    def __init__(
        self,
        directory: DirectorySnapshot,
        threshold: Optional[float] = None,
        oracle: Optional[MatchingOracle] = None,
        aliases: Optional[dict[str, str]] = None,
        budget: Optional[OracleBudget] = None,
    ):
        self.directory = directory
        self.threshold = settings.match_confidence_threshold if threshold is None else threshold
        self.oracle = oracle or NullMatchingOracle()
        self.aliases = aliases or {}
        self.budget = budget or OracleBudget(
            settings.oracle_job_budget_seconds,
            settings.oracle_timeout_seconds,
        )
        self.suggestion_limit = settings.suggestion_limit
        self.ambiguity_margin = settings.ambiguity_margin
        self.top_k = settings.pattern_top_k
        self.max_oracle_candidates = settings.oracle_max_candidates

        # Directory names are normalized once per engine
        self._entry_names = [
            (entry, normalize_name(entry.full_name)) for entry in directory.entries
        ]

    # ===================
    # STAGES
    # ===================

    def exact_stage(self, row: ParsedRow) -> Optional[MatchCandidate]:
        """Case-insensitive equality on the row's email, then identifier."""
        for role, field_name in EXACT_LOOKUPS:
            value = row.get(role).strip()
            if not value:
                continue
            entry = self.directory.lookup_by_exact(field_name, value)
            if entry is not None:
                return MatchCandidate(entry_id=entry.id, score=1.0, method=MatchMethod.EXACT)
        return None

    def pattern_scores(self, name: NormalizedName) -> list[MatchCandidate]:
        """Every directory entry scored against the name and its variants."""
        scored = []
        for entry, entry_name in self._entry_names:
            score = max((similarity(v, entry_name) for v in name.variants), default=0.0)
            scored.append(MatchCandidate(entry_id=entry.id, score=score, method=MatchMethod.PATTERN))
        scored.sort(key=_candidate_key)
        return scored

    def pattern_stage(
        self,
        name: NormalizedName,
        scored: Optional[list[MatchCandidate]] = None,
    ) -> list[MatchCandidate]:
        """Top-K pattern candidates, with learned aliases mixed in."""
        scored = scored if scored is not None else self.pattern_scores(name)
        candidates = [c for c in scored if c.score >= PATTERN_MIN_SCORE]

        for variant in name.variants:
            entry_id = self.aliases.get(variant)
            if entry_id and entry_id in self.directory.by_id:
                candidates.append(MatchCandidate(
                    entry_id=entry_id,
                    score=settings.learned_alias_confidence,
                    method=MatchMethod.PATTERN,
                ))

        return pool_candidates(candidates)[:self.top_k]

    async def ai_stage(
        self,
        row: ParsedRow,
        name: NormalizedName,
        scored: list[MatchCandidate],
        errors: list[RowError],
    ) -> Optional[MatchCandidate]:
        """
        Ask the oracle about the best-scoring slice of the directory.

        Oracle failures are recorded on the row and return None.
        """
        if not self.oracle.available or not scored:
            return None

        slice_ids = [c.entry_id for c in scored[:self.max_oracle_candidates]]
        request = OracleRequest(
            normalized_name=name.normalized,
            candidates=[
                OracleCandidate(
                    id=entry_id,
                    name=self.directory.by_id[entry_id].full_name,
                    email=self.directory.by_id[entry_id].email,
                )
                for entry_id in slice_ids
            ],
        )

        try:
            response = await call_oracle(self.oracle, request, self.budget)
        except (OracleUnavailableError, OracleTimeoutError, OracleResponseError) as e:
            logger.warning("oracle_row_skipped", row=row.index, kind=e.kind)
            errors.append(RowError(row=row.index, kind=e.kind, message=e.message))
            return None

        if response.no_match:
            return None

        allowed = set(slice_ids)
        for match in response.matches:
            if match.identifier in allowed:
                return MatchCandidate(
                    entry_id=match.identifier,
                    score=round(min(1.0, max(0.0, match.confidence)), 4),
                    method=MatchMethod.AI,
                )

        logger.debug("oracle_ids_outside_slice", row=row.index, returned=len(response.matches))
        return None

    # ===================
    # PER ROW
    # ===================

    async def score_row(self, row: ParsedRow) -> RowOutcome:
        """Run the stages for one row, stopping at the first acceptable match."""
        name = prepare_name(row.name)
        outcome = RowOutcome(row=row, name=name)

        exact = self.exact_stage(row)
        if exact is not None:
            outcome.candidates = [exact]
            outcome.accepted = exact
            return outcome

        if name.is_empty:
            return outcome

        scored = await asyncio.to_thread(self.pattern_scores, name)

        ai = await self.ai_stage(row, name, scored, outcome.errors)
        if ai is not None and ai.score >= self.threshold:
            outcome.candidates = [ai]
            outcome.accepted = ai
            return outcome

        pooled = pool_candidates(([ai] if ai is not None else []) + self.pattern_stage(name, scored))
        outcome.candidates = pooled
        if pooled and pooled[0].score >= self.threshold:
            if self._is_ambiguous(pooled):
                outcome.ambiguous = True
                logger.debug(
                    "row_ambiguous",
                    row=row.index,
                    entries=[c.entry_id for c in pooled[:2]],
                    score=pooled[0].score,
                )
            else:
                outcome.accepted = pooled[0]
        return outcome

    def _is_ambiguous(self, pooled: list[MatchCandidate]) -> bool:
        """True when the runner-up is also acceptable and within the margin of the best."""
        if len(pooled) < 2 or pooled[1].score < self.threshold:
            return False
        return round(pooled[0].score - pooled[1].score, 4) <= self.ambiguity_margin

    # ===================
    # RESULTS
    # ===================

    def _suggestions(
        self,
        candidates: list[MatchCandidate],
        exclude: Optional[str] = None,
        below_threshold: bool = False,
    ) -> list[Suggestion]:
        return [
            Suggestion(entry_id=c.entry_id, confidence=c.score)
            for c in candidates
            if c.entry_id != exclude and not (below_threshold and c.score >= self.threshold)
        ][:self.suggestion_limit]

    def _matched(self, outcome: RowOutcome) -> MatchedRow:
        candidate = outcome.accepted
        return MatchedRow(
            row=outcome.row.index,
            original_name=outcome.name.original,
            entry_id=candidate.entry_id,
            confidence=candidate.score,
            method=candidate.method,
            verified=candidate.score >= settings.auto_verify_confidence,
            attendance_status=status_from_value(outcome.row.get(ColumnRole.STATUS)),
            raw=outcome.row.raw,
        )

    def _unmatched(
        self,
        outcome: RowOutcome,
        reason: UnmatchedReason,
        exclude: Optional[str] = None,
        below_threshold: bool = False,
    ) -> UnmatchedRow:
        return UnmatchedRow(
            row=outcome.row.index,
            original_name=outcome.name.original,
            reason=reason,
            suggestions=self._suggestions(outcome.candidates, exclude, below_threshold),
            attendance_status=status_from_value(outcome.row.get(ColumnRole.STATUS)),
            raw=outcome.row.raw,
        )

    def _initial_result(self, outcome: RowOutcome):
        if outcome.accepted is not None:
            return self._matched(outcome)
        if outcome.name.is_empty:
            return self._unmatched(outcome, UnmatchedReason.EMPTY_NAME)
        if outcome.ambiguous:
            return self._unmatched(outcome, UnmatchedReason.AMBIGUOUS)
        if not outcome.candidates:
            return self._unmatched(outcome, UnmatchedReason.NO_CANDIDATES)
        return self._unmatched(outcome, UnmatchedReason.BELOW_THRESHOLD)

    def resolve(self, outcomes: list[RowOutcome]) -> list:
        """
        Turn outcomes into results, one directory entry per row.

        Walks rows in file order. An existing claim with equal or higher
        confidence keeps the entry; a strictly higher later claim takes it.
        The losing row becomes Unmatched with reason "duplicate target" and
        keeps only suggestions below the threshold.
        """
        results = [self._initial_result(o) for o in outcomes]
        claims: dict[str, int] = {}

        for position, outcome in enumerate(outcomes):
            if outcome.accepted is None:
                continue
            entry_id = outcome.accepted.entry_id
            holder = claims.get(entry_id)
            if holder is None:
                claims[entry_id] = position
                continue

            if outcomes[holder].accepted.score >= outcome.accepted.score:
                loser = position
            else:
                loser = holder
                claims[entry_id] = position

            results[loser] = self._unmatched(
                outcomes[loser], UnmatchedReason.DUPLICATE_TARGET, exclude=entry_id, below_threshold=True,
            )
            logger.info(
                "duplicate_target_resolved",
                entry_id=entry_id,
                winner_row=outcomes[claims[entry_id]].row.index,
                loser_row=outcomes[loser].row.index,
            )

        return results

    # ===================
    # FILE
    # ===================

    async def match_rows(
        self,
        rows: list[ParsedRow],
        is_cancelled: Optional[Callable[[], bool]] = None,
        job_id: str = "",
    ) -> MatchRun:
        """
        Match every row of one file.

        Rows are scored concurrently (bounded by row_concurrency), then
        resolved in order. Cancellation is checked before each row starts.

        Raises:
            JobCancelledError: If is_cancelled() turns true between rows
        """
        semaphore = asyncio.Semaphore(settings.row_concurrency)
        cancelled = {"flag": False}

        async def guarded(row: ParsedRow) -> RowOutcome:
            async with semaphore:
                if cancelled["flag"] or (is_cancelled is not None and is_cancelled()):
                    cancelled["flag"] = True
                    raise JobCancelledError(job_id)
                return await self.score_row(row)

        tasks = [asyncio.ensure_future(guarded(row)) for row in rows]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        results = self.resolve(list(outcomes))
        row_errors = [error for outcome in outcomes for error in outcome.errors]

        logger.info(
            "rows_matched",
            total=len(results),
            matched=sum(1 for r in results if r.status == "matched"),
            row_errors=len(row_errors),
            oracle_calls=self.budget.calls,
        )
        return MatchRun(
            results=results,
            row_errors=row_errors,
            oracle_calls=self.budget.calls,
            oracle_seconds=round(self.budget.spent, 3),
        )
