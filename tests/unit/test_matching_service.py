"""
Unit tests for the matching engine.

Run: pytest tests/unit/test_matching_service.py -v
"""

import asyncio
import pytest

from exceptions import JobCancelledError, OracleUnavailableError, OracleResponseError
from models.columns import ColumnRole, ParsedRow
from models.matching import (
    AttendanceStatus,
    MatchCandidate,
    MatchMethod,
    MatchedRow,
    UnmatchedReason,
    UnmatchedRow,
)
from services.directory_service import DirectorySnapshot, InMemoryDirectory
from services.matching_oracle import OracleBudget, OracleMatch, OracleResponse
from services.matching_service import MatchingEngine, similarity, pool_candidates
from tests.factories import DirectoryEntryFactory, FakeOracle


def _row(index: int, name: str, email: str = "", identifier: str = "", status: str = "") -> ParsedRow:
    cells = {ColumnRole.NAME: name}
    if email:
        cells[ColumnRole.EMAIL] = email
    if identifier:
        cells[ColumnRole.IDENTIFIER] = identifier
    if status:
        cells[ColumnRole.STATUS] = status
    return ParsedRow(index=index, cells=cells, raw={"Name": name})


def _match(engine: MatchingEngine, *rows: ParsedRow):
    return asyncio.run(engine.match_rows(list(rows)))


class TestExactStage:
    """Email and identifier equality."""

    def test_exact_email_match(self, snapshot):
        """Exact email hits skip every later stage."""
        oracle = FakeOracle(error=OracleUnavailableError())
        engine = MatchingEngine(snapshot, oracle=oracle)

        run = _match(engine, _row(2, "Johnny S.", email="JOHN.SMITH@x.edu", status="Present"))

        result = run.results[0]
        assert isinstance(result, MatchedRow)
        assert result.entry_id == "p-001"
        assert result.confidence == 1.0
        assert result.method == MatchMethod.EXACT
        assert result.verified is True
        assert result.attendance_status == AttendanceStatus.PRESENT
        assert oracle.requests == []
        assert run.row_errors == []

    def test_exact_identifier_match(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(2, "M. F.", identifier="s1003"))

        assert run.results[0].entry_id == "p-003"
        assert run.results[0].method == MatchMethod.EXACT

    def test_other_organization_is_invisible(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(2, "", email="other@y.edu"))

        assert isinstance(run.results[0], UnmatchedRow)
        assert run.results[0].reason == UnmatchedReason.EMPTY_NAME

    def test_empty_name_with_matching_email(self, snapshot):
        """An exact hit still matches when the name cell is blank."""
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(2, "", email="wchen@x.edu"))

        assert run.results[0].entry_id == "p-005"

    def test_empty_name(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(2, "  ..  "))

        result = run.results[0]
        assert result.reason == UnmatchedReason.EMPTY_NAME
        assert result.suggestions == []
        assert result.original_name == "  ..  "


class TestPatternStage:
    """Similarity matching on normalized names."""

    def test_last_first_order(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(3, "Garcia, Robert"))

        result = run.results[0]
        assert result.entry_id == "p-002"
        assert result.method == MatchMethod.PATTERN
        assert result.confidence == 1.0
        assert result.original_name == "Garcia, Robert"
        assert result.raw == {"Name": "Garcia, Robert"}

    def test_nickname_expansion(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(2, "Liz Turner"))

        assert run.results[0].entry_id == "p-004"

    def test_accents_are_ignored(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(2, "maria fernandez"))

        assert run.results[0].entry_id == "p-003"
        assert run.results[0].confidence == 1.0

    def test_unrelated_name_is_unmatched(self, snapshot):
        """Close-but-not-enough names carry suggestions below the threshold."""
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(4, "Maria Lopez"))

        result = run.results[0]
        assert isinstance(result, UnmatchedRow)
        assert result.reason == UnmatchedReason.BELOW_THRESHOLD
        assert result.suggestions[0].entry_id == "p-003"
        assert len(result.suggestions) <= 3
        assert all(s.confidence < 0.7 for s in result.suggestions)
        confidences = [s.confidence for s in result.suggestions]
        assert confidences == sorted(confidences, reverse=True)

    def test_threshold_is_respected(self, snapshot):
        engine = MatchingEngine(snapshot, threshold=0.95)

        run = _match(engine, _row(2, "Jon Smith"))

        result = run.results[0]
        assert result.reason == UnmatchedReason.BELOW_THRESHOLD
        assert result.suggestions[0].entry_id == "p-001"

    def test_learned_alias(self, snapshot):
        """A name confirmed by feedback scores the alias confidence."""
        engine = MatchingEngine(snapshot, aliases={"the boss": "p-005"})

        run = _match(engine, _row(2, "The Boss"))

        result = run.results[0]
        assert result.entry_id == "p-005"
        assert result.confidence == 0.95

    def test_alias_to_missing_entry_is_ignored(self, snapshot):
        engine = MatchingEngine(snapshot, aliases={"the boss": "p-900"})

        run = _match(engine, _row(2, "The Boss"))

        assert isinstance(run.results[0], UnmatchedRow)


class TestAIStage:
    """Oracle-assisted matching."""

    def test_oracle_match_accepted(self, snapshot):
        oracle = FakeOracle({"bobby g": OracleResponse(matches=[OracleMatch("p-002", 0.92)])})
        engine = MatchingEngine(snapshot, oracle=oracle)

        run = _match(engine, _row(2, "Bobby G"))

        result = run.results[0]
        assert result.entry_id == "p-002"
        assert result.method == MatchMethod.AI
        assert result.confidence == 0.92
        assert result.verified is True
        assert len(oracle.requests) == 1
        assert {c.id for c in oracle.requests[0].candidates} == {"p-001", "p-002", "p-003", "p-004", "p-005"}

    def test_low_oracle_confidence_becomes_suggestion(self, snapshot):
        oracle = FakeOracle({"zzz qqq": OracleResponse(matches=[OracleMatch("p-004", 0.4)])})
        engine = MatchingEngine(snapshot, oracle=oracle)

        run = _match(engine, _row(2, "Zzz Qqq"))

        result = run.results[0]
        assert result.reason == UnmatchedReason.BELOW_THRESHOLD
        assert result.suggestions[0].entry_id == "p-004"
        assert result.suggestions[0].confidence == 0.4

    def test_ids_outside_slice_are_ignored(self, snapshot):
        oracle = FakeOracle({"zzz qqq": OracleResponse(matches=[OracleMatch("p-900", 0.99)])})
        engine = MatchingEngine(snapshot, oracle=oracle)

        run = _match(engine, _row(2, "Zzz Qqq"))

        assert isinstance(run.results[0], UnmatchedRow)
        assert run.results[0].reason == UnmatchedReason.NO_CANDIDATES

    def test_bad_response_is_a_row_error(self, snapshot):
        oracle = FakeOracle(error=OracleResponseError("not json"))
        engine = MatchingEngine(snapshot, oracle=oracle)

        run = _match(engine, _row(2, "Garcia, Robert"))

        assert run.results[0].entry_id == "p-002"
        assert run.results[0].method == MatchMethod.PATTERN
        assert [e.kind for e in run.row_errors] == ["oracle_bad_response"]
        assert run.row_errors[0].row == 2

    def test_timeout_falls_back_to_pattern(self, snapshot):
        """A slow oracle times out per call; pattern matching still runs."""
        oracle = FakeOracle(delay=1.0)
        engine = MatchingEngine(snapshot, oracle=oracle, budget=OracleBudget(5.0, 0.01))

        run = _match(engine, _row(2, "Garcia, Robert"), _row(3, "Liz Turner"))

        assert [r.entry_id for r in run.results] == ["p-002", "p-004"]
        assert [e.kind for e in run.row_errors] == ["oracle_timeout", "oracle_timeout"]
        assert run.oracle_calls == 2

    def test_exhausted_budget_skips_oracle(self, snapshot):
        oracle = FakeOracle()
        engine = MatchingEngine(snapshot, oracle=oracle, budget=OracleBudget(0.0, 1.0))

        run = _match(engine, _row(2, "Garcia, Robert"))

        assert oracle.requests == []
        assert run.results[0].entry_id == "p-002"
        assert [e.kind for e in run.row_errors] == ["oracle_timeout"]

    def test_no_oracle_means_no_row_errors(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(engine, _row(2, "Garcia, Robert"))

        assert run.row_errors == []
        assert run.oracle_calls == 0


class TestDuplicateResolution:
    """One directory entry per file."""

    def test_tie_goes_to_earlier_row(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(
            engine,
            _row(2, "John Smith", email="john.smith@x.edu"),
            _row(3, "J Smith", email="john.smith@x.edu"),
        )

        assert run.results[0].entry_id == "p-001"
        loser = run.results[1]
        assert loser.reason == UnmatchedReason.DUPLICATE_TARGET
        assert all(s.entry_id != "p-001" for s in loser.suggestions)

    def test_higher_later_claim_displaces_earlier(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(
            engine,
            _row(2, "Jon Smith"),
            _row(3, "John Smith", email="john.smith@x.edu"),
        )

        assert run.results[0].reason == UnmatchedReason.DUPLICATE_TARGET
        assert run.results[1].entry_id == "p-001"
        assert run.results[1].method == MatchMethod.EXACT

    def test_each_entry_claimed_once(self, snapshot):
        engine = MatchingEngine(snapshot)

        run = _match(
            engine,
            _row(2, "Robert Garcia"),
            _row(3, "Garcia, Robert"),
            _row(4, "Bob Garcia"),
            _row(5, "Wei Chen"),
        )

        matched = [r.entry_id for r in run.results if isinstance(r, MatchedRow)]
        assert len(matched) == len(set(matched))
        assert matched == ["p-002", "p-005"]

    def test_loser_suggestions_stay_below_threshold(self):
        """The loser is not offered another entry it would have been accepted for."""
        directory = InMemoryDirectory([
            DirectoryEntryFactory.create(id="p-a", full_name="John Smith", email="john@x.edu"),
            DirectoryEntryFactory.create(id="p-b", full_name="Jon Smith"),
            DirectoryEntryFactory.create(id="p-c", full_name="Joan Smithers"),
        ])
        engine = MatchingEngine(DirectorySnapshot.load(directory, "org-1"))

        run = _match(engine, _row(2, "John Smith", email="john@x.edu"), _row(3, "John Smith"))

        loser = run.results[1]
        assert loser.reason == UnmatchedReason.DUPLICATE_TARGET
        assert "p-b" not in [s.entry_id for s in loser.suggestions]
        assert all(s.confidence < engine.threshold for s in loser.suggestions)


def _engine_over(*entries: tuple[str, str]) -> MatchingEngine:
    directory = InMemoryDirectory([
        DirectoryEntryFactory.create(id=entry_id, full_name=full_name) for entry_id, full_name in entries
    ])
    return MatchingEngine(DirectorySnapshot.load(directory, "org-1"))


class TestAmbiguity:
    """Two acceptable candidates too close to call."""

    def test_same_name_twice_is_ambiguous(self):
        engine = _engine_over(("p-a", "John Smith"), ("p-b", "John Smith"))

        result = _match(engine, _row(2, "John Smith")).results[0]

        assert isinstance(result, UnmatchedRow)
        assert result.reason == UnmatchedReason.AMBIGUOUS
        assert [s.entry_id for s in result.suggestions] == ["p-a", "p-b"]
        assert all(s.confidence == 1.0 for s in result.suggestions)

    def test_surname_only_is_ambiguous(self):
        engine = _engine_over(("p-a", "John Smith"), ("p-b", "Jane Smith"))

        result = _match(engine, _row(2, "Smith")).results[0]

        assert result.reason == UnmatchedReason.AMBIGUOUS
        assert {s.entry_id for s in result.suggestions} == {"p-a", "p-b"}

    def test_clear_winner_is_accepted(self):
        """A runner-up outside the margin does not block the match."""
        engine = _engine_over(("p-a", "John Smith"), ("p-b", "Jon Smith"))

        result = _match(engine, _row(2, "John Smith")).results[0]

        assert isinstance(result, MatchedRow)
        assert result.entry_id == "p-a"

    def test_ambiguous_row_claims_nothing(self):
        """An ambiguous row does not take an entry from a later exact match."""
        directory = InMemoryDirectory([
            DirectoryEntryFactory.create(id="p-a", full_name="John Smith", email="a@x.edu"),
            DirectoryEntryFactory.create(id="p-b", full_name="Jane Smith", email="b@x.edu"),
        ])
        engine = MatchingEngine(DirectorySnapshot.load(directory, "org-1"))

        run = _match(engine, _row(2, "Smith"), _row(3, "Jane Smith", email="b@x.edu"))

        assert run.results[0].reason == UnmatchedReason.AMBIGUOUS
        assert run.results[1].entry_id == "p-b"


class TestMatchRows:
    """File-level behaviour."""

    def test_results_keep_row_order(self, snapshot):
        engine = MatchingEngine(snapshot)
        rows = [_row(i, name) for i, name in enumerate(
            ["Wei Chen", "Liz Turner", "Garcia, Robert", "Nobody Here"], start=2
        )]

        run = _match(engine, *rows)

        assert [r.row for r in run.results] == [2, 3, 4, 5]

    def test_deterministic(self, snapshot):
        rows = [
            _row(2, "Jon Smith"),
            _row(3, "Maria Lopez"),
            _row(4, "Garcia, Robert"),
            _row(5, "J Smith", email="john.smith@x.edu"),
        ]

        first = _match(MatchingEngine(snapshot), *rows)
        second = _match(MatchingEngine(snapshot), *rows)

        assert [r.model_dump() for r in first.results] == [r.model_dump() for r in second.results]

    def test_cancellation(self, snapshot):
        engine = MatchingEngine(snapshot)

        with pytest.raises(JobCancelledError):
            asyncio.run(engine.match_rows([_row(2, "Wei Chen")], is_cancelled=lambda: True, job_id="job-1"))

    def test_empty_input(self, snapshot):
        run = _match(MatchingEngine(snapshot))

        assert run.results == []


class TestHelpers:
    """Tests for similarity() and pool_candidates()"""

    def test_similarity_bounds(self):
        assert similarity("ana lopez", "ana lopez") == 1.0
        assert similarity("", "ana lopez") == 0.0
        assert 0.0 <= similarity("ana lopez", "wei chen") < 0.5

    def test_similarity_ignores_token_order(self):
        assert similarity("lopez ana", "ana lopez") > similarity("ana lopes", "wei chen")

    def test_pool_keeps_best_per_entry(self):
        pooled = pool_candidates([
            MatchCandidate("p-1", 0.8, MatchMethod.PATTERN),
            MatchCandidate("p-1", 0.9, MatchMethod.AI),
            MatchCandidate("p-2", 0.85, MatchMethod.PATTERN),
        ])

        assert [(c.entry_id, c.score, c.method) for c in pooled] == [
            ("p-1", 0.9, MatchMethod.AI),
            ("p-2", 0.85, MatchMethod.PATTERN),
        ]

    def test_pool_tie_prefers_earlier_stage(self):
        pooled = pool_candidates([
            MatchCandidate("p-1", 1.0, MatchMethod.PATTERN),
            MatchCandidate("p-1", 1.0, MatchMethod.EXACT),
        ])

        assert pooled[0].method == MatchMethod.EXACT
