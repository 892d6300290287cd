# Tests for Ensemble SQL Builder
"""
Test Suite for Ensemble SQL Builder
===================================
Tests:
- Vote tally and tie-breaks
- Overriding a non-viable winner
- Full builds against an in-memory DuckDB
- Generation failures, execution outages and caching
"""

import pytest

from hybridsql.engine.ensemble_builder import (
    EnsembleSQLBuilder,
    GeneratedSQL,
    SQLBuildRequest,
    TimeContext,
    apply_override,
    estimate_rows,
    tally_votes,
)
from hybridsql.engine.errors import EnsembleBuildError, GenerationError
from hybridsql.engine.executor import MockExecutor
from hybridsql.engine.models import STRATEGY_ORDER, BuildStrategy, SqlCandidate, Vote
from hybridsql.engine.schema_selector import SelectedTable, SqlHints


C, B, A = BuildStrategy.CONSERVATIVE, BuildStrategy.BALANCED, BuildStrategy.AGGRESSIVE


def vote(strategy, confidence=0.8):
    return Vote(selected_strategy=strategy, reason="r", confidence=confidence)


def candidate(strategy, rows=0, error=None):
    return SqlCandidate(
        strategy=strategy,
        sql=f"SELECT '{strategy.value}'",
        query_type="SELECT",
        generating_model="m",
        executed=True,
        row_count=rows,
        error=error
    )


@pytest.fixture
def build_request(sample_schema):
    return SQLBuildRequest(
        query="Which Norwegian companies exist?",
        slim_schema={"companies": sample_schema["companies"]},
        selected_tables=[SelectedTable(table_name="companies", fields=["id", "name", "country"])],
        time_context=TimeContext(current_time="2024-06-01T10:00:00+00:00")
    )


@pytest.fixture
def builder(mock_provider, model_selector, sql_executor):
    return EnsembleSQLBuilder(mock_provider, model_selector, sql_executor)


DEFAULT_SQL = {
    C: "SELECT id FROM companies WHERE id = 1",
    B: "SELECT id FROM companies WHERE country = 'NO'",
    A: "SELECT id FROM companies",
}


class TestTally:
    """Plurality and tie-breaks."""

    def test_plurality(self):
        """Test the strategy with most votes wins."""
        winner, counts = tally_votes([vote(A), vote(A), vote(C)], STRATEGY_ORDER)
        assert winner == A
        assert counts == {"conservative": 1, "balanced": 0, "aggressive": 2}

    def test_tie_broken_by_confidence(self):
        """Test ties go to the higher summed confidence."""
        winner, _ = tally_votes([vote(C, 0.9), vote(A, 0.6)], STRATEGY_ORDER)
        assert winner == C

    def test_tie_prefers_balanced(self):
        """Test remaining ties prefer balanced."""
        winner, _ = tally_votes([vote(A, 0.7), vote(B, 0.7)], STRATEGY_ORDER)
        assert winner == B

    def test_tie_falls_back_to_strategy_order(self):
        """Test remaining ties follow the strategy order."""
        winner, _ = tally_votes([vote(A, 0.5), vote(C, 0.5)], STRATEGY_ORDER)
        assert winner == C

    def test_votes_for_missing_candidates_ignored(self):
        """Test votes for failed strategies are ignored."""
        winner, counts = tally_votes([vote(A), vote(A), vote(B, 0.3)], [C, B])
        assert winner == B
        assert counts["aggressive"] == 0

    def test_no_votes(self):
        """Test no votes picks balanced."""
        winner, _ = tally_votes([], STRATEGY_ORDER)
        assert winner == B

    @pytest.mark.parametrize("rows,label", [(0, "few"), (9, "few"), (10, "moderate"), (50, "moderate"), (51, "many")])
    def test_estimate_rows(self, rows, label):
        """Test row estimate buckets."""
        assert estimate_rows(rows) == label


class TestOverride:
    """Viability override after voting."""

    def test_viable_winner_kept(self):
        """Test a viable winner is kept."""
        chosen, warnings = apply_override(A, [candidate(C, 1), candidate(B, 2), candidate(A, 3)])
        assert chosen.strategy == A
        assert warnings == []

    def test_zero_row_winner_replaced(self):
        """Test a zero-row winner is replaced."""
        chosen, _ = apply_override(A, [candidate(C, 0), candidate(B, 4), candidate(A, 0)])
        assert chosen.strategy == B

    def test_errored_winner_replaced(self):
        """Test an errored winner is replaced."""
        chosen, _ = apply_override(C, [candidate(C, 0, "boom"), candidate(B, 0), candidate(A, 2)])
        assert chosen.strategy == A

    def test_single_viable_candidate_wins_regardless_of_votes(self):
        """Test the only viable candidate wins."""
        candidates = [candidate(C, 0, "boom"), candidate(B, 0, "bad"), candidate(A, 7)]
        for voted in STRATEGY_ORDER:
            assert apply_override(voted, candidates)[0].strategy == A

    def test_all_zero_rows(self):
        """Test all zero-row candidates fall back to conservative."""
        chosen, warnings = apply_override(B, [candidate(C), candidate(B), candidate(A)])
        assert chosen.strategy == C
        assert "all strategies returned 0 rows" in warnings

    def test_all_errored(self):
        """Test all errored candidates raise."""
        with pytest.raises(EnsembleBuildError) as exc_info:
            apply_override(B, [candidate(s, 0, "boom") for s in STRATEGY_ORDER])
        assert len(exc_info.value.candidates) == 3


class TestBuild:
    """End-to-end builds with scripted models."""

    def test_unanimous_vote(self, builder, mock_provider, build_request, script_helpers):
        """Test a unanimous vote builds the balanced SQL."""
        mock_provider.script(GeneratedSQL, script_helpers.sql(DEFAULT_SQL))
        mock_provider.script(Vote, script_helpers.vote(B))

        result = builder.build(build_request)

        assert result.strategy == B
        assert result.sql == DEFAULT_SQL[B]
        assert result.row_count == 3
        assert result.estimated_rows == "few"
        assert result.votes == {"conservative": 0, "balanced": 3, "aggressive": 0}
        assert result.avg_confidence == 0.8
        assert "3 of 3 votes" in result.explanation
        assert [c["row_count"] for c in result.candidates] == [1, 3, 5]

    def test_generation_prompts(self, builder, mock_provider, build_request, script_helpers):
        """Test generation prompts carry vector ids and time."""
        mock_provider.script(GeneratedSQL, script_helpers.sql(DEFAULT_SQL))
        mock_provider.script(Vote, script_helpers.vote(B))
        request = build_request.model_copy(update={"sql_hints": SqlHints(vector_ids=[5, 1])})

        builder.build(request)

        prompts = [c.system_prompt for c in mock_provider.calls_for(GeneratedSQL)]
        assert len(prompts) == 3
        assert all("Vector search IDs: 5, 1" in p for p in prompts)
        assert all("Current time: 2024-06-01T10:00:00+00:00 (UTC)" in p for p in prompts)

    def test_evaluators_never_see_sql(self, builder, mock_provider, build_request, script_helpers):
        """Test evaluator prompts contain no SQL."""
        mock_provider.script(GeneratedSQL, script_helpers.sql(DEFAULT_SQL))
        mock_provider.script(Vote, script_helpers.vote(B))

        builder.build(build_request)

        vote_calls = mock_provider.calls_for(Vote)
        assert len(vote_calls) == 3
        for call in vote_calls:
            assert "SELECT id FROM" not in call.user_prompt
            assert '"row_count": 3' in call.user_prompt

    def test_empty_winner_overridden(self, builder, mock_provider, build_request, script_helpers):
        """Test an empty winner is overridden."""
        sql = dict(DEFAULT_SQL)
        sql[A] = "SELECT id FROM companies WHERE id < 0"
        mock_provider.script(GeneratedSQL, script_helpers.sql(sql))
        mock_provider.script(Vote, script_helpers.vote(A))

        result = builder.build(build_request)

        assert result.strategy == C
        assert result.row_count == 1

    def test_invalid_sql_becomes_candidate_error(self, builder, mock_provider, build_request, script_helpers):
        """Test invalid SQL is recorded as a candidate error."""
        sql = dict(DEFAULT_SQL)
        sql[C] = "SELECT * FROM orders"  # not in the slim schema
        sql[B] = "DELETE FROM companies"
        mock_provider.script(GeneratedSQL, script_helpers.sql(sql))
        mock_provider.script(Vote, script_helpers.vote(C))

        result = builder.build(build_request)

        assert result.strategy == A
        assert [c["has_error"] for c in result.candidates] == [True, True, False]

    def test_all_zero_rows_picks_conservative(self, builder, mock_provider, build_request, script_helpers):
        """Test all-empty results pick conservative with a warning."""
        empty = "SELECT id FROM companies WHERE id < 0"
        mock_provider.script(GeneratedSQL, script_helpers.sql({s: empty for s in STRATEGY_ORDER}))
        mock_provider.script(Vote, script_helpers.vote(A))

        result = builder.build(build_request)

        assert result.strategy == C
        assert result.row_count == 0
        assert "all strategies returned 0 rows" in result.warnings

    def test_all_candidates_error(self, builder, mock_provider, build_request, script_helpers):
        """Test a build with only errored candidates raises."""
        mock_provider.script(GeneratedSQL, script_helpers.sql({s: "SELECT * FROM invoices" for s in STRATEGY_ORDER}))
        mock_provider.script(Vote, script_helpers.vote(B))

        with pytest.raises(EnsembleBuildError):
            builder.build(build_request)

    def test_failed_strategy_reported(self, builder, mock_provider, build_request, script_helpers):
        """Test a failed strategy becomes a warning."""
        sql = dict(DEFAULT_SQL)
        sql[A] = GenerationError("mock", "refused")
        mock_provider.script(GeneratedSQL, script_helpers.sql(sql))
        mock_provider.script(Vote, script_helpers.vote(A))

        result = builder.build(build_request)

        assert result.strategy in (C, B)
        assert len(result.candidates) == 2
        assert any(w.startswith("aggressive strategy failed to generate SQL") for w in result.warnings)

    def test_no_sql_generated(self, builder, mock_provider, build_request):
        """Test a build with no generated SQL raises."""
        mock_provider.script(GeneratedSQL, GenerationError("mock", "down"))
        with pytest.raises(EnsembleBuildError) as exc_info:
            builder.build(build_request)
        assert "no strategy produced SQL" in str(exc_info.value)

    def test_evaluators_failing_still_builds(self, builder, mock_provider, build_request, script_helpers):
        """Test failing evaluators still give a result."""
        mock_provider.script(GeneratedSQL, script_helpers.sql(DEFAULT_SQL))
        mock_provider.script(Vote, GenerationError("mock", "down"))

        result = builder.build(build_request)

        assert result.strategy == B
        assert result.avg_confidence == 0.0

    def test_execution_service_unavailable(self, mock_provider, model_selector, build_request, script_helpers):
        """Test an unreachable database aborts the build."""
        executor = MockExecutor()
        executor.unavailable = True
        builder = EnsembleSQLBuilder(mock_provider, model_selector, executor)
        mock_provider.script(GeneratedSQL, script_helpers.sql(DEFAULT_SQL))
        mock_provider.script(Vote, script_helpers.vote(B))

        with pytest.raises(EnsembleBuildError) as exc_info:
            builder.build(build_request)

        assert "unavailable" in exc_info.value.reason
        assert mock_provider.calls_for(Vote) == []

    def test_result_cached(self, mock_provider, model_selector, sql_executor, memory_cache,
                           build_request, script_helpers):
        """Test repeat builds are served from cache."""
        builder = EnsembleSQLBuilder(mock_provider, model_selector, sql_executor, memory_cache)
        mock_provider.script(GeneratedSQL, script_helpers.sql(DEFAULT_SQL))
        mock_provider.script(Vote, script_helpers.vote(B))

        first = builder.build(build_request)
        second = builder.build(build_request)

        assert second.sql == first.sql
        assert second.strategy == B
        assert len(mock_provider.calls_for(GeneratedSQL)) == 3
