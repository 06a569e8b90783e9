"""
Tests for GridEngine: memoized reads, cascading invalidation, fill commits
and the deferred refresh that follows a formula fill.
"""

import asyncio

import pytest
from gridsheet.engine import GridEngine, GridIndexError
from gridsheet.formula import CellKey

A, B, C, D, J = 0, 1, 2, 3, 9


class TestRead:
    """Test Suite for GridEngine.read."""

    def test_empty_cell(self, engine):
        assert engine.read(1, A) == ""

    def test_literal_is_returned_and_not_cached(self, engine):
        engine.edit(1, A, "hello")
        assert engine.read(1, A) == "hello"
        assert engine.cached(1, A) is None

    def test_formula_is_evaluated_and_memoized(self, engine):
        engine.edit(1, A, "5")
        engine.edit(1, B, "10")
        engine.edit(1, C, "=A1+B1")
        assert engine.read(1, C) == "15"
        assert engine.cached(1, C) == "15"
        assert engine.dependencies_of(1, C) == [CellKey(1, A), CellKey(1, B)]

    def test_cached_result_is_served_until_invalidated(self, engine):
        engine.edit(1, A, "=2*3")
        assert engine.read(1, A) == "6"
        engine.computed[CellKey(1, A)] = "sentinel"
        assert engine.read(1, A) == "sentinel"

    def test_formula_chain_does_not_compose(self, engine):
        engine.edit(1, A, "=5")
        engine.edit(1, B, "=A1+1")
        assert engine.read(1, A) == "5"
        assert engine.read(1, B) == "1"

    def test_division_by_zero_display(self, engine):
        engine.edit(1, A, "4")
        engine.edit(1, B, "=A1/0")
        assert engine.read(1, B) == "Error: Error: Division by zero"

    def test_errors_are_not_cached(self, engine):
        engine.edit(1, B, "=A1/0")
        engine.read(1, B)
        assert engine.cached(1, B) is None
        assert engine.dependencies_of(1, B) == []

    def test_syntax_error_display(self, engine):
        engine.edit(1, A, "=A2+")
        assert engine.read(1, A) == "Error: Error: Missing operand"

    def test_leading_minus_display(self, engine):
        engine.edit(1, A, "=-5")
        assert engine.read(1, A) == "Error: Error: Missing operand"
        assert engine.cached(1, A) is None

    def test_large_integer_display(self, engine):
        engine.edit(1, A, "=12345678901234567890*1")
        assert engine.read(1, A) == "12345678901234567000"

    def test_reference_to_error_cell_sees_zero(self, engine):
        engine.edit(1, A, "=4/0")
        engine.edit(1, B, "=A1+2")
        assert engine.read(1, A).startswith("Error: ")
        assert engine.read(1, B) == "2"

    def test_render_rows(self, engine):
        engine.edit(2, A, "1")
        engine.edit(2, J, "=A2*3")
        rows = engine.render_rows([1, 2])
        assert len(rows) == 2
        assert rows[0] == [""] * 10
        assert rows[1][A] == "1"
        assert rows[1][J] == "3"


class TestEdit:
    """Test Suite for GridEngine.edit / invalidate."""

    def test_edit_clears_own_cache(self, engine):
        engine.edit(1, A, "=1+1")
        assert engine.read(1, A) == "2"
        engine.edit(1, A, "=2+2")
        assert engine.cached(1, A) is None
        assert engine.read(1, A) == "4"

    def test_edit_invalidates_dependents(self, engine):
        engine.edit(1, A, "5")
        engine.edit(1, B, "=A1*2")
        assert engine.read(1, B) == "10"
        engine.edit(1, A, "7")
        assert engine.cached(1, B) is None
        assert engine.read(1, B) == "14"

    def test_edit_invalidates_transitive_dependents(self, engine):
        engine.edit(1, A, "1")
        engine.edit(1, B, "=A1+1")
        engine.edit(1, C, "=B1+1")
        engine.edit(1, D, "=C1+1")
        for col in (B, C, D):
            engine.read(1, col)
        assert all(engine.cached(1, col) is not None for col in (B, C, D))

        engine.edit(1, A, "2")
        assert all(engine.cached(1, col) is None for col in (B, C, D))

    def test_edit_without_dependents_leaves_other_caches(self, engine):
        engine.edit(1, A, "1")
        engine.edit(1, B, "=A1+1")
        engine.edit(2, A, "=3*3")
        engine.read(1, B)
        engine.read(2, A)

        engine.edit(5, D, "42")
        assert engine.cached(1, B) == "2"
        assert engine.cached(2, A) == "9"

    def test_edit_rejects_columns_outside_grid(self, engine):
        with pytest.raises(GridIndexError, match="Column out of range"):
            engine.edit(1, 10, "x")
        with pytest.raises(GridIndexError):
            engine.edit(1, -1, "x")

    def test_rows_are_not_bounded(self, engine):
        engine.edit(0, A, "zero")
        engine.edit(-3, A, "negative")
        assert engine.read(0, A) == "zero"
        assert engine.read(-3, A) == "negative"

    def test_circular_reference_overflows_without_guard(self, engine):
        engine.edit(1, A, "=B1")
        engine.edit(1, B, "=A1")
        engine.read(1, A)
        engine.read(1, B)
        with pytest.raises(RecursionError):
            engine.edit(1, A, "=B1")

    def test_cycle_guard_stops_circular_invalidation(self, guarded_engine):
        engine = guarded_engine
        engine.edit(1, A, "=B1")
        engine.edit(1, B, "=A1")
        engine.edit(1, C, "=B1+5")
        for col in (A, B, C):
            engine.read(1, col)

        engine.edit(1, A, "=B1")
        assert engine.cached(1, A) is None
        assert engine.cached(1, B) is None
        assert engine.cached(1, C) is None

    def test_clear(self, engine):
        engine.edit(1, A, "=1+1")
        engine.read(1, A)
        engine.clear()
        assert engine.raw_value(1, A) == ""
        assert engine.cached(1, A) is None
        assert engine.dependencies_of(1, A) == []


class TestFill:
    """Test Suite for GridEngine.fill_commit."""

    def test_formula_fill_shifts_rows(self, engine):
        engine.edit(5, A, "=A1+B2")
        updated = engine.fill_commit(CellKey(5, A), CellKey(6, A))
        assert updated == [CellKey(6, A)]
        assert engine.raw_value(6, A) == "=A2+B3"
        assert engine.raw_value(5, A) == "=A1+B2"

    def test_formula_fill_over_rectangle(self, engine):
        engine.edit(2, C, "=A1*B1")
        updated = engine.fill_commit(CellKey(2, C), CellKey(3, D))
        assert updated == [CellKey(2, D), CellKey(3, C), CellKey(3, D)]
        assert engine.raw_value(2, D) == "=B1*C1"
        assert engine.raw_value(3, C) == "=A2*B2"
        assert engine.raw_value(3, D) == "=B2*C2"

    def test_formula_fill_upwards_writes_odd_rows(self, engine):
        engine.edit(3, A, "=A2")
        engine.fill_commit(CellKey(3, A), CellKey(1, A))
        assert engine.raw_value(2, A) == "=A1"
        assert engine.raw_value(1, A) == "=A0"

    def test_value_fill_copies_verbatim(self, engine):
        engine.edit(1, A, "hello")
        updated = engine.fill_commit(CellKey(1, A), CellKey(3, B))
        assert len(updated) == 5
        for key in updated:
            assert engine.raw_value(key.row, key.col) == "hello"
        assert engine.pending == 0

    def test_value_fill_does_not_shift_reference_like_text(self, engine):
        engine.edit(1, A, "A1")
        engine.fill_commit(CellKey(1, A), CellKey(2, A))
        assert engine.raw_value(2, A) == "A1"

    def test_single_cell_fill_is_noop(self, engine):
        engine.edit(1, A, "=A2")
        assert engine.fill_commit(CellKey(1, A), CellKey(1, A)) == []
        assert engine.pending == 0

    def test_fill_drops_target_caches(self, engine):
        engine.edit(2, A, "=1+1")
        engine.read(2, A)
        engine.edit(1, A, "=9*9")
        engine.fill_commit(CellKey(1, A), CellKey(2, A))
        assert engine.cached(2, A) is None
        assert engine.raw_value(2, A) == "=9*9"

    def test_fill_invalidates_dependents_of_targets(self, engine):
        engine.edit(1, D, "=A2+1")
        assert engine.read(1, D) == "1"
        engine.edit(1, A, "7")
        engine.fill_commit(CellKey(1, A), CellKey(2, A))
        assert engine.cached(1, D) is None
        assert engine.read(1, D) == "8"

    def test_fill_rejects_columns_outside_grid(self, engine):
        with pytest.raises(GridIndexError):
            engine.fill_commit(CellKey(1, A), CellKey(2, 12))

    def test_refresh_waits_without_event_loop(self, engine):
        engine.edit(1, A, "4")
        engine.edit(2, B, "=A1*2")
        engine.fill_commit(CellKey(2, B), CellKey(3, B))
        assert engine.pending == 1
        assert engine.cached(3, B) is None

        assert engine.run_pending() == 1
        assert engine.pending == 0
        assert engine.cached(3, B) == "0"

    def test_refresh_runs_after_batch_on_event_loop(self, engine):
        engine.edit(1, A, "5")
        engine.edit(5, A, "=A1+1")
        refreshed = []
        engine.add_listener(lambda key, value: refreshed.append((key, value)))

        async def scenario():
            updated = engine.fill_commit(CellKey(5, A), CellKey(7, A))
            # The batch is fully written before any cell is re-read.
            assert updated == [CellKey(6, A), CellKey(7, A)]
            assert engine.raw_value(7, A) == "=A3+1"
            assert refreshed == []
            assert engine.cached(6, A) is None
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert refreshed == [(CellKey(6, A), "1"), (CellKey(7, A), "1")]
        assert engine.cached(6, A) == "1"
        assert engine.pending == 0

    def test_remove_listener(self, engine):
        seen = []

        def listener(key, value):
            seen.append(key)

        engine.add_listener(listener)
        engine.remove_listener(listener)
        engine.edit(1, A, "=1")
        engine.fill_commit(CellKey(1, A), CellKey(2, A))
        engine.run_pending()
        assert seen == []


def test_engine_defaults():
    engine = GridEngine()
    assert engine.num_columns == 10
    assert engine.cycle_guard is False
