from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional

from gridsheet.formula import (
    CellKey,
    DependencyGraph,
    FormulaError,
    evaluate,
    is_formula,
    parse_formula,
    selected_cells,
    shift_refs,
)

logger = logging.getLogger(__name__)

RefreshListener = Callable[[CellKey, str], None]


class GridIndexError(ValueError):
    """Raised when a cell lies outside the grid's columns."""


class GridEngine:
    """In-memory cell store with memoized formula results.

    raw:       key -> text the user typed (formula or literal)
    computed:  key -> memoized result of a formula; absent means stale
    graph:     what each formula read on its last evaluation
    """

    def __init__(self, num_columns: int = 10, *, cycle_guard: bool = False) -> None:
        self.num_columns = num_columns
        self.cycle_guard = cycle_guard
        self.raw: Dict[CellKey, str] = {}
        self.computed: Dict[CellKey, str] = {}
        self.graph = DependencyGraph()
        self._pending: deque[List[CellKey]] = deque()
        self._listeners: List[RefreshListener] = []

    # ── reads ────────────────────────────────────────────────────────

    def raw_value(self, row: int, col: int) -> str:
        return self.raw.get(CellKey(row, col), "")

    def cached(self, row: int, col: int) -> Optional[str]:
        return self.computed.get(CellKey(row, col))

    def dependencies_of(self, row: int, col: int) -> List[CellKey]:
        return self.graph.dependencies(CellKey(row, col))

    def read(self, row: int, col: int) -> str:
        """Display text of a cell, evaluating its formula on a cache miss."""
        key = CellKey(row, col)
        cached = self.computed.get(key)
        if cached:
            return cached

        raw = self.raw.get(key, "")
        if not is_formula(raw):
            return raw

        try:
            result, dependencies = evaluate(parse_formula(raw), self.raw.get)
        except FormulaError as e:
            logger.debug("Formula evaluation error at %s: %s", key, e)
            return f"Error: {e.describe()}"

        self.graph.record(key, dependencies)
        self.computed[key] = result
        return result

    def render_rows(self, row_ids: Iterable[int]) -> List[List[str]]:
        """One render pass: read every column of each materialized row."""
        return [[self.read(row, col) for col in range(self.num_columns)] for row in row_ids]

    # ── writes ───────────────────────────────────────────────────────

    def _check_column(self, col: int) -> None:
        if col < 0 or col >= self.num_columns:
            raise GridIndexError(f"Column out of range: {col}")

    def edit(self, row: int, col: int, text: str) -> None:
        """Commit *text* to a cell and drop every result that depended on it."""
        self._check_column(col)
        key = CellKey(row, col)
        self.raw[key] = text
        self.computed.pop(key, None)
        self.invalidate(key)
        logger.debug("Edited %s", key)

    def invalidate(self, key: CellKey, _seen: Optional[set] = None) -> None:
        """Drop the cached result of *key* and, recursively, of its dependents.

        Without cycle_guard a circular reference recurses until RecursionError.
        """
        self.computed.pop(key, None)
        if self.cycle_guard:
            if _seen is None:
                _seen = set()
            if key in _seen:
                return
            _seen.add(key)
        for dependent in self.graph.dependents(key):
            self.invalidate(dependent, _seen)

    def fill_commit(self, source: CellKey, target: CellKey) -> List[CellKey]:
        """Copy *source* across the rectangle spanned by *source* and *target*.

        Formulas have their references shifted per target cell. All writes are
        applied before the refresh of the updated cells is queued.
        """
        source = CellKey(*source)
        target = CellKey(*target)
        self._check_column(source.col)
        self._check_column(target.col)

        cells = selected_cells(source, target)
        if len(cells) <= 1:
            return []

        value = self.raw.get(source, "")
        formula = is_formula(value)
        updated: List[CellKey] = []
        for key in cells:
            if key == source:
                continue
            if formula:
                self.raw[key] = shift_refs(value, key.row - source.row, key.col - source.col)
            else:
                self.raw[key] = value
            updated.append(key)

        for key in updated:
            self.invalidate(key)

        logger.info("Filled %d cells from %s (%s)", len(updated), source,
                    "formula" if formula else "value")
        if formula:
            self._schedule_refresh(updated)
        return updated

    # ── deferred refresh ─────────────────────────────────────────────

    def _schedule_refresh(self, keys: List[CellKey]) -> None:
        self._pending.append(keys)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; %d cells wait for run_pending()", len(keys))
            return
        loop.call_soon(self.run_pending)

    def run_pending(self) -> int:
        """Re-read every cell queued by earlier fills. Returns the count."""
        count = 0
        while self._pending:
            for key in self._pending.popleft():
                value = self.read(key.row, key.col)
                count += 1
                for listener in list(self._listeners):
                    listener(key, value)
        if count:
            logger.debug("Refreshed %d cells", count)
        return count

    @property
    def pending(self) -> int:
        return sum(len(batch) for batch in self._pending)

    # ── listeners ────────────────────────────────────────────────────

    def add_listener(self, listener: RefreshListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: RefreshListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ── management ───────────────────────────────────────────────────

    def clear(self) -> None:
        """Drop all cells, results, dependencies and queued refreshes."""
        self.raw.clear()
        self.computed.clear()
        self.graph.clear()
        self._pending.clear()
        logger.info("Grid cleared")
