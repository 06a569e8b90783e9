"""Formula engine for the virtual grid.

Supports: =, +, -, *, /, bare cell refs (A1). No parentheses, functions,
ranges or absolute references.

Parsing is deliberately flat: an additive split wins outright, so
`=A1+B2*C3` leaves `B2*C3` as a single operand that evaluates to NaN.
Only pure additive chains or pure multiplicative chains compute as intended.

References resolve against the referenced cell's *raw* text, never its
computed value, so a reference to a formula cell reads as 0.

Rows in a reference are taken as written ("A1" is row 1); columns are 0-based.
"""

import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, NamedTuple


# ── Error types ───────────────────────────────────────────────────

class FormulaError(Exception):
    """Base for all evaluation failures."""

    def describe(self) -> str:
        """Textual description used when the failure is shown in a cell."""
        return f"Error: {self}"

class InvalidReferenceError(FormulaError):
    pass

class DivisionByZeroError(FormulaError):
    pass

class FormulaSyntaxError(FormulaError):
    pass


# ── Keys ──────────────────────────────────────────────────────────

class CellKey(NamedTuple):
    row: int
    col: int


# ── Reference codec ───────────────────────────────────────────────

_CELL_REF_RE = re.compile(r'^([A-Z]+)(\d+)$')
_SHIFT_REF_RE = re.compile(r'([A-Z]+)(\d+)')


def col_to_index(col_str: str) -> int:
    """A->0, B->1, ..., Z->25, AA->26."""
    n = 0
    for ch in col_str:
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n - 1


def index_to_col(idx: int) -> str:
    """0->A, 1->B, ..., 25->Z, 26->AA. Negative indexes give ''."""
    result = ""
    tmp = idx + 1
    while tmp > 0:
        tmp, rem = divmod(tmp - 1, 26)
        result = chr(rem + ord('A')) + result
    return result


def decode_ref(ref: str) -> tuple[int, int]:
    """'A1' -> (col=0, row=1). Raises InvalidReferenceError on bad input."""
    m = _CELL_REF_RE.match(ref)
    if not m:
        raise InvalidReferenceError(f"Invalid cell reference: {ref}")
    return col_to_index(m.group(1)), int(m.group(2))


def encode_ref(col: int, row: int) -> str:
    """(col=0, row=1) -> 'A1'. The row is printed verbatim, even if < 1."""
    return f"{index_to_col(col)}{row}"


def is_cell_ref(token: str) -> bool:
    return bool(_CELL_REF_RE.match(token.strip()))


def ref_to_key(ref: str) -> CellKey:
    col, row = decode_ref(ref)
    return CellKey(row, col)


def key_to_ref(key: CellKey) -> str:
    return encode_ref(key.col, key.row)


# ── Numbers ───────────────────────────────────────────────────────

_NUMBER_PREFIX_RE = re.compile(r'[+-]?(?:Infinity|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)')
_EXPONENT_RE = re.compile(r'e([+-])0*(\d+)')


def parse_number(text: str) -> float:
    """Read the longest numeric prefix of *text*; NaN when there is none.

    '12abc' -> 12.0, ' 3.5' -> 3.5, '=5' -> nan.
    """
    m = _NUMBER_PREFIX_RE.match(text.lstrip())
    if not m:
        return math.nan
    return float(m.group(0))


def format_number(value: float) -> str:
    """Format a numeric result for cell display: 15 -> '15', 0.5 -> '0.5'."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"
    if value.is_integer() and abs(value) < 1e21:
        # Shortest round-trip digits, not the exact binary expansion past 2**53.
        return format(Decimal(repr(value)).to_integral_value(), 'f')
    if 1e-6 <= abs(value) < 1e21:
        return format(Decimal(repr(value)), 'f')
    return _EXPONENT_RE.sub(r'e\1\2', repr(value))


# ── Parser ────────────────────────────────────────────────────────

_ADDITIVE_RE = re.compile(r'([+\-])')
_MULTIPLICATIVE_RE = re.compile(r'([*/])')


@dataclass
class Formula:
    kind: str  # 'value' | 'expression'
    operand: str = ""
    tokens: list[str] = field(default_factory=list)


def is_formula(text: str) -> bool:
    return text.startswith('=')


def _split_keep(pattern: re.Pattern, text: str) -> list[str]:
    return [part for part in pattern.split(text) if part]


def parse_formula(raw: str) -> Formula | None:
    """Classify *raw* as a value formula or a token expression.

    Returns None for anything that does not start with '='.
    """
    if not is_formula(raw):
        return None

    body = raw[1:].strip()
    additive = _split_keep(_ADDITIVE_RE, body)

    if len(additive) == 1:
        multiplicative = _split_keep(_MULTIPLICATIVE_RE, additive[0])
        if len(multiplicative) == 1:
            return Formula(kind='value', operand=multiplicative[0].strip())
        return Formula(kind='expression', tokens=multiplicative)

    return Formula(kind='expression', tokens=additive)


# ── Evaluation ────────────────────────────────────────────────────

RawLookup = Callable[[CellKey], str]


def resolve_operand(token: str, lookup: RawLookup, dependencies: list[CellKey]) -> str:
    """Resolve one operand to the text that arithmetic will parse.

    A reference is recorded in *dependencies* and replaced by the referenced
    cell's raw text when that text is numeric, otherwise by '0'.
    """
    token = token.strip()
    if not is_cell_ref(token):
        return token

    key = ref_to_key(token)
    if key not in dependencies:
        dependencies.append(key)
    value = lookup(key) or ""
    if value and math.isfinite(parse_number(value)):
        return value
    return "0"


def _operand_at(tokens: list[str], index: int) -> str:
    if index >= len(tokens):
        raise FormulaSyntaxError("Missing operand")
    return tokens[index]


def _collapse_multiplicative(tokens: list[str], resolve: Callable[[str], str]) -> None:
    """Fold every `a * b` / `a / b` triple in place, left to right."""
    i = 1
    while i < len(tokens):
        op = tokens[i]
        if op not in ('*', '/'):
            i += 2
            continue
        left = parse_number(resolve(tokens[i - 1]))
        right = parse_number(resolve(_operand_at(tokens, i + 1)))
        if op == '/' and right == 0:
            raise DivisionByZeroError("Division by zero")
        result = left * right if op == '*' else left / right
        # The folded value now sits at i - 1 and the next operator at i.
        tokens[i - 1:i + 2] = [format_number(result)]


def _fold_additive(tokens: list[str], resolve: Callable[[str], str]) -> float:
    if not tokens:
        raise FormulaSyntaxError("Empty formula")
    total = parse_number(resolve(tokens[0]))
    for i in range(1, len(tokens), 2):
        value = parse_number(resolve(_operand_at(tokens, i + 1)))
        total = total + value if tokens[i] == '+' else total - value
    return total


def evaluate(formula: Formula, lookup: RawLookup) -> tuple[str, list[CellKey]]:
    """Reduce *formula* to display text and the cells it read.

    Raises FormulaError subclasses; NaN operands are not errors.
    """
    dependencies: list[CellKey] = []

    def resolve(token: str) -> str:
        return resolve_operand(token, lookup, dependencies)

    if formula.kind == 'value':
        return resolve(formula.operand), dependencies

    tokens = list(formula.tokens)
    _collapse_multiplicative(tokens, resolve)
    return format_number(_fold_additive(tokens, resolve)), dependencies


# ── Dependency graph ──────────────────────────────────────────────

class DependencyGraph:
    """Tracks which cells each formula read during its last evaluation.

    forward:  formula key -> ordered list of keys it read
    reverse:  cell key    -> ordered set of formula keys that read it
    """

    def __init__(self):
        self.forward: dict[CellKey, list[CellKey]] = {}
        self.reverse: dict[CellKey, dict[CellKey, None]] = {}

    def record(self, key: CellKey, dependencies: Iterable[CellKey]) -> None:
        """Replace the dependency list of *key* wholesale."""
        for old in self.forward.get(key, ()):
            readers = self.reverse.get(old)
            if readers is not None:
                readers.pop(key, None)
                if not readers:
                    del self.reverse[old]

        deps = list(dict.fromkeys(dependencies))
        self.forward[key] = deps
        for dep in deps:
            self.reverse.setdefault(dep, {})[key] = None

    def dependencies(self, key: CellKey) -> list[CellKey]:
        return list(self.forward.get(key, ()))

    def dependents(self, key: CellKey) -> list[CellKey]:
        """Keys whose last evaluation read *key*."""
        return list(self.reverse.get(key, ()))

    def clear(self) -> None:
        self.forward.clear()
        self.reverse.clear()


# ── Fill adjustment ───────────────────────────────────────────────

def shift_refs(formula: str, row_delta: int, col_delta: int) -> str:
    """Shift all cell references in a formula by (row_delta, col_delta).

    Purely textual: one left-to-right substitution, no bounds checks.
    """
    def _replace(m: re.Match) -> str:
        col, row = decode_ref(m.group(0))
        return encode_ref(col + col_delta, row + row_delta)

    return _SHIFT_REF_RE.sub(_replace, formula)


def selected_cells(start: CellKey, end: CellKey) -> list[CellKey]:
    """Every cell of the inclusive bounding box of *start* and *end*, row-major."""
    return [
        CellKey(r, c)
        for r in range(min(start.row, end.row), max(start.row, end.row) + 1)
        for c in range(min(start.col, end.col), max(start.col, end.col) + 1)
    ]
