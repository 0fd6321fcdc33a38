"""Range resolution: rectangular regions of a sheet and SUMIF-style criteria."""

import math
import re
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence

from nexus_sheets.addressing import CellCoord, parse_cell_reference
from nexus_sheets.errors import RangeMismatchError


_LEADING_NUMBER_RE = re.compile(r'^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)')
_CRITERIA_OP_RE = re.compile(r'^(>=|<=|>|<|=)(.*)$', re.DOTALL)

Rows = Sequence[Mapping[str, Any]]


# ── Coercion ──────────────────────────────────────────────────────

def coerce_number(value: Any) -> float:
    """Numeric value of a raw cell, NaN when it has none.

    Text is read up to the end of its leading number ("7kg" -> 7.0).
    Empty cells, booleans and formula text are NaN.
    """
    if value is None or isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    m = _LEADING_NUMBER_RE.match(str(value))
    if not m:
        return math.nan
    return float(m.group(1))


def cell_text(value: Any) -> str:
    """Text form of a raw cell, as compared by criteria and lookups."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def cell_at(rows: Rows, columns: Sequence[str], row: int, col: int) -> Any:
    """Raw value at (row, col), or None when outside the grid."""
    if not (0 <= row < len(rows) and 0 <= col < len(columns)):
        return None
    return rows[row].get(columns[col])


# ── Range parsing ─────────────────────────────────────────────────

class RangeBounds:
    """Normalized rectangle; the two corners may come in any order."""
    __slots__ = ('min_row', 'max_row', 'min_col', 'max_col')

    def __init__(self, start: CellCoord, end: CellCoord):
        self.min_row = min(start.row, end.row)
        self.max_row = max(start.row, end.row)
        self.min_col = min(start.col, end.col)
        self.max_col = max(start.col, end.col)

    @property
    def n_rows(self) -> int:
        return self.max_row - self.min_row + 1

    @property
    def n_cols(self) -> int:
        return self.max_col - self.min_col + 1

    def clipped(self, n_rows: int, n_cols: int) -> Optional["RangeBounds"]:
        """The part inside an n_rows x n_cols grid, None when nothing overlaps."""
        if self.min_row >= n_rows or self.min_col >= n_cols:
            return None
        return RangeBounds(
            CellCoord(self.min_row, self.min_col),
            CellCoord(min(self.max_row, n_rows - 1), min(self.max_col, n_cols - 1)),
        )

    def coords(self) -> Iterator[CellCoord]:
        """Row-major walk over the rectangle."""
        for r in range(self.min_row, self.max_row + 1):
            for c in range(self.min_col, self.max_col + 1):
                yield CellCoord(r, c)

    def __repr__(self) -> str:
        return (f"RangeBounds(rows={self.min_row}..{self.max_row}, "
                f"cols={self.min_col}..{self.max_col})")


def parse_range(range_str: str) -> Optional[tuple[CellCoord, CellCoord]]:
    """'A1:B3' -> (start, end) coordinates, or None if either corner is bad."""
    parts = range_str.split(':')
    if len(parts) != 2:
        return None
    start = parse_cell_reference(parts[0])
    end = parse_cell_reference(parts[1])
    if start is None or end is None:
        return None
    return start, end


def range_bounds(range_str: str) -> Optional[RangeBounds]:
    corners = parse_range(range_str)
    if corners is None:
        return None
    return RangeBounds(*corners)


# ── Range values ──────────────────────────────────────────────────

def values_in_bounds(bounds: RangeBounds, rows: Rows, columns: Sequence[str]) -> List[float]:
    values: List[float] = []
    inside = bounds.clipped(len(rows), len(columns))
    if inside is None:
        return values
    for r, c in inside.coords():
        num = coerce_number(rows[r].get(columns[c]))
        if not math.isnan(num):
            values.append(num)
    return values


def values_in_range(range_str: str, rows: Rows, columns: Sequence[str]) -> List[float]:
    """Numeric values inside 'A1:B10', row-major.

    An invalid range gives no values. Cells outside the grid and cells
    without a numeric value are skipped.
    """
    bounds = range_bounds(range_str)
    if bounds is None:
        return []
    return values_in_bounds(bounds, rows, columns)


# ── Conditional sums ──────────────────────────────────────────────

def parse_criteria(criteria: Any) -> Callable[[Any], bool]:
    """Build a predicate over raw cell values.

    '>5', '>=5', '<5', '<=5' compare numerically, '=text' and a bare
    'text' compare the cell text exactly.
    """
    text = cell_text(criteria).strip()
    m = _CRITERIA_OP_RE.match(text)
    if not m:
        return lambda value: cell_text(value) == text

    op, operand = m.group(1), m.group(2)
    if op == '=':
        return lambda value: cell_text(value) == operand

    threshold = coerce_number(operand)
    compare = {
        '>': lambda a, b: a > b,
        '>=': lambda a, b: a >= b,
        '<': lambda a, b: a < b,
        '<=': lambda a, b: a <= b,
    }[op]

    def _check(value: Any) -> bool:
        num = coerce_number(value)
        if math.isnan(num) or math.isnan(threshold):
            return False
        return compare(num, threshold)

    return _check


def sum_if_bounds(condition: RangeBounds, criteria: Any, rows: Rows,
                  columns: Sequence[str], sum_bounds: Optional[RangeBounds] = None) -> float:
    """SUMIF over already-parsed bounds.

    Reads the left-most column of each range; rows line up by offset.
    """
    if sum_bounds is None:
        sum_bounds = condition
    if sum_bounds.n_rows != condition.n_rows:
        raise RangeMismatchError(
            f"SUMIF ranges differ in height: {condition.n_rows} vs {sum_bounds.n_rows}"
        )

    matches = parse_criteria(criteria)
    total = 0.0
    for offset in range(condition.n_rows):
        r = condition.min_row + offset
        if r >= len(rows):
            break
        if not matches(cell_at(rows, columns, r, condition.min_col)):
            continue
        num = coerce_number(cell_at(rows, columns, sum_bounds.min_row + offset, sum_bounds.min_col))
        if not math.isnan(num):
            total += num
    return total


def sum_if(condition_range: str, criteria: Any, rows: Rows, columns: Sequence[str],
           sum_range: Optional[str] = None) -> float:
    """SUMIF('A1:A10', '>5', ..., 'B1:B10'). Invalid ranges sum to 0."""
    condition = range_bounds(condition_range)
    sum_bounds = range_bounds(sum_range) if sum_range is not None else condition
    if condition is None or sum_bounds is None:
        return 0.0
    return sum_if_bounds(condition, criteria, rows, columns, sum_bounds)
