"""Status-bar statistics for a selection, and the watch window."""

import math
from typing import Iterable, List

from nexus_sheets.addressing import CellCoord, format_cell_reference, parse_cell_reference
from nexus_sheets.formula import evaluate_cell_value, is_formula
from nexus_sheets.models import SelectionStats, SheetData, WatchEntry
from nexus_sheets.ranges import RangeBounds

REF_ERROR = "#REF!"


def _round2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def _as_number(value) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    try:
        num = float(str(value).strip())
    except ValueError:
        return None
    return num if math.isfinite(num) else None


def selection_stats(sheet: SheetData, start: CellCoord, end: CellCoord) -> SelectionStats:
    """Count/sum/avg/min/max of the evaluated cells between two corners.

    `count` counts every non-empty result; the rest only numeric ones.
    """
    bounds = RangeBounds(start, end).clipped(len(sheet.rows), len(sheet.columns))
    if bounds is None:
        return SelectionStats()
    count = 0
    numbers: List[float] = []
    for r, c in bounds.coords():
        val = evaluate_cell_value(sheet.cell(r, c), sheet.rows, sheet.columns)
        if val is None or val == "":
            continue
        count += 1
        num = _as_number(val)
        if num is not None:
            numbers.append(num)

    if not numbers:
        return SelectionStats(count=count)
    total = sum(numbers)
    return SelectionStats(
        count=count,
        sum=_round2(total),
        avg=_round2(total / len(numbers)),
        min=min(numbers),
        max=max(numbers),
    )


def watch_values(sheet: SheetData, refs: Iterable[str]) -> List[WatchEntry]:
    entries: List[WatchEntry] = []
    for ref in refs:
        coord = parse_cell_reference(ref)
        if coord is None or not sheet.in_bounds(*coord):
            entries.append(WatchEntry(cell=ref.strip().upper(), value=REF_ERROR))
            continue
        raw = sheet.cell(*coord)
        entries.append(WatchEntry(
            cell=format_cell_reference(*coord),
            value=evaluate_cell_value(raw, sheet.rows, sheet.columns),
            formula=raw if is_formula(raw) else None,
        ))
    return entries
