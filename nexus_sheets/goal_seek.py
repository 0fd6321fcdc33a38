"""Goal seek: find the input that drives a formula cell to a target value.

Uses the secant method on f(x) = evaluate(target | changing=x) - target_value,
so no derivative of the formula is needed. The sheet passed in is never
modified; each trial value is evaluated against a copy of one row.
"""

import logging
import math
from typing import Any, Callable

from nexus_sheets.addressing import CellCoord, parse_cell_reference
from nexus_sheets.config import GOAL_SEEK_MAX_ITERATIONS, GOAL_SEEK_TOLERANCE
from nexus_sheets.formula import evaluate_cell_value, is_formula
from nexus_sheets.models import GoalSeekResult, SheetData

logger = logging.getLogger(__name__)

MIN_SLOPE = 1e-9


def to_number(value: Any) -> float:
    """Strict numeric value of a raw or evaluated cell, 0.0 if it has none."""
    if value is None or isinstance(value, bool):
        return float(bool(value))
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            num = float(text)
        except ValueError:
            return 0.0
    return num if math.isfinite(num) else 0.0


def _failure(error: str, new_value: float = 0.0, iterations: int = 0) -> GoalSeekResult:
    return GoalSeekResult(success=False, new_value=new_value, error=error, iterations=iterations)


def make_objective(sheet: SheetData, target: CellCoord, changing: CellCoord,
                   target_value: float) -> Callable[[float], float]:
    """f(x): target cell's value with the changing cell set to x, minus the goal."""
    formula = sheet.cell(target.row, target.col)
    changing_key = sheet.columns[changing.col]

    def evaluate_at(x: float) -> float:
        rows = list(sheet.rows)
        rows[changing.row] = {**rows[changing.row], changing_key: x}
        return to_number(evaluate_cell_value(formula, rows, sheet.columns)) - target_value

    return evaluate_at


def goal_seek(target_ref: str, target_value: float, changing_ref: str, sheet: SheetData, *,
              max_iterations: int = GOAL_SEEK_MAX_ITERATIONS,
              tolerance: float = GOAL_SEEK_TOLERANCE) -> GoalSeekResult:
    """Find the changing cell value that makes target_ref equal target_value.

    Failures come back as a result with success=False and an error message,
    never as an exception.
    """
    target = parse_cell_reference(target_ref)
    changing = parse_cell_reference(changing_ref)
    if target is None or changing is None:
        return _failure("Invalid cell reference")
    if not sheet.in_bounds(*target):
        return _failure("Target cell out of bounds")
    if not sheet.in_bounds(*changing):
        return _failure("Changing cell out of bounds")
    if not is_formula(sheet.cell(*target)):
        return _failure("Target cell must contain a formula")
    if is_formula(sheet.cell(*changing)):
        return _failure("Changing cell must not contain a formula")

    f = make_objective(sheet, target, changing, target_value)

    x0 = to_number(sheet.cell(*changing))
    y0 = f(x0)
    if abs(y0) < tolerance:
        return GoalSeekResult(success=True, new_value=x0)

    x1 = x0 + (0.1 if abs(x0) < 0.1 else x0 * 0.01)
    y1 = f(x1)

    iterations = 0
    while iterations < max_iterations:
        if abs(y1) < tolerance:
            logger.info("Goal seek %s=%s via %s converged to %s after %d iterations",
                        target_ref, target_value, changing_ref, x1, iterations)
            return GoalSeekResult(success=True, new_value=x1, iterations=iterations)

        iterations += 1
        if abs(y1 - y0) < MIN_SLOPE:
            # flat: step away instead of dividing by ~0
            x1 += 1
            y1 = f(x1)
            continue

        x_next = x1 - y1 * (x1 - x0) / (y1 - y0)
        if not math.isfinite(x_next):
            break
        x0, y0 = x1, y1
        x1, y1 = x_next, f(x_next)
        logger.debug("Goal seek iteration %d: x=%s f(x)=%s", iterations, x1, y1)

    logger.info("Goal seek %s=%s via %s did not converge (last x=%s)",
                target_ref, target_value, changing_ref, x1)
    return _failure("Could not converge", new_value=x1, iterations=iterations)


def apply_goal_seek(sheet: SheetData, changing_ref: str, result: GoalSeekResult) -> SheetData:
    """Sheet with the solved value written into the changing cell.

    Returns the sheet unchanged when the search failed.
    """
    changing = parse_cell_reference(changing_ref)
    if not result.success or changing is None or not sheet.in_bounds(*changing):
        return sheet
    return sheet.with_cell(changing.row, changing.col, result.new_value)
