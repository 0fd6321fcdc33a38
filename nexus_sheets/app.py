import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from nexus_sheets import config
from nexus_sheets.addressing import parse_cell_reference
from nexus_sheets.formula import evaluate_cell_value, validate_formula
from nexus_sheets.goal_seek import apply_goal_seek, goal_seek
from nexus_sheets.models import (
    EvaluateRequest, EvaluateResponse, GoalSeekRequest, GoalSeekResponse, SelectionStats,
    SheetData, SheetEvaluateResponse, StatsRequest, ValidateRequest, ValidateResponse,
    WatchEntry, WatchRequest,
)
from nexus_sheets.stats import selection_stats, watch_values

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Formula engine ready (goal seek: %d iterations, tolerance %s)",
        config.GOAL_SEEK_MAX_ITERATIONS, config.GOAL_SEEK_TOLERANCE,
    )
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok"}

# ── Evaluation ───────────────────────────────────────────────────────

@app.post("/evaluate", response_model=EvaluateResponse)
async def evaluate_value(req: EvaluateRequest):
    """Evaluate one raw cell value against the given rows/columns."""
    return EvaluateResponse(value=evaluate_cell_value(req.value, req.rows, req.columns))

@app.post("/sheets/evaluate", response_model=SheetEvaluateResponse)
async def evaluate_sheet(sheet: SheetData):
    """Render pass: every cell's displayed value, same shape as the input."""
    rows = [
        {col: evaluate_cell_value(row.get(col), sheet.rows, sheet.columns) for col in sheet.columns}
        for row in sheet.rows
    ]
    return SheetEvaluateResponse(name=sheet.name, columns=sheet.columns, rows=rows)

@app.post("/formula/validate", response_model=ValidateResponse)
async def check_formula(req: ValidateRequest):
    return ValidateResponse(error=validate_formula(req.formula))

# ── Goal seek ────────────────────────────────────────────────────────

@app.post("/sheets/goal-seek", response_model=GoalSeekResponse)
async def run_goal_seek(req: GoalSeekRequest):
    """Solve for the changing cell. With `apply`, also return the updated sheet.

    Solver failures are a normal response with success=false.
    """
    result = goal_seek(req.target_cell, req.target_value, req.changing_cell, req.sheet)
    sheet = None
    if req.apply and result.success:
        sheet = apply_goal_seek(req.sheet, req.changing_cell, result)
    return GoalSeekResponse(**result.model_dump(), sheet=sheet)

# ── Selection / watch ────────────────────────────────────────────────

@app.post("/sheets/stats", response_model=SelectionStats)
async def range_stats(req: StatsRequest):
    start = parse_cell_reference(req.range.start)
    end = parse_cell_reference(req.range.end)
    if start is None or end is None:
        raise HTTPException(status_code=422, detail="Invalid cell reference")
    return selection_stats(req.sheet, start, end)

@app.post("/sheets/watch", response_model=List[WatchEntry])
async def watch_cells(req: WatchRequest):
    return watch_values(req.sheet, req.cells)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("Starting on %s:%d", config.HOST, config.PORT)
    uvicorn.run(app, host=config.HOST, port=config.PORT, timeout_keep_alive=5)
