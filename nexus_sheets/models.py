from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field, model_validator

CellValue = Union[str, int, float, bool, None]

class SheetData(BaseModel):
    """A grid of named columns; every row carries every column key."""
    name: str = "Sheet1"
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, CellValue]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _fill_missing_cells(self):
        for row in self.rows:
            for col in self.columns:
                row.setdefault(col, None)
        return self

    def in_bounds(self, row: int, col: int) -> bool:
        return 0 <= row < len(self.rows) and 0 <= col < len(self.columns)

    def cell(self, row: int, col: int) -> CellValue:
        if not self.in_bounds(row, col):
            return None
        return self.rows[row].get(self.columns[col])

    def with_cell(self, row: int, col: int, value: CellValue) -> "SheetData":
        """Copy with one cell replaced. Only the touched row dict is copied."""
        if not self.in_bounds(row, col):
            raise IndexError(f"Cell ({row}, {col}) outside sheet")
        rows = list(self.rows)
        rows[row] = {**rows[row], self.columns[col]: value}
        return self.model_copy(update={"rows": rows})

class EvaluateRequest(BaseModel):
    value: CellValue = None
    rows: List[Dict[str, CellValue]] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)

class EvaluateResponse(BaseModel):
    value: CellValue = None

class SheetEvaluateResponse(BaseModel):
    name: str
    columns: List[str]
    rows: List[Dict[str, CellValue]]

class GoalSeekRequest(BaseModel):
    sheet: SheetData
    target_cell: str
    target_value: float
    changing_cell: str
    apply: bool = False

class GoalSeekResult(BaseModel):
    success: bool
    new_value: float = 0.0
    error: Optional[str] = None
    iterations: int = 0

class GoalSeekResponse(GoalSeekResult):
    sheet: Optional[SheetData] = None

class SelectionRange(BaseModel):
    start: str  # e.g. "A1"
    end: str

class StatsRequest(BaseModel):
    sheet: SheetData
    range: SelectionRange

class SelectionStats(BaseModel):
    count: int = 0
    sum: Optional[float] = None
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None

class WatchRequest(BaseModel):
    sheet: SheetData
    cells: List[str] = Field(default_factory=list)

class WatchEntry(BaseModel):
    cell: str
    value: CellValue = None
    formula: Optional[str] = None

class ValidateRequest(BaseModel):
    formula: str

class ValidateResponse(BaseModel):
    error: Optional[str] = None
