from __future__ import annotations

import pytest

from nexus_sheets.models import SheetData


@pytest.fixture
def make_sheet():
    """Build a SheetData from column names and row dicts."""

    def _make(columns: list[str], rows: list[dict]) -> SheetData:
        return SheetData(name="Test", columns=columns, rows=rows)

    return _make
