"""Cell addressing for Nexus Sheets.

Columns use bijective base-26 letters (A..Z, AA..ZZ, AAA..), rows are
1-based in references and 0-based everywhere else.
"""

import re
from typing import NamedTuple, Optional


_CELL_REF_RE = re.compile(r'^([A-Z]+)([0-9]+)$')


class CellCoord(NamedTuple):
    row: int
    col: int


def column_index_to_letters(index: int) -> str:
    """0->A, 1->B, ..., 25->Z, 26->AA."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    result = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        result = chr(rem + ord('A')) + result
    return result


def letters_to_column_index(letters: str) -> int:
    """A->0, B->1, ..., Z->25, AA->26."""
    if not letters or not all('A' <= ch <= 'Z' for ch in letters):
        raise ValueError(f"Bad column letters: {letters!r}")
    n = 0
    for ch in letters:
        n = n * 26 + (ord(ch) - ord('A') + 1)
    return n - 1


def parse_cell_reference(ref: str) -> Optional[CellCoord]:
    """'B12' -> CellCoord(row=11, col=1). Returns None for anything else.

    Matching is case-insensitive but nothing else is tolerated: ' A1 ' is
    invalid. Row 0 does not exist, so 'A0' is invalid too.
    """
    if not isinstance(ref, str):
        return None
    m = _CELL_REF_RE.fullmatch(ref.upper())
    if not m:
        return None
    row = int(m.group(2)) - 1
    if row < 0:
        return None
    return CellCoord(row=row, col=letters_to_column_index(m.group(1)))


def format_cell_reference(row: int, col: int) -> str:
    """(0, 26) -> 'AA1'."""
    if row < 0:
        raise ValueError(f"Row index must be >= 0, got {row}")
    return f"{column_index_to_letters(col)}{row + 1}"
