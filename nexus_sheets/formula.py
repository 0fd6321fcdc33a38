"""Formula engine for Nexus Sheets.

Cells hold raw text or numbers; a leading '=' marks a formula. Formulas
are upper-cased, tokenized and parsed into a small expression tree, then
evaluated against the sheet. Nothing is ever passed to eval().

Supported:
  +, -, *, /, unary -/+, parentheses, numbers, "text"
  cell refs (A1), ranges (A1:B3) as function arguments
  SUM, AVG, AVERAGE, MIN, MAX, COUNT   over ranges and scalars
  SUMIF(range, criteria[, sum_range])
  VLOOKUP, INDEX, MATCH                exact-match lookups

Cell references read the referenced cell's raw value only. A reference to
another formula cell counts as 0; there is no dependency graph.

Error codes returned for cells:
  #ERROR!  syntax error, unsupported formula, division by zero, overflow
  #N/A     lookup found nothing
  #REF!    INDEX outside its range or the sheet
"""

import logging
import math
import re
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Protocol, Sequence, Union

from nexus_sheets.addressing import CellCoord, parse_cell_reference
from nexus_sheets.errors import (
    ERROR_MARKER,
    DivisionByZeroError,
    FormulaError,
    FormulaSyntaxError,
    InvalidRefError,
    LookupNotFoundError,
)
from nexus_sheets.ranges import (
    RangeBounds,
    cell_at,
    cell_text,
    coerce_number,
    sum_if_bounds,
    values_in_bounds,
)

logger = logging.getLogger(__name__)

FORMULA_MARKER = '='
MAX_NESTING = 64

Rows = Sequence[Mapping[str, Any]]
Value = Union[float, str]

_NUMERIC_LITERAL_RE = re.compile(r'^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$')
_CELL_TOKEN_RE = re.compile(r'^[A-Z]+[0-9]+$')
_NAME_TOKEN_RE = re.compile(r'^[A-Z][A-Z0-9_.]*$')


# ── Number helpers ────────────────────────────────────────────────

def format_number(value: float) -> str:
    """Shortest text form of a number: 42.0 -> '42', 1.5e-07 -> '1.5e-7'."""
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return re.sub(r'e([+-])0*(\d)', r'e\1\2', repr(value))


def normalize_number(value: float) -> Union[int, float]:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def round_result(value: float) -> Union[int, float]:
    """Round half-up to 4 decimals to hide floating-point noise."""
    scaled = value * 10000
    if not math.isfinite(scaled):
        return normalize_number(value)
    return normalize_number(math.floor(scaled + 0.5) / 10000)


def _literal_value(text: str) -> Union[int, float, str]:
    """Number for canonical numeric text ('42', '3.5'), the text otherwise."""
    trimmed = text.strip()
    lowered = trimmed.lower()
    if lowered == 'true':
        return 1
    if lowered == 'false':
        return 0
    if _NUMERIC_LITERAL_RE.match(trimmed):
        num = float(trimmed)
        if math.isfinite(num) and format_number(num) == trimmed:
            return normalize_number(num)
    return text


# ── Tokenizer ─────────────────────────────────────────────────────

class TokenType(Enum):
    NUMBER = auto()
    STRING = auto()
    CELL = auto()
    NAME = auto()
    OPERATOR = auto()
    LPAREN = auto()
    RPAREN = auto()
    COMMA = auto()
    COLON = auto()


class Token(NamedTuple):
    type: TokenType
    value: str
    position: int


_DIGITS = '0123456789'

_SINGLE_CHAR_TOKENS = {
    '(': TokenType.LPAREN,
    ')': TokenType.RPAREN,
    ',': TokenType.COMMA,
    ':': TokenType.COLON,
}


def tokenize(body: str) -> List[Token]:
    """Split an upper-cased formula body (no leading '=') into tokens."""
    tokens: List[Token] = []
    pos = 0
    length = len(body)
    while pos < length:
        ch = body[pos]
        if ch.isspace():
            pos += 1
        elif ch in _DIGITS or ch == '.':
            start = pos
            while pos < length and (body[pos] in _DIGITS or body[pos] == '.'):
                pos += 1
            if pos < length and body[pos] in 'eE':
                exp = pos + 1
                if exp < length and body[exp] in '+-':
                    exp += 1
                if exp < length and body[exp] in _DIGITS:
                    pos = exp
                    while pos < length and body[pos] in _DIGITS:
                        pos += 1
            text = body[start:pos]
            if text.count('.') > 1 or text.strip('.') == '':
                raise FormulaSyntaxError(f"Invalid number at pos {start}")
            tokens.append(Token(TokenType.NUMBER, text, start))
        elif ch.isalpha() or ch == '_':
            start = pos
            while pos < length and (body[pos].isalnum() or body[pos] in '_.'):
                pos += 1
            word = body[start:pos]
            if _CELL_TOKEN_RE.match(word):
                tokens.append(Token(TokenType.CELL, word, start))
            elif _NAME_TOKEN_RE.match(word):
                tokens.append(Token(TokenType.NAME, word, start))
            else:
                raise FormulaSyntaxError(f"Bad name '{word}' at pos {start}")
        elif ch == '"':
            start = pos
            pos += 1
            chars: List[str] = []
            while True:
                if pos >= length:
                    raise FormulaSyntaxError(f"Unterminated string at pos {start}")
                if body[pos] == '"':
                    if pos + 1 < length and body[pos + 1] == '"':
                        chars.append('"')
                        pos += 2
                        continue
                    pos += 1
                    break
                chars.append(body[pos])
                pos += 1
            tokens.append(Token(TokenType.STRING, ''.join(chars), start))
        elif ch in '+-*/':
            tokens.append(Token(TokenType.OPERATOR, ch, pos))
            pos += 1
        elif ch in _SINGLE_CHAR_TOKENS:
            tokens.append(Token(_SINGLE_CHAR_TOKENS[ch], ch, pos))
            pos += 1
        else:
            raise FormulaSyntaxError(f"Unexpected '{ch}' at pos {pos}")
    return tokens


# ── Expression tree ───────────────────────────────────────────────

class Number(NamedTuple):
    value: float


class Text(NamedTuple):
    value: str


class CellRef(NamedTuple):
    coord: CellCoord


class RangeRef(NamedTuple):
    start: CellCoord
    end: CellCoord

    def bounds(self) -> RangeBounds:
        return RangeBounds(self.start, self.end)


class FunctionCall(NamedTuple):
    name: str
    args: "tuple[Node, ...]"


class UnaryOp(NamedTuple):
    op: str
    operand: "Node"


class BinaryOp(NamedTuple):
    left: "Node"
    op: str
    right: "Node"


Node = Union[Number, Text, CellRef, RangeRef, FunctionCall, UnaryOp, BinaryOp]


def unwind_chain(node: BinaryOp) -> "tuple[Node, List[tuple[str, Node]]]":
    """Flatten a left-leaning operator chain into its first operand and (op, operand) steps.

    `1+2+...+n` parses as a tree n levels deep. Walking the steps in a loop
    leaves recursion depth tied to parenthesis nesting only.
    """
    steps: List[tuple[str, Node]] = []
    while isinstance(node, BinaryOp):
        steps.append((node.op, node.right))
        node = node.left
    steps.reverse()
    return node, steps


# ── Parser (recursive descent) ────────────────────────────────────

class _Parser:
    """expr := term (('+'|'-') term)*
    term := unary (('*'|'/') unary)*
    unary := ('+'|'-') unary | atom
    atom := NUMBER | STRING | CELL [':' CELL] | NAME '(' [expr (',' expr)*] ')' | '(' expr ')'
    """
    __slots__ = ('tokens', 'pos', 'depth')

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _eat(self, expected: Optional[TokenType] = None) -> Token:
        if self.pos >= len(self.tokens):
            raise FormulaSyntaxError("Unexpected end of expression")
        tok = self.tokens[self.pos]
        if expected is not None and tok.type != expected:
            raise FormulaSyntaxError(
                f"Expected {expected.name}, got '{tok.value}' at pos {tok.position}"
            )
        self.pos += 1
        return tok

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise FormulaSyntaxError("Formula is nested too deeply")

    def _at_operator(self, ops: str) -> bool:
        tok = self._peek()
        return tok is not None and tok.type == TokenType.OPERATOR and tok.value in ops

    def _expr(self) -> Node:
        left = self._term()
        while self._at_operator('+-'):
            op = self._eat().value
            left = BinaryOp(left, op, self._term())
        return left

    def _term(self) -> Node:
        left = self._unary()
        while self._at_operator('*/'):
            op = self._eat().value
            left = BinaryOp(left, op, self._unary())
        return left

    def _unary(self) -> Node:
        if self._at_operator('+-'):
            op = self._eat().value
            self._enter()
            operand = self._unary()
            self.depth -= 1
            return UnaryOp(op, operand)
        return self._atom()

    def _atom(self) -> Node:
        tok = self._eat()
        if tok.type == TokenType.NUMBER:
            return Number(float(tok.value))
        if tok.type == TokenType.STRING:
            return Text(tok.value)
        if tok.type == TokenType.CELL:
            start = parse_cell_reference(tok.value)
            if start is None:
                raise FormulaSyntaxError(f"Bad cell reference '{tok.value}'")
            nxt = self._peek()
            if nxt is not None and nxt.type == TokenType.COLON:
                self._eat()
                end_tok = self._eat(TokenType.CELL)
                end = parse_cell_reference(end_tok.value)
                if end is None:
                    raise FormulaSyntaxError(f"Bad cell reference '{end_tok.value}'")
                return RangeRef(start, end)
            return CellRef(start)
        if tok.type == TokenType.NAME:
            self._eat(TokenType.LPAREN)
            self._enter()
            args: List[Node] = []
            nxt = self._peek()
            if nxt is None or nxt.type != TokenType.RPAREN:
                args.append(self._expr())
                while (nxt := self._peek()) is not None and nxt.type == TokenType.COMMA:
                    self._eat()
                    args.append(self._expr())
            self._eat(TokenType.RPAREN)
            self.depth -= 1
            return FunctionCall(tok.value, tuple(args))
        if tok.type == TokenType.LPAREN:
            self._enter()
            node = self._expr()
            self._eat(TokenType.RPAREN)
            self.depth -= 1
            return node
        raise FormulaSyntaxError(f"Unexpected '{tok.value}' at pos {tok.position}")

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaSyntaxError("Empty expression")
        node = self._expr()
        if self.pos != len(self.tokens):
            tok = self.tokens[self.pos]
            raise FormulaSyntaxError(f"Unexpected '{tok.value}' at pos {tok.position}")
        return node


def parse_formula(body: str) -> Node:
    """Parse a formula body (no leading '=') into an expression tree."""
    return _Parser(tokenize(body.upper())).parse()


# ── Reference resolution ──────────────────────────────────────────

class ReferenceResolver(Protocol):
    def resolve_reference_value(self, coord: CellCoord) -> float:
        """Numeric value substituted for a bare cell reference."""
        ...


class RawValueResolver:
    """Reads the raw cell. Blank, text, formula and out-of-bounds cells are 0."""
    __slots__ = ('rows', 'columns')

    def __init__(self, rows: Rows, columns: Sequence[str]):
        self.rows = rows
        self.columns = columns

    def resolve_reference_value(self, coord: CellCoord) -> float:
        num = coerce_number(cell_at(self.rows, self.columns, coord.row, coord.col))
        return 0.0 if math.isnan(num) else num


# ── Built-in functions ────────────────────────────────────────────

class _FunctionDef(NamedTuple):
    handler: Callable[["FormulaEvaluator", "tuple[Node, ...]"], Value]
    min_args: int
    max_args: Optional[int]
    # None: any argument may be a range; otherwise the positions that must be
    range_args: Optional[frozenset]


def _fn_sum(ev: "FormulaEvaluator", args) -> Value:
    return sum(ev.collect_numbers(args))


def _fn_average(ev: "FormulaEvaluator", args) -> Value:
    vals = ev.collect_numbers(args)
    return sum(vals) / len(vals) if vals else 0.0


def _fn_min(ev: "FormulaEvaluator", args) -> Value:
    vals = ev.collect_numbers(args)
    return min(vals) if vals else 0.0


def _fn_max(ev: "FormulaEvaluator", args) -> Value:
    vals = ev.collect_numbers(args)
    return max(vals) if vals else 0.0


def _fn_count(ev: "FormulaEvaluator", args) -> Value:
    return float(len(ev.collect_numbers(args)))


def _fn_sumif(ev: "FormulaEvaluator", args) -> Value:
    criteria = ev.key_value(args[1])
    sum_bounds = args[2].bounds() if len(args) > 2 else None
    return sum_if_bounds(args[0].bounds(), criteria, ev.rows, ev.columns, sum_bounds)


def _lookup_key(value: Any) -> str:
    return cell_text(value).upper()


def _fn_vlookup(ev: "FormulaEvaluator", args) -> Value:
    key = _lookup_key(ev.key_value(args[0]))
    table = args[1].bounds()
    col_offset = int(ev.number(args[2])) - 1
    if not 0 <= col_offset < table.n_cols:
        raise InvalidRefError(f"VLOOKUP column {col_offset + 1} outside table")
    for r in range(table.min_row, min(table.max_row + 1, len(ev.rows))):
        if _lookup_key(cell_at(ev.rows, ev.columns, r, table.min_col)) == key:
            return ev.cell_result(r, table.min_col + col_offset)
    raise LookupNotFoundError(f"VLOOKUP found no match for {key!r}")


def _fn_index(ev: "FormulaEvaluator", args) -> Value:
    area = args[0].bounds()
    row_num = int(ev.number(args[1]))
    col_num = int(ev.number(args[2])) if len(args) > 2 else 1
    if not (1 <= row_num <= area.n_rows and 1 <= col_num <= area.n_cols):
        raise InvalidRefError(f"INDEX({row_num}, {col_num}) outside range")
    r = area.min_row + row_num - 1
    c = area.min_col + col_num - 1
    if r >= len(ev.rows) or c >= len(ev.columns):
        raise InvalidRefError(f"INDEX({row_num}, {col_num}) outside sheet")
    return ev.cell_result(r, c)


def _fn_match(ev: "FormulaEvaluator", args) -> Value:
    key = _lookup_key(ev.key_value(args[0]))
    area = args[1].bounds()
    match_type = int(ev.number(args[2])) if len(args) > 2 else 1
    last_row = min(area.max_row + 1, len(ev.rows))
    positions = range(area.min_row, last_row)
    if match_type == -1:
        positions = reversed(positions)
    for r in positions:
        if _lookup_key(cell_at(ev.rows, ev.columns, r, area.min_col)) == key:
            return float(r - area.min_row + 1)
    raise LookupNotFoundError(f"MATCH found no match for {key!r}")


FUNCTIONS: Dict[str, _FunctionDef] = {
    'SUM': _FunctionDef(_fn_sum, 1, None, None),
    'AVG': _FunctionDef(_fn_average, 1, None, None),
    'AVERAGE': _FunctionDef(_fn_average, 1, None, None),
    'MIN': _FunctionDef(_fn_min, 1, None, None),
    'MAX': _FunctionDef(_fn_max, 1, None, None),
    'COUNT': _FunctionDef(_fn_count, 1, None, None),
    'SUMIF': _FunctionDef(_fn_sumif, 2, 3, frozenset({0, 2})),
    'VLOOKUP': _FunctionDef(_fn_vlookup, 3, 4, frozenset({1})),
    'INDEX': _FunctionDef(_fn_index, 2, 3, frozenset({0})),
    'MATCH': _FunctionDef(_fn_match, 2, 3, frozenset({1})),
}


def _check_call(call: FunctionCall) -> _FunctionDef:
    fn = FUNCTIONS.get(call.name)
    if fn is None:
        raise FormulaSyntaxError(f"Unknown function: {call.name}")
    n = len(call.args)
    if n < fn.min_args or (fn.max_args is not None and n > fn.max_args):
        raise FormulaSyntaxError(f"{call.name} takes {fn.min_args}-{fn.max_args or 'n'} arguments, got {n}")
    if fn.range_args is not None:
        for i, arg in enumerate(call.args):
            if (i in fn.range_args) != isinstance(arg, RangeRef):
                kind = "a range" if i in fn.range_args else "a value"
                raise FormulaSyntaxError(f"{call.name} argument {i + 1} must be {kind}")
    return fn


def check_tree(node: Node) -> None:
    """Raise FormulaSyntaxError for unknown functions, bad arity or stray ranges."""
    if isinstance(node, RangeRef):
        raise FormulaSyntaxError("Range used outside a function")
    if isinstance(node, UnaryOp):
        check_tree(node.operand)
    elif isinstance(node, BinaryOp):
        first, steps = unwind_chain(node)
        check_tree(first)
        for _, operand in steps:
            check_tree(operand)
    elif isinstance(node, FunctionCall):
        _check_call(node)
        for arg in node.args:
            if not isinstance(arg, RangeRef):
                check_tree(arg)


# ── Tree evaluation ───────────────────────────────────────────────

def _apply_operator(left: float, op: str, right: float) -> float:
    if op == '+':
        return left + right
    if op == '-':
        return left - right
    if op == '*':
        return left * right
    if right == 0:
        raise DivisionByZeroError("Division by zero")
    return left / right


class FormulaEvaluator:
    """Evaluates an expression tree against one sheet. Never mutates it."""
    __slots__ = ('rows', 'columns', 'resolver')

    def __init__(self, rows: Rows, columns: Sequence[str],
                 resolver: Optional[ReferenceResolver] = None):
        self.rows = rows
        self.columns = columns
        self.resolver = resolver or RawValueResolver(rows, columns)

    def evaluate(self, node: Node) -> Value:
        if isinstance(node, Number):
            return node.value
        if isinstance(node, Text):
            return node.value
        if isinstance(node, CellRef):
            return self.resolver.resolve_reference_value(node.coord)
        if isinstance(node, UnaryOp):
            val = self.number(node.operand)
            return -val if node.op == '-' else val
        if isinstance(node, BinaryOp):
            first, steps = unwind_chain(node)
            acc = self.number(first)
            for op, operand in steps:
                acc = _apply_operator(acc, op, self.number(operand))
            return acc
        if isinstance(node, FunctionCall):
            return _check_call(node).handler(self, node.args)
        if isinstance(node, RangeRef):
            raise FormulaSyntaxError("Range used outside a function")
        raise FormulaSyntaxError(f"Cannot evaluate {node!r}")

    def number(self, node: Node) -> float:
        val = self.evaluate(node)
        if isinstance(val, str):
            raise FormulaError(f"Text {val!r} used in arithmetic")
        return val

    def collect_numbers(self, args: Sequence[Node]) -> List[float]:
        """Numbers for an aggregate: range cells that coerce, plus scalar args."""
        values: List[float] = []
        for arg in args:
            if isinstance(arg, RangeRef):
                values.extend(values_in_bounds(arg.bounds(), self.rows, self.columns))
            else:
                values.append(self.number(arg))
        return values

    def key_value(self, node: Node) -> Value:
        """Lookup key or criteria argument. A bare reference keeps the cell's text."""
        if isinstance(node, CellRef):
            return self.cell_result(node.coord.row, node.coord.col)
        return self.evaluate(node)

    def cell_result(self, row: int, col: int) -> Value:
        """A looked-up cell as a value. Formula cells count as 0, like references."""
        raw = cell_at(self.rows, self.columns, row, col)
        if raw is None or isinstance(raw, bool):
            return float(bool(raw))
        if isinstance(raw, (int, float)):
            return float(raw)
        text = str(raw)
        if text.startswith(FORMULA_MARKER):
            return 0.0
        literal = _literal_value(text)
        return literal if isinstance(literal, str) else float(literal)


# ── Public entry points ───────────────────────────────────────────

def is_formula(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(FORMULA_MARKER)


def evaluate_cell_value(value: Any, rows: Rows, columns: Sequence[str],
                        resolver: Optional[ReferenceResolver] = None) -> Union[int, float, str, None]:
    """Displayed value of a raw cell.

    Literals come back as numbers or text, formulas are evaluated against
    rows/columns. Never raises: failures become an error code string.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return normalize_number(value)

    text = str(value)
    if not text.startswith(FORMULA_MARKER):
        return _literal_value(text)

    body = text[len(FORMULA_MARKER):]
    try:
        tree = parse_formula(body)
        result = FormulaEvaluator(rows, columns, resolver).evaluate(tree)
    except FormulaError as e:
        logger.debug("Formula %r failed: %s", text, e)
        return e.code
    except Exception:
        logger.debug("Formula %r raised", text, exc_info=True)
        return ERROR_MARKER

    if isinstance(result, str):
        return result
    if not math.isfinite(result):
        return ERROR_MARKER
    return round_result(result)


def validate_formula(formula: str) -> str | None:
    """Check formula syntax without evaluating.

    Returns None if valid, or the error code string.
    """
    if not is_formula(formula):
        return ERROR_MARKER
    try:
        check_tree(parse_formula(formula[len(FORMULA_MARKER):]))
    except FormulaError as e:
        return e.code
    except RecursionError:
        logger.debug("Formula %r too deep to validate", formula)
        return ERROR_MARKER
    return None
