"""Tests for nexus_sheets.formula."""

from __future__ import annotations

import copy
import time

import pytest

from nexus_sheets.addressing import CellCoord
from nexus_sheets.formula import (
    BinaryOp,
    CellRef,
    FunctionCall,
    MAX_NESTING,
    Number,
    RangeRef,
    TokenType,
    evaluate_cell_value,
    parse_formula,
    tokenize,
    validate_formula,
)
from nexus_sheets.errors import FormulaSyntaxError

ERROR = "#ERROR!"


def _column(*values) -> tuple[list[dict], list[str]]:
    return [{"A": v} for v in values], ["A"]


class TestLiterals:
    def test_text_passthrough(self) -> None:
        assert evaluate_cell_value("Hello", [], []) == "Hello"

    def test_numeric_text(self) -> None:
        result = evaluate_cell_value("42", [], [])
        assert result == 42
        assert isinstance(result, int)
        assert evaluate_cell_value("3.5", [], []) == 3.5
        assert evaluate_cell_value("-0.25", [], []) == -0.25
        assert evaluate_cell_value(" 12 ", [], []) == 12

    def test_non_canonical_numbers_stay_text(self) -> None:
        assert evaluate_cell_value("007", [], []) == "007"
        assert evaluate_cell_value("1e3", [], []) == "1e3"
        assert evaluate_cell_value("+5", [], []) == "+5"
        assert evaluate_cell_value("inf", [], []) == "inf"

    def test_booleans(self) -> None:
        assert evaluate_cell_value("true", [], []) == 1
        assert evaluate_cell_value("FALSE", [], []) == 0
        assert evaluate_cell_value(True, [], []) == 1

    def test_none_and_numbers(self) -> None:
        assert evaluate_cell_value(None, [], []) is None
        assert evaluate_cell_value(7.0, [], []) == 7
        assert isinstance(evaluate_cell_value(7.0, [], []), int)
        assert evaluate_cell_value(2.5, [], []) == 2.5


class TestArithmetic:
    rows = [{"A": 3, "B": 4}]
    columns = ["A", "B"]

    @pytest.mark.parametrize(
        ("formula", "expected"),
        [
            ("=A1+B1", 7),
            ("=a1*b1", 12),
            ("=(A1+B1)*2", 14),
            ("=A1+B1*2", 11),
            ("=-A1+10", 7),
            ("=--A1", 3),
            ("=10/4", 2.5),
            ("= 1 + 2 ", 3),
            ("=8-2-1", 5),
            ("=16/4/2", 2),
        ],
    )
    def test_expressions(self, formula: str, expected) -> None:
        assert evaluate_cell_value(formula, self.rows, self.columns) == expected

    def test_rounds_to_four_decimals(self) -> None:
        assert evaluate_cell_value("=1/3", [], []) == 0.3333
        assert evaluate_cell_value("=2/3", [], []) == 0.6667
        assert evaluate_cell_value("=0.1+0.2", [], []) == 0.3

    def test_integral_results_are_int(self) -> None:
        assert isinstance(evaluate_cell_value("=A1+B1", self.rows, self.columns), int)


class TestRangeFunctions:
    def test_aggregates(self) -> None:
        rows, columns = _column(1, 2, 3)
        assert evaluate_cell_value("=SUM(A1:A3)", rows, columns) == 6
        assert evaluate_cell_value("=AVERAGE(A1:A3)", rows, columns) == 2
        assert evaluate_cell_value("=AVG(A1:A3)", rows, columns) == 2
        assert evaluate_cell_value("=COUNT(A1:A3)", rows, columns) == 3
        assert evaluate_cell_value("=MAX(A1:A3)", rows, columns) == 3
        assert evaluate_cell_value("=MIN(A1:A3)", rows, columns) == 1

    def test_functions_inside_arithmetic(self) -> None:
        rows, columns = _column(1, 2, 3)
        assert evaluate_cell_value("=SUM(A1:A3)*2", rows, columns) == 12
        assert evaluate_cell_value("=SUM(A1:A3)+MAX(A1:A3)", rows, columns) == 9
        assert evaluate_cell_value("=sum(a3:a1)", rows, columns) == 6

    def test_blank_and_out_of_range_cells_excluded(self) -> None:
        rows, columns = _column(5, None, 7)
        assert evaluate_cell_value("=SUM(A1:A3)", rows, columns) == 12
        assert evaluate_cell_value("=COUNT(A1:A3)", rows, columns) == 2
        assert evaluate_cell_value("=AVERAGE(A1:A3)", rows, columns) == 6
        assert evaluate_cell_value("=SUM(A1:B10)", rows, columns) == 12

    def test_text_cells_excluded(self) -> None:
        rows, columns = _column(5, "n/a", "=A1*2")
        assert evaluate_cell_value("=SUM(A1:A3)", rows, columns) == 5
        assert evaluate_cell_value("=COUNT(A1:A3)", rows, columns) == 1

    def test_empty_range_is_zero(self) -> None:
        rows, columns = _column(None, None)
        for name in ("SUM", "AVERAGE", "MIN", "MAX", "COUNT"):
            assert evaluate_cell_value(f"={name}(A1:A2)", rows, columns) == 0

    def test_several_arguments(self) -> None:
        rows, columns = _column(1, 2, 3)
        assert evaluate_cell_value("=SUM(A1:A2, 10)", rows, columns) == 13
        assert evaluate_cell_value("=MAX(A1:A1, A3:A3)", rows, columns) == 3
        assert evaluate_cell_value("=COUNT(A1:A3, A1:A3)", rows, columns) == 6

    def test_nested_calls(self) -> None:
        rows, columns = _column(1, 2, 3)
        assert evaluate_cell_value("=SUM(A1:A3, MAX(A1:A2))", rows, columns) == 8


class TestReferences:
    rows = [{"A": 2, "B": "=A1*10", "C": None, "D": "abc"}]
    columns = ["A", "B", "C", "D"]

    def test_formula_reference_is_zero(self) -> None:
        assert evaluate_cell_value("=B1+1", self.rows, self.columns) == 1

    def test_blank_text_and_missing_are_zero(self) -> None:
        assert evaluate_cell_value("=C1+1", self.rows, self.columns) == 1
        assert evaluate_cell_value("=D1+1", self.rows, self.columns) == 1
        assert evaluate_cell_value("=Z1+1", self.rows, self.columns) == 1
        assert evaluate_cell_value("=A99", self.rows, self.columns) == 0

    def test_custom_resolver(self) -> None:
        class Fixed:
            def resolve_reference_value(self, coord: CellCoord) -> float:
                return 100.0 + coord.col

        assert evaluate_cell_value("=A1+B1", self.rows, self.columns, Fixed()) == 201


class TestErrors:
    rows = [{"A": 3, "B": 4}]
    columns = ["A", "B"]

    @pytest.mark.parametrize(
        "formula",
        ["=A1+", "=", "=(A1", "=A1)", "=SUM(A1:A3", "=FOO(A1:A3)", "=A1:A3",
         "=1/0", "=A1 B1", "=$A$1", "=1..2", "=SUM()", '="a"*2', "=1E308*10",
         "=SUM(A1:A2, A1:A3", "=A1+#"],
    )
    def test_error_marker(self, formula: str) -> None:
        assert evaluate_cell_value(formula, self.rows, self.columns) == ERROR

    def test_deep_nesting_is_bounded(self) -> None:
        deep = "=" + "(" * (MAX_NESTING + 5) + "1" + ")" * (MAX_NESTING + 5)
        assert evaluate_cell_value(deep, [], []) == ERROR
        shallow = "=" + "(" * 10 + "1" + ")" * 10
        assert evaluate_cell_value(shallow, [], []) == 1

    def test_text_result(self) -> None:
        # formula bodies are upper-cased, string literals included
        assert evaluate_cell_value('="hello"', [], []) == "HELLO"


class TestSumIfFormula:
    rows = [
        {"Item": "APPLE", "Qty": 5},
        {"Item": "PEAR", "Qty": 2},
        {"Item": "apple", "Qty": 8},
    ]
    columns = ["Item", "Qty"]

    def test_text_criteria(self) -> None:
        assert evaluate_cell_value('=SUMIF(A1:A3,"apple",B1:B3)', self.rows, self.columns) == 5

    def test_numeric_criteria(self) -> None:
        assert evaluate_cell_value('=SUMIF(B1:B3,">4")', self.rows, self.columns) == 13
        assert evaluate_cell_value('=SUMIF(B1:B3,">4")*2', self.rows, self.columns) == 26

    def test_cell_criteria(self) -> None:
        assert evaluate_cell_value("=SUMIF(B1:B3,B2)", self.rows, self.columns) == 2

    def test_mismatched_ranges(self) -> None:
        assert evaluate_cell_value('=SUMIF(A1:A3,"PEAR",B1:B2)', self.rows, self.columns) == ERROR

    def test_first_argument_must_be_range(self) -> None:
        assert evaluate_cell_value('=SUMIF(A1,"PEAR")', self.rows, self.columns) == ERROR


class TestLookups:
    rows = [
        {"Name": "Apple", "Price": 1.25},
        {"Name": "Pear", "Price": 2},
        {"Name": "Fig", "Price": "n/a"},
    ]
    columns = ["Name", "Price"]

    def _eval(self, formula: str):
        return evaluate_cell_value(formula, self.rows, self.columns)

    def test_vlookup(self) -> None:
        assert self._eval('=VLOOKUP("pear",A1:B3,2)') == 2
        assert self._eval('=VLOOKUP("apple",A1:B3,2)*4') == 5
        assert self._eval('=VLOOKUP("fig",A1:B3,2)') == "n/a"
        assert self._eval('=VLOOKUP("pear",A1:B3,2,0)') == 2

    def test_vlookup_misses(self) -> None:
        assert self._eval('=VLOOKUP("kiwi",A1:B3,2)') == "#N/A"
        assert self._eval('=VLOOKUP("pear",A1:B3,3)') == "#REF!"

    def test_index(self) -> None:
        assert self._eval("=INDEX(A1:B3,2,2)") == 2
        assert self._eval("=INDEX(A1:B3,1)") == "Apple"
        assert self._eval("=INDEX(A1:B3,4,1)") == "#REF!"
        assert self._eval("=INDEX(A1:B5,5,1)") == "#REF!"

    def test_match(self) -> None:
        assert self._eval('=MATCH("fig",A1:A3)') == 3
        assert self._eval('=MATCH("plum",A1:A3)') == "#N/A"

    def test_match_and_index_compose(self) -> None:
        assert self._eval('=INDEX(B1:B3,MATCH("pear",A1:A3))') == 2

    def test_range_in_value_position(self) -> None:
        assert self._eval("=VLOOKUP(A1:B3,A1:B3,2)") == ERROR


class TestPurity:
    def test_idempotent_and_read_only(self) -> None:
        rows = [{"A": 1, "B": "=A1+1"}, {"A": 2, "B": None}]
        columns = ["A", "B"]
        snapshot = copy.deepcopy(rows)
        first = evaluate_cell_value("=SUM(A1:B2)+A2", rows, columns)
        second = evaluate_cell_value("=SUM(A1:B2)+A2", rows, columns)
        assert first == second == 5
        assert rows == snapshot


class TestParser:
    def test_tokens(self) -> None:
        types = [t.type for t in tokenize("SUM(A1:B2)+3.5")]
        assert types == [
            TokenType.NAME, TokenType.LPAREN, TokenType.CELL, TokenType.COLON,
            TokenType.CELL, TokenType.RPAREN, TokenType.OPERATOR, TokenType.NUMBER,
        ]

    def test_string_token_unescapes_quotes(self) -> None:
        (tok,) = tokenize('"SAY ""HI"""')
        assert tok.type == TokenType.STRING
        assert tok.value == 'SAY "HI"'

    def test_precedence(self) -> None:
        assert parse_formula("A1+B1*2") == BinaryOp(
            CellRef(CellCoord(0, 0)), "+", BinaryOp(CellRef(CellCoord(0, 1)), "*", Number(2.0))
        )

    def test_function_node(self) -> None:
        assert parse_formula("sum(a1:b2)") == FunctionCall(
            "SUM", (RangeRef(CellCoord(0, 0), CellCoord(1, 1)),)
        )

    def test_unterminated_string(self) -> None:
        with pytest.raises(FormulaSyntaxError):
            tokenize('"OPEN')


class TestValidateFormula:
    @pytest.mark.parametrize(
        "formula", ["=SUM(A1:A3)", "=A1+B1*2", "=1/0", '=SUMIF(A1:A3,">2",B1:B3)', "=VLOOKUP(1,A1:C9,3)"],
    )
    def test_valid(self, formula: str) -> None:
        assert validate_formula(formula) is None

    @pytest.mark.parametrize(
        "formula", ["=A1+", "SUM(A1:A3)", "=FOO(1)", "=SUMIF(A1:A3)", "=A1:A3+1", "=INDEX(A1,1)", ""],
    )
    def test_invalid(self, formula: str) -> None:
        assert validate_formula(formula) == ERROR


class TestLongFormulas:
    def test_long_sum_chain(self) -> None:
        formula = "=" + "+".join(["1"] * 2000)
        assert evaluate_cell_value(formula, [], []) == 2000
        assert validate_formula(formula) is None

    def test_long_product_chain(self) -> None:
        formula = "=" + "*".join(["1"] * 2000)
        assert evaluate_cell_value(formula, [], []) == 1

    def test_mixed_precedence_chain(self) -> None:
        formula = "=" + "+".join(["2*3"] * 2000) + "-1/2"
        assert evaluate_cell_value(formula, [], []) == 11999.5

    def test_division_by_zero_deep_in_chain(self) -> None:
        formula = "=" + "+".join(["1"] * 1500) + "/0"
        assert evaluate_cell_value(formula, [], []) == ERROR

    def test_unknown_function_deep_in_chain(self) -> None:
        formula = "=" + "+".join(["1"] * 1500) + "+FOO(1)"
        assert validate_formula(formula) == ERROR


class TestHugeRanges:
    def test_whole_sheet_range_over_tiny_grid(self) -> None:
        rows, columns = _column(5)
        start = time.perf_counter()
        assert evaluate_cell_value("=SUM(A1:XFD1048576)", rows, columns) == 5
        assert evaluate_cell_value("=COUNT(A1:A3000000)", rows, columns) == 1
        assert time.perf_counter() - start < 1.0

    def test_range_entirely_outside_grid(self) -> None:
        rows, columns = _column(5)
        assert evaluate_cell_value("=SUM(B2:XFD1048576)", rows, columns) == 0


class TestKeyCells:
    rows = [
        {"A": "Apple", "B": 1, "D": "Pear"},
        {"A": "Pear", "B": 2, "D": ">1"},
    ]
    columns = ["A", "B", "C", "D"]

    def _eval(self, formula: str):
        return evaluate_cell_value(formula, self.rows, self.columns)

    def test_vlookup_with_text_key_cell(self) -> None:
        assert self._eval("=VLOOKUP(D1,A1:B2,2)") == 2

    def test_match_with_text_key_cell(self) -> None:
        assert self._eval("=MATCH(D1,A1:A2)") == 2

    def test_sumif_with_criteria_cell(self) -> None:
        assert self._eval("=SUMIF(B1:B2,D2)") == 2

    def test_key_cell_keeps_original_case(self) -> None:
        rows = [{"A": "apple", "B": 7, "C": "APPLE", "D": "apple"}]
        columns = ["A", "B", "C", "D"]
        assert evaluate_cell_value("=SUMIF(A1:A1,D1,B1:B1)", rows, columns) == 7
        assert evaluate_cell_value("=SUMIF(A1:A1,C1,B1:B1)", rows, columns) == 0
