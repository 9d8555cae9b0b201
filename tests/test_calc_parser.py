"""Tests for matrixtrace.calc formula parser: tokens, subscripts and plans."""

from __future__ import annotations

import pytest
from matrixtrace.calc._parser import (
    FormulaError,
    IterativeFormula,
    MatrixRef,
    Multiply,
    ParsedFormula,
    all_references,
    format_expression,
    get_base_matrices,
    normalize_subscript,
    output_conflict,
    parse_formula,
    parse_matrix_token,
    tokenize_expression,
    validate_formula,
)


class TestSubscripts:
    @pytest.mark.parametrize("raw", ["0", "{0}"])
    def test_numeric(self, raw: str) -> None:
        ref = normalize_subscript("K", raw)
        assert ref.subscript == 0
        assert ref.subscript_type == "number"
        assert ref.name == "K_0"

    @pytest.mark.parametrize("raw", ["n", "{n}"])
    def test_current_index(self, raw: str) -> None:
        ref = normalize_subscript("K", raw)
        assert ref.subscript == "n"
        assert ref.is_index_symbolic
        assert ref.name == "K"

    def test_next_index(self) -> None:
        ref = normalize_subscript("K", "{n+1}")
        assert ref.subscript == "n+1"
        assert ref.is_index_symbolic

    def test_opaque_label(self) -> None:
        ref = normalize_subscript("S", "left")
        assert ref.subscript_type == "symbolic"
        assert not ref.is_index_symbolic
        assert ref.name == "S_left"

    def test_no_subscript(self) -> None:
        ref = normalize_subscript("Abc", None)
        assert ref.subscript is None
        assert ref.subscript_type == "none"
        assert ref.name == "Abc"


class TestTokens:
    def test_transpose(self) -> None:
        ref = parse_matrix_token("P_0^T")
        assert ref is not None
        assert ref.base_name == "P"
        assert ref.subscript == 0
        assert ref.transpose is True
        assert ref.editable is False

    def test_single_token_rejects_products(self) -> None:
        assert parse_matrix_token("A*B") is None
        assert parse_matrix_token("a") is None

    def test_display_name(self) -> None:
        assert MatrixRef("P", 0, "number", True).display_name == "P_0^T"
        assert MatrixRef("K", "n+1", "symbolic").display_name == "K_{n+1}"
        assert MatrixRef("K", 12, "number").display_name == "K_{12}"

    def test_tokenize_in_source_order(self) -> None:
        tokens, variables = tokenize_expression("S_left * K * S_right")
        assert [t.name for t in tokens] == ["S_left", "K", "S_right"]
        assert variables == {"S_left", "K", "S_right"}

    def test_repeated_token_is_one_variable(self) -> None:
        tokens, variables = tokenize_expression("S*K*S")
        assert len(tokens) == 3
        assert variables == {"S", "K"}

    @pytest.mark.parametrize("expr", ["A+B", "A-B", "A*B/C"])
    def test_unsupported_operator(self, expr: str) -> None:
        with pytest.raises(FormulaError, match="Unsupported operator"):
            tokenize_expression(expr)

    def test_dangling_star(self) -> None:
        with pytest.raises(FormulaError, match="end with"):
            tokenize_expression("A*B*")
        with pytest.raises(FormulaError, match="start with"):
            tokenize_expression("*A")

    @pytest.mark.parametrize("expr", ["AB", "A B", "A^TB", "A_{1}B"])
    def test_adjacent_tokens_need_star(self, expr: str) -> None:
        with pytest.raises(FormulaError, match=r"Missing '\*' before B"):
            tokenize_expression(expr)
        assert parse_formula(expr).error is not None


class TestSimpleMode:
    def test_left_associative(self) -> None:
        plan = parse_formula("A*B*C")
        assert isinstance(plan, ParsedFormula)
        assert plan.error is None
        ast = plan.ast
        assert isinstance(ast, Multiply)
        assert isinstance(ast.left, Multiply)
        assert isinstance(ast.right, MatrixRef) and ast.right.name == "C"
        assert format_expression(ast) == "A*B*C"

    def test_single_token(self) -> None:
        plan = parse_formula("K^T")
        assert isinstance(plan.ast, MatrixRef)
        assert plan.ast.transpose

    def test_empty_formula(self) -> None:
        plan = parse_formula("   ")
        assert isinstance(plan, ParsedFormula)
        assert plan.ast is None
        assert plan.error is None

    def test_error_is_reported_not_raised(self) -> None:
        plan = parse_formula("A+B")
        assert plan.error == "Unsupported operator: +"
        assert get_base_matrices(plan) == []


class TestIterativeMode:
    def test_base_case_and_recurrence(self) -> None:
        plan = parse_formula("K_0 = A, K_{n+1} = P^T*K_n*P")
        assert isinstance(plan, IterativeFormula)
        assert plan.error is None
        assert [s.target.name for s in plan.base_cases] == ["K_0"]
        assert plan.recurrence is not None
        assert plan.recurrence.target.subscript == "n+1"
        assert format_expression(plan.recurrence.ast) == "P^T*K_n*P"
        assert "K_0" in plan.explicit_variables

    def test_constants(self) -> None:
        plan = parse_formula("K_0 = A, K_{n+1} = P_n*K_n, P_0, P_1")
        assert isinstance(plan, IterativeFormula)
        assert [c.token.name for c in plan.constants] == ["P_0", "P_1"]
        assert {"P_0", "P_1"} <= plan.explicit_variables

    def test_constant_needs_numeric_subscript(self) -> None:
        plan = parse_formula("K_0 = A, P_n")
        assert plan.error == "Standalone matrices must have numeric subscripts"

    def test_multiple_recurrences_warn_and_last_wins(self) -> None:
        plan = parse_formula("K_{n+1} = A*K_n, K_{n+1} = B*K_n")
        assert isinstance(plan, IterativeFormula)
        assert plan.error is None
        assert len(plan.warnings) == 1
        assert plan.recurrence is not None
        assert format_expression(plan.recurrence.ast) == "B*K_n"

    @pytest.mark.parametrize(
        "formula",
        ["K_0 = A = B", "K_0 =", "K^T_0 = A", "A*B = C", "K = A"],
    )
    def test_bad_assignments(self, formula: str) -> None:
        assert parse_formula(formula).error is not None

    def test_base_matrices_exclude_targets(self) -> None:
        plan = parse_formula("K_0 = A, K_{n+1} = P^T*K_n*P")
        assert get_base_matrices(plan) == ["A", "P"]

    def test_base_matrices_include_constants(self) -> None:
        plan = parse_formula("K_0 = A, K_{n+1} = P_n*K_n, P_0, P_1")
        assert get_base_matrices(plan) == ["A", "P_0", "P_1"]

    def test_all_references(self) -> None:
        plan = parse_formula("K_0 = A, K_{n+1} = P^T*K_n*P")
        refs = all_references(plan)
        assert [r.display_name for r in refs] == ["A", "P^T", "K_n", "P"]


class TestValidate:
    def test_valid_simple(self) -> None:
        assert validate_formula("S*K*S").valid

    def test_empty_is_invalid(self) -> None:
        result = validate_formula("")
        assert not result.valid
        assert result.error == "No matrices found in formula"

    def test_parse_error(self) -> None:
        result = validate_formula("A^B")
        assert not result.valid

    def test_iterative_needs_statement(self) -> None:
        assert not validate_formula("P_0, P_1").valid
        assert validate_formula("K_0 = A").valid

    def test_simple_base_matrices_sorted(self) -> None:
        assert get_base_matrices(parse_formula("S*K*S")) == ["K", "S"]


class TestOutputConflict:
    @pytest.mark.parametrize(
        "formula",
        ["O*A", "A*O^T", "O", "K_0 = O, K_{n+1} = A*K_n", "K_0 = A, K_{n+1} = O*K_n"],
    )
    def test_output_used(self, formula: str) -> None:
        assert output_conflict(parse_formula(formula), "O") == "Formula cannot use the output matrix O"

    @pytest.mark.parametrize("formula", ["A*B", "O_0 = A, O_{n+1} = A*O_n", "Ox*A", ""])
    def test_no_conflict(self, formula: str) -> None:
        assert output_conflict(parse_formula(formula), "O") is None

    def test_custom_output_name(self) -> None:
        plan = parse_formula("O*A")
        assert output_conflict(plan, "R") is None
        assert output_conflict(parse_formula("R*A"), "R") is not None
        # sequence targets count when one of them is the output
        assert output_conflict(parse_formula("K_0 = A, K_{n+1} = A*K_n"), "K_0") is not None

    def test_parse_error_is_not_a_conflict(self) -> None:
        assert output_conflict(parse_formula("O+A"), "O") is None
