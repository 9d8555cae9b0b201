"""Formula parser: regex tokenizer, multiply trees and iterative plans.

Two formula shapes are accepted::

    S*K*S                         simple: left-associative product
    K_0 = A, K_{n+1} = P^T*K_n*P  iterative: base cases plus a recurrence

A matrix token is an uppercase letter with optional lowercase letters, an
optional subscript (``_0``, ``_n``, ``_{n+1}``, ``_{12}``, ``_left``) and an
optional ``^T`` transpose marker.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Literal, Union

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_TOKEN = r"([A-Z][a-z]*)(?:_(\{[^}]+\}|[A-Za-z0-9+]+))?(\^T)?"
_TOKEN_RE = re.compile(_TOKEN)
_SINGLE_TOKEN_RE = re.compile(rf"^{_TOKEN}$")
_NUMERIC_NAME_RE = re.compile(r"^[A-Z][a-z]*_\d+$")
_WHITESPACE_RE = re.compile(r"\s+")

CURRENT_INDEX = "n"
NEXT_INDEX = "n+1"

SubscriptType = Literal["none", "number", "symbolic"]


class FormulaError(ValueError):
    """Malformed formula text; reported through ``.error`` on parse results."""


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatrixRef:
    """Leaf of a formula: one occurrence of a matrix token."""

    base_name: str
    subscript: int | str | None = None
    subscript_type: SubscriptType = "none"
    transpose: bool = False
    position: int = 0

    @property
    def is_index_symbolic(self) -> bool:
        """True for ``_n`` / ``_{n+1}``, which only make sense in a recurrence."""
        return self.subscript_type == "symbolic" and self.subscript in (CURRENT_INDEX, NEXT_INDEX)

    @property
    def name(self) -> str:
        """Graph matrix name this token refers to."""
        if self.subscript_type == "none" or self.is_index_symbolic:
            return self.base_name
        return f"{self.base_name}_{self.subscript}"

    @property
    def editable(self) -> bool:
        """Transposed occurrences are derived views, not paintable inputs."""
        return not self.transpose

    @property
    def display_name(self) -> str:
        name = self.base_name
        if self.subscript is not None:
            sub = str(self.subscript)
            name += f"_{{{sub}}}" if len(sub) > 1 else f"_{sub}"
        if self.transpose:
            name += "^T"
        return name

    def with_index(self, index: int) -> MatrixRef:
        return replace(self, subscript=index, subscript_type="number")


@dataclass(frozen=True)
class Multiply:
    left: Expr
    right: Expr


Expr = Union[MatrixRef, Multiply]


@dataclass(frozen=True)
class Statement:
    """``target = ast`` inside an iterative formula."""

    target: MatrixRef
    ast: Expr | None
    tokens: tuple[MatrixRef, ...] = ()
    raw: str = ""


@dataclass(frozen=True)
class Constant:
    """A bare matrix reference declared in an iterative formula (e.g. ``P_1``)."""

    token: MatrixRef
    raw: str = ""


@dataclass
class ParsedFormula:
    mode: Literal["simple"] = "simple"
    variables: set[str] = field(default_factory=set)
    tokens: list[MatrixRef] = field(default_factory=list)
    ast: Expr | None = None
    error: str | None = None
    raw: str = ""


@dataclass
class IterativeFormula:
    mode: Literal["iterative"] = "iterative"
    base_cases: list[Statement] = field(default_factory=list)
    recurrence: Statement | None = None
    constants: list[Constant] = field(default_factory=list)
    explicit_variables: set[str] = field(default_factory=set)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    raw: str = ""


FormulaPlan = Union[ParsedFormula, IterativeFormula]


@dataclass(frozen=True)
class Validation:
    valid: bool
    error: str | None = None


# ---------------------------------------------------------------------------
# Tokenizing
# ---------------------------------------------------------------------------


def normalize_subscript(
    base_name: str,
    subscript: str | None,
    transpose: bool = False,
    position: int = 0,
) -> MatrixRef:
    """Build a MatrixRef, classifying the raw subscript text."""
    if not subscript:
        return MatrixRef(base_name, None, "none", transpose, position)
    cleaned = subscript[1:-1] if subscript.startswith("{") and subscript.endswith("}") else subscript
    if cleaned.isdigit():
        return MatrixRef(base_name, int(cleaned), "number", transpose, position)
    # n, n+1 and any other label are symbolic; only n / n+1 get resolved later
    return MatrixRef(base_name, cleaned, "symbolic", transpose, position)


def parse_matrix_token(raw: str) -> MatrixRef | None:
    """Parse text that must be exactly one matrix token, else None."""
    m = _SINGLE_TOKEN_RE.match(_WHITESPACE_RE.sub("", raw))
    if not m:
        return None
    return normalize_subscript(m.group(1), m.group(2), bool(m.group(3)))


def tokenize_expression(expr: str) -> tuple[list[MatrixRef], set[str]]:
    """Split a ``*``-separated product into matrix tokens.

    Raises FormulaError on any other operator or stray text.
    """
    cleaned = _WHITESPACE_RE.sub("", expr)
    tokens: list[MatrixRef] = []
    variables: set[str] = set()
    last_end = 0
    for m in _TOKEN_RE.finditer(cleaned):
        gap = cleaned[last_end:m.start()]
        if gap and gap != "*":
            raise FormulaError(f"Unsupported operator: {gap}")
        if gap == "*" and not tokens:
            raise FormulaError("Expression cannot start with '*'")
        if not gap and tokens:
            raise FormulaError(f"Missing '*' before {m.group(0)}")
        token = normalize_subscript(m.group(1), m.group(2), bool(m.group(3)), m.start())
        tokens.append(token)
        variables.add(token.name)
        last_end = m.end()
    trailing = cleaned[last_end:]
    if trailing:
        if trailing == "*" and tokens:
            raise FormulaError("Expression cannot end with '*'")
        raise FormulaError(f"Unsupported operator: {trailing}")
    return tokens, variables


def build_ast(tokens: list[MatrixRef]) -> Expr | None:
    """Left-associative multiply tree over *tokens* in source order."""
    if not tokens:
        return None
    ast: Expr = tokens[0]
    for token in tokens[1:]:
        ast = Multiply(ast, token)
    return ast


def format_expression(ast: Expr | None) -> str:
    """Human-readable text for a (sub)expression, e.g. ``S*K^T``."""
    if ast is None:
        return ""
    if isinstance(ast, MatrixRef):
        return ast.display_name
    return f"{format_expression(ast.left)}*{format_expression(ast.right)}"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_formula(formula: str | None) -> FormulaPlan:
    """Parse formula text into a simple or iterative plan.

    Errors are reported in the ``error`` attribute, never raised.
    """
    if not formula or not formula.strip():
        return ParsedFormula(raw=formula or "")
    if "=" in formula or "," in formula:
        return _parse_iterative(formula)
    return _parse_simple(formula)


def _parse_simple(formula: str) -> ParsedFormula:
    try:
        tokens, variables = tokenize_expression(formula)
    except FormulaError as e:
        logger.debug("Cannot parse formula %r: %s", formula, e)
        return ParsedFormula(error=str(e), raw=formula)
    return ParsedFormula(variables=variables, tokens=tokens, ast=build_ast(tokens), raw=formula)


def _parse_iterative(formula: str) -> IterativeFormula:
    parts = [p.strip() for p in formula.split(",") if p.strip()]
    plan = IterativeFormula(raw=formula)
    if not parts:
        plan.error = "No formulas provided"
        return plan

    try:
        for part in parts:
            if "=" in part:
                _parse_assignment(plan, part)
            else:
                _parse_constant(plan, part)
    except FormulaError as e:
        logger.debug("Cannot parse formula %r: %s", formula, e)
        plan.error = str(e)
    return plan


def _parse_assignment(plan: IterativeFormula, part: str) -> None:
    sides = [s.strip() for s in part.split("=")]
    if len(sides) != 2 or not sides[0] or not sides[1]:
        raise FormulaError(f"Invalid assignment: {part}")
    lhs_raw, rhs_raw = sides

    target = parse_matrix_token(lhs_raw)
    if target is None or target.transpose:
        raise FormulaError(f"Invalid left-hand side: {lhs_raw}")

    tokens, variables = tokenize_expression(rhs_raw)
    statement = Statement(target=target, ast=build_ast(tokens), tokens=tuple(tokens), raw=part)
    plan.explicit_variables.update(v for v in variables if _NUMERIC_NAME_RE.match(v))

    if target.is_index_symbolic:
        if plan.recurrence is not None:
            warning = (
                f"Multiple recurrences: {plan.recurrence.raw!r} replaced by {part!r}"
            )
            logger.warning(warning)
            plan.warnings.append(warning)
        plan.recurrence = statement
    elif target.subscript_type == "number":
        plan.base_cases.append(statement)
        plan.explicit_variables.add(target.name)
    else:
        raise FormulaError(f"Assignment target needs a numeric or n/n+1 subscript: {lhs_raw}")


def _parse_constant(plan: IterativeFormula, part: str) -> None:
    token = parse_matrix_token(part)
    if token is None:
        raise FormulaError(f"Invalid matrix token: {part}")
    if token.subscript_type != "number":
        raise FormulaError("Standalone matrices must have numeric subscripts")
    plan.constants.append(Constant(token=token, raw=part))
    plan.explicit_variables.add(token.name)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def validate_formula(formula: str | None) -> Validation:
    plan = parse_formula(formula)
    if plan.error:
        return Validation(False, plan.error)
    if isinstance(plan, IterativeFormula):
        if not plan.base_cases and plan.recurrence is None:
            return Validation(False, "No matrices found in formula")
        return Validation(True)
    if not plan.variables:
        return Validation(False, "No matrices found in formula")
    return Validation(True)


def _statements(plan: IterativeFormula) -> list[Statement]:
    statements = list(plan.base_cases)
    if plan.recurrence is not None:
        statements.append(plan.recurrence)
    return statements


def all_references(plan: FormulaPlan) -> list[MatrixRef]:
    """Every matrix token of the plan in source order, transposes included."""
    if isinstance(plan, ParsedFormula):
        return list(plan.tokens)
    refs: list[MatrixRef] = []
    for statement in _statements(plan):
        refs.extend(statement.tokens)
    return refs


def get_base_matrices(plan: FormulaPlan) -> list[str]:
    """Sorted names of the paintable input matrices a plan reads."""
    if plan.error:
        return []
    if isinstance(plan, ParsedFormula):
        return sorted(plan.variables)
    targets = {s.target.name for s in plan.base_cases}
    names = set(plan.explicit_variables)
    for ref in all_references(plan):
        if not ref.is_index_symbolic:
            names.add(ref.name)
    return sorted(names - targets)


def output_conflict(plan: FormulaPlan, output_name: str) -> str | None:
    """Error text when *plan* reads or assigns the matrix results are copied into."""
    if plan.error:
        return None
    refs = list(all_references(plan))
    if isinstance(plan, IterativeFormula):
        refs.extend(s.target for s in _statements(plan))
    names = {ref.name for ref in refs if not ref.is_index_symbolic}
    if isinstance(plan, IterativeFormula):
        names.update(c.token.name for c in plan.constants)
    if output_name in names:
        return f"Formula cannot use the output matrix {output_name}"
    return None
