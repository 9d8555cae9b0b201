"""MatrixEvaluator: dependency-tracked evaluation of parsed matrix formulas.

Every leaf occurrence of a matrix in a formula is copied into its own
instance matrix (``S@0``, ``S@2``, ...) so that provenance can tell the
first ``S`` of ``S*K*S`` from the second.  Products go into anonymous
``_TEMP_<n>`` matrices and the final one is copied into the output matrix.

A recompute cycle always rebuilds the whole graph: base matrices are
snapshotted, the graph is cleared (resetting ids) and the bases restored
before evaluation, so the same inputs always produce the same ids, values
and edges.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Iterable

from matrixtrace.calc._graph import DependencyGraph, MatrixSnapshot
from matrixtrace.calc._parser import (
    NEXT_INDEX,
    Expr,
    FormulaPlan,
    IterativeFormula,
    MatrixRef,
    Multiply,
    ParsedFormula,
    format_expression,
    get_base_matrices,
    output_conflict,
    parse_formula,
)
from matrixtrace.calc._protocol import (
    CalcIssue,
    DimensionMismatch,
    MissingMatrix,
    RecomputeConfig,
    RecomputeResult,
    ShapeCheck,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Matrix operations
# ---------------------------------------------------------------------------


def multiply_matrices(
    graph: DependencyGraph,
    left_name: str,
    right_name: str,
    result_name: str,
    *,
    leaf_only: bool = False,
) -> CalcIssue | None:
    """``result = left * right`` with provenance wiring.

    Only pairs where both cells are nonzero contribute, to the value and to
    the dependencies.  Identity cells are transparent: an identity operand
    adds nothing, and identity times identity adds no edges at all.

    With *leaf_only*, an operand cell that was itself derived passes on its
    dependencies but not its own id, so chained products of named matrices
    depend only on painted cells.

    Returns the problem found, or None on success.  On a problem the result
    matrix is not touched.
    """
    left = graph.get_matrix_data(left_name)
    if left is None:
        return MissingMatrix(left_name)
    right = graph.get_matrix_data(right_name)
    if right is None:
        return MissingMatrix(right_name)

    left_rows, left_cols = len(left), len(left[0])
    right_rows, right_cols = len(right), len(right[0])
    if left_cols != right_rows:
        mismatch = DimensionMismatch(
            left_name, right_name, (left_rows, left_cols), (right_rows, right_cols),
        )
        logger.warning(mismatch.message)
        return mismatch

    if graph.shape(result_name) != (left_rows, right_cols):
        graph.init_matrix(result_name, left_rows, right_cols)
    else:
        graph.clear_matrix_dependencies(result_name)
    result = graph.get_matrix_data(result_name)
    assert result is not None

    for i in range(left_rows):
        for j in range(right_cols):
            cell = result[i][j]
            total: int | float = 0
            contributors: dict[str, None] = {}
            pairs = 0
            identity_pairs = 0

            for k in range(left_cols):
                a = left[i][k]
                b = right[k][j]
                if not a.value or not b.value:
                    continue
                total += a.value * b.value
                pairs += 1
                if a.is_identity and b.is_identity:
                    identity_pairs += 1
                    continue
                for operand in (a, b):
                    if operand.is_identity:
                        continue
                    if not (leaf_only and operand.dependencies):
                        contributors[operand.id] = None
                    contributors.update(dict.fromkeys(operand.dependencies))

            cell.value = total
            cell.is_identity = pairs > 0 and pairs == identity_pairs and total == 1
            for dep_id in contributors:
                graph.add_dependency(cell.id, dep_id)

    return None


def transpose_matrix(graph: DependencyGraph, name: str) -> str | None:
    """Write the transpose of *name* into ``<name>_T`` and return that name.

    Each transposed cell depends on its source cell and on everything the
    source depends on.
    """
    source = graph.get_matrix_data(name)
    if source is None:
        return None
    rows, cols = len(source), len(source[0])
    transposed_name = f"{name}_T"

    if graph.shape(transposed_name) != (cols, rows):
        graph.init_matrix(transposed_name, cols, rows)
    else:
        graph.clear_matrix_dependencies(transposed_name)
    transposed = graph.get_matrix_data(transposed_name)
    assert transposed is not None

    for i in range(rows):
        for j in range(cols):
            src = source[i][j]
            dst = transposed[j][i]
            dst.value = src.value
            dst.color = src.color
            dst.is_identity = src.is_identity
            graph.add_dependency(dst.id, src.id)
            for dep_id in src.dependencies:
                graph.add_dependency(dst.id, dep_id)

    return transposed_name


def instantiate_matrix(graph: DependencyGraph, source_name: str, instance_name: str) -> str | None:
    """Fresh copy of *source_name* for one formula occurrence.

    Instance cells depend on their source cell and inherit its dependencies.
    """
    source = graph.get_matrix_data(source_name)
    if source is None:
        return None
    graph.init_matrix(instance_name, len(source), len(source[0]))
    instance = graph.get_matrix_data(instance_name)
    assert instance is not None
    for src_row, dst_row in zip(source, instance):
        for src, dst in zip(src_row, dst_row):
            dst.value = src.value
            dst.color = src.color
            dst.color_index = src.color_index
            dst.is_identity = src.is_identity
            graph.add_dependency(dst.id, src.id)
            for dep_id in src.dependencies:
                graph.add_dependency(dst.id, dep_id)
    logger.debug("Instantiated %s from %s", instance_name, source_name)
    return instance_name


def copy_matrix(graph: DependencyGraph, source_name: str, target_name: str) -> bool:
    """Copy values, colours and dependency lists of *source_name* into *target_name*.

    The target is resized when its shape differs.
    """
    source = graph.get_matrix_data(source_name)
    if source is None:
        return False
    shape = (len(source), len(source[0]))
    if graph.shape(target_name) != shape:
        graph.init_matrix(target_name, *shape)
    else:
        graph.clear_matrix_dependencies(target_name)
    target = graph.get_matrix_data(target_name)
    assert target is not None
    for src_row, dst_row in zip(source, target):
        for src, dst in zip(src_row, dst_row):
            dst.value = src.value
            dst.color = src.color
            dst.color_index = src.color_index
            dst.is_identity = src.is_identity
            for dep_id in src.dependencies:
                graph.add_dependency(dst.id, dep_id)
    return True


# ---------------------------------------------------------------------------
# Expression evaluation
# ---------------------------------------------------------------------------


def _family_indices(names: Iterable[str], base_name: str) -> list[int]:
    pattern = re.compile(rf"^{re.escape(base_name)}_(\d+)$")
    indices = []
    for name in names:
        m = pattern.match(name)
        if m:
            indices.append(int(m.group(1)))
    return sorted(indices)


def known_indices(graph: DependencyGraph, base_name: str) -> list[int]:
    """Sorted concrete indices ``i`` for which ``<base_name>_<i>`` exists."""
    return _family_indices(graph.matrices, base_name)


def _resolve(ast: Expr | None, n: int, names: Collection[str]) -> Expr | None:
    if ast is None:
        return None
    if isinstance(ast, Multiply):
        return Multiply(_resolve(ast.left, n, names), _resolve(ast.right, n, names))
    if not ast.is_index_symbolic:
        return ast
    index = n + 1 if ast.subscript == NEXT_INDEX else n
    available = _family_indices(names, ast.base_name)
    if not available:
        return ast
    return ast.with_index(min(index, available[-1]))


def resolve_expression(graph: DependencyGraph, ast: Expr | None, n: int) -> Expr | None:
    """Replace ``_n`` / ``_{n+1}`` subscripts with concrete indices.

    A resolved index beyond the highest existing instance is clamped to it.
    Tokens of a family with no concrete instance are left unresolved.
    """
    return _resolve(ast, n, graph.matrices)


def _evaluate(
    graph: DependencyGraph,
    ast: Expr,
    occurrence: int,
    errors: list[CalcIssue],
) -> tuple[str | None, int]:
    """Evaluate *ast*; returns the result matrix name and the next occurrence index."""
    if isinstance(ast, MatrixRef):
        instance = instantiate_matrix(graph, ast.name, f"{ast.name}@{occurrence}")
        if instance is None:
            logger.warning("Unknown matrix: %s", ast.name)
            errors.append(MissingMatrix(ast.name))
            return None, occurrence + 1
        if ast.transpose:
            instance = transpose_matrix(graph, instance)
        return instance, occurrence + 1

    left, occurrence = _evaluate(graph, ast.left, occurrence, errors)
    right, occurrence = _evaluate(graph, ast.right, occurrence, errors)
    if left is None or right is None:
        return None, occurrence

    name = graph.next_intermediate_name()
    problem = multiply_matrices(graph, left, right, name)
    if problem is not None:
        errors.append(problem)
        return None, occurrence
    graph.intermediate_descriptions[name] = format_expression(ast)
    return name, occurrence


def evaluate_formula(
    graph: DependencyGraph,
    ast: Expr | None,
    errors: list[CalcIssue] | None = None,
    occurrence: int = 0,
) -> str | None:
    """Evaluate *ast* against *graph* and return the result matrix name.

    Problems are appended to *errors* when given.  Returns None when
    nothing could be computed.
    """
    if ast is None:
        return None
    name, _ = _evaluate(graph, ast, occurrence, errors if errors is not None else [])
    return name


# ---------------------------------------------------------------------------
# Shape checking
# ---------------------------------------------------------------------------


def _expr_shape(
    ast: Expr,
    shapes: dict[str, tuple[int, int]],
    errors: list[CalcIssue],
) -> tuple[int, int] | None:
    if isinstance(ast, MatrixRef):
        shape = shapes.get(ast.name)
        if shape is None:
            errors.append(MissingMatrix(ast.name))
            return None
        return (shape[1], shape[0]) if ast.transpose else shape

    left = _expr_shape(ast.left, shapes, errors)
    right = _expr_shape(ast.right, shapes, errors)
    if left is None or right is None:
        return None
    if left[1] != right[0]:
        errors.append(
            DimensionMismatch(format_expression(ast.left), format_expression(ast.right), left, right)
        )
        return None
    return (left[0], right[1])


def check_formula_dimensions(
    formula: str | FormulaPlan,
    config: RecomputeConfig | None = None,
) -> ShapeCheck:
    """Predict the output shape of *formula* without building any cells.

    Base matrix shapes come from ``config.matrix_dimensions`` (falling back
    to ``config.default_shape``).  Iterative formulas are followed for
    ``config.iterations`` recurrence steps, stopping at the first failure
    just like a recompute does.
    """
    plan = parse_formula(formula) if isinstance(formula, str) else formula
    config = config if config is not None else RecomputeConfig()
    if plan.error:
        return ShapeCheck(parse_error=plan.error)
    conflict = output_conflict(plan, config.output_name)
    if conflict:
        return ShapeCheck(parse_error=conflict)

    shapes = {name: config.shape_for(name) for name in get_base_matrices(plan)}
    errors: list[CalcIssue] = []
    if isinstance(plan, ParsedFormula):
        shape = _expr_shape(plan.ast, shapes, errors) if plan.ast is not None else None
        return ShapeCheck(shape=shape, errors=tuple(errors))

    last: tuple[int, int] | None = None
    for case in plan.base_cases:
        ast = _resolve(case.ast, 0, shapes)
        if ast is None:
            continue
        shape = _expr_shape(ast, shapes, errors)
        if shape is not None:
            shapes[case.target.name] = shape
            last = shape

    recurrence = plan.recurrence
    if recurrence is not None and recurrence.ast is not None:
        base = recurrence.target.base_name
        offset = 1 if recurrence.target.subscript == NEXT_INDEX else 0
        indices = _family_indices(shapes, base)
        current = indices[-1] if indices else -1
        for _ in range(config.iterations):
            target_index = current + 1
            ast = _resolve(recurrence.ast, target_index - offset, shapes)
            assert ast is not None
            shape = _expr_shape(ast, shapes, errors)
            if shape is None:
                break
            shapes[f"{base}_{target_index}"] = shape
            last = shape
            current = target_index

    return ShapeCheck(shape=last, errors=tuple(errors))


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class MatrixEvaluator:
    """Runs recompute cycles for a formula against a DependencyGraph.

    Usage::

        evaluator = MatrixEvaluator()
        evaluator.graph.init_matrix("A", 2, 2)
        evaluator.graph.update_element("A", 0, 0, 1, "#f00")
        result = evaluator.recompute("A*A^T")
        result.ok, evaluator.graph.get_matrix_data("O")
    """

    def __init__(self, graph: DependencyGraph | None = None) -> None:
        self.graph = graph if graph is not None else DependencyGraph()

    def recompute(
        self,
        formula: str | FormulaPlan,
        config: RecomputeConfig | None = None,
    ) -> RecomputeResult:
        """Rebuild the graph from its base matrices and evaluate *formula*.

        A plan that failed to parse, or that uses the output matrix as an
        operand or target, is reported without touching the graph.
        """
        plan = parse_formula(formula) if isinstance(formula, str) else formula
        config = config if config is not None else RecomputeConfig()
        if plan.error:
            logger.debug("Skipping recompute, parse error: %s", plan.error)
            return RecomputeResult(parse_error=plan.error)
        conflict = output_conflict(plan, config.output_name)
        if conflict:
            logger.warning("Skipping recompute: %s", conflict)
            return RecomputeResult(parse_error=conflict)

        if isinstance(plan, IterativeFormula):
            return self._recompute_iterative(plan, config)
        return self._recompute_simple(plan, config)

    # ------------------------------------------------------------------
    # Cycle helpers
    # ------------------------------------------------------------------

    def _rebuild(self, names: set[str], config: RecomputeConfig) -> None:
        """Clear the graph, keeping only the painted state of *names*."""
        snapshots: dict[str, MatrixSnapshot] = {}
        for name in names:
            snap = self.graph.snapshot(name)
            if snap is not None:
                snapshots[name] = snap

        self.graph.clear()
        for name in sorted(names):
            snap = snapshots.get(name)
            rows, cols = config.shape_for(name, (snap.rows, snap.cols) if snap else None)
            if snap is None:
                self.graph.init_matrix(name, rows, cols)
            else:
                self.graph.restore(snap, rows, cols)
        logger.debug("Rebuilt graph with base matrices %s", sorted(names))

    def _base_names(self, plan: FormulaPlan, config: RecomputeConfig) -> set[str]:
        bases = get_base_matrices(plan)
        names = set(config.matrix_dimensions)
        names.discard(config.output_name)
        if isinstance(plan, IterativeFormula):
            # sequence members are recomputed every cycle, never restored
            names.difference_update(s.target.name for s in plan.base_cases)
            families = {s.target.base_name for s in plan.base_cases}
            if plan.recurrence is not None:
                families.add(plan.recurrence.target.base_name)
            for family in families:
                names.difference_update(f"{family}_{i}" for i in _family_indices(names, family))
        names.update(bases)
        return names

    def _finish(
        self,
        config: RecomputeConfig,
        computed: list[str],
        errors: list[CalcIssue],
    ) -> RecomputeResult:
        output = config.output_name if self.graph.has_matrix(config.output_name) else None
        return RecomputeResult(
            output_name=output,
            shape=self.graph.shape(output) if output else None,
            computed=tuple(computed),
            errors=tuple(errors),
        )

    # ------------------------------------------------------------------
    # Simple formulas
    # ------------------------------------------------------------------

    def _recompute_simple(self, plan: ParsedFormula, config: RecomputeConfig) -> RecomputeResult:
        previous_shape = self.graph.shape(config.output_name)
        self._rebuild(self._base_names(plan, config), config)

        errors: list[CalcIssue] = []
        computed: list[str] = []
        result = evaluate_formula(self.graph, plan.ast, errors)
        if result is not None:
            copy_matrix(self.graph, result, config.output_name)
            computed.append(config.output_name)
        elif previous_shape is not None and not self.graph.has_matrix(config.output_name):
            self.graph.init_matrix(config.output_name, *previous_shape)

        logger.debug("Recomputed %r: %d error(s)", plan.raw, len(errors))
        return self._finish(config, computed, errors)

    # ------------------------------------------------------------------
    # Iterative formulas
    # ------------------------------------------------------------------

    def _recompute_iterative(self, plan: IterativeFormula, config: RecomputeConfig) -> RecomputeResult:
        previous_shape = self.graph.shape(config.output_name)
        self._rebuild(self._base_names(plan, config), config)

        errors: list[CalcIssue] = []
        computed: list[str] = []
        occurrence = 0

        for case in plan.base_cases:
            ast = resolve_expression(self.graph, case.ast, 0)
            if ast is None:
                continue
            result, occurrence = _evaluate(self.graph, ast, occurrence, errors)
            if result is not None:
                copy_matrix(self.graph, result, case.target.name)
                computed.append(case.target.name)

        recurrence = plan.recurrence
        if recurrence is not None and recurrence.ast is not None:
            base = recurrence.target.base_name
            offset = 1 if recurrence.target.subscript == NEXT_INDEX else 0
            indices = known_indices(self.graph, base)
            current = indices[-1] if indices else -1
            for _ in range(config.iterations):
                target_index = current + 1
                ast = resolve_expression(self.graph, recurrence.ast, target_index - offset)
                assert ast is not None
                result, occurrence = _evaluate(self.graph, ast, occurrence, errors)
                if result is None:
                    logger.warning("Recurrence stopped before %s_%d", base, target_index)
                    break
                target = f"{base}_{target_index}"
                copy_matrix(self.graph, result, target)
                computed.append(target)
                current = target_index

        if computed:
            copy_matrix(self.graph, computed[-1], config.output_name)
        elif previous_shape is not None and not self.graph.has_matrix(config.output_name):
            self.graph.init_matrix(config.output_name, *previous_shape)

        logger.debug("Recomputed %r: %s, %d error(s)", plan.raw, computed, len(errors))
        return self._finish(config, computed, errors)
