"""matrixtrace.calc - Dependency-tracked matrix formula engine."""

from matrixtrace.calc._evaluator import (
    MatrixEvaluator,
    check_formula_dimensions,
    evaluate_formula,
    multiply_matrices,
    transpose_matrix,
)
from matrixtrace.calc._export import csr_data, matrix_view, values_array
from matrixtrace.calc._graph import DependencyGraph, IdGenerator, Node
from matrixtrace.calc._parser import (
    IterativeFormula,
    MatrixRef,
    Multiply,
    ParsedFormula,
    all_references,
    get_base_matrices,
    output_conflict,
    parse_formula,
    validate_formula,
)
from matrixtrace.calc._protocol import (
    CalcEngine,
    CSRData,
    CSRMatrix,
    DimensionMismatch,
    MissingMatrix,
    RecomputeConfig,
    RecomputeResult,
    ShapeCheck,
)

__all__ = [
    "CSRData",
    "CSRMatrix",
    "CalcEngine",
    "DependencyGraph",
    "DimensionMismatch",
    "IdGenerator",
    "IterativeFormula",
    "MatrixEvaluator",
    "MatrixRef",
    "MissingMatrix",
    "Multiply",
    "Node",
    "ParsedFormula",
    "RecomputeConfig",
    "RecomputeResult",
    "ShapeCheck",
    "all_references",
    "check_formula_dimensions",
    "csr_data",
    "evaluate_formula",
    "get_base_matrices",
    "matrix_view",
    "multiply_matrices",
    "output_conflict",
    "parse_formula",
    "transpose_matrix",
    "validate_formula",
    "values_array",
]
