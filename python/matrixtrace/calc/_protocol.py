"""CalcEngine protocol, recompute configuration and result dataclasses."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
    from matrixtrace.calc._graph import DependencyGraph
    from matrixtrace.calc._parser import FormulaPlan

DEFAULT_SHAPE: tuple[int, int] = (5, 5)
MAX_DIMENSION = 50
MAX_ITERATIONS = 50
NEUTRAL_COLOR = "#000000"
DEFAULT_OUTPUT = "O"


def check_dimensions(rows: int, cols: int, max_dimension: int = MAX_DIMENSION) -> None:
    """Raise ValueError unless ``1 <= rows, cols <= max_dimension``."""
    for label, size in (("rows", rows), ("cols", cols)):
        if not isinstance(size, int) or isinstance(size, bool):
            raise ValueError(f"Matrix {label} must be an integer, got {size!r}")
        if size < 1 or size > max_dimension:
            raise ValueError(f"Matrix {label} must be between 1 and {max_dimension}, got {size}")


@dataclass(frozen=True)
class DimensionMismatch:
    """Two multiply operands whose inner dimensions disagree."""

    left: str
    right: str
    left_shape: tuple[int, int]
    right_shape: tuple[int, int]

    @property
    def message(self) -> str:
        lr, lc = self.left_shape
        rr, rc = self.right_shape
        return f"Cannot multiply {self.left} ({lr}x{lc}) with {self.right} ({rr}x{rc})"


@dataclass(frozen=True)
class MissingMatrix:
    """A formula referenced a matrix the graph does not hold."""

    name: str

    @property
    def message(self) -> str:
        return f"Unknown matrix: {self.name}"


CalcIssue = Union[DimensionMismatch, MissingMatrix]


@dataclass(frozen=True)
class RecomputeConfig:
    """Inputs of one recompute cycle besides the formula itself."""

    output_name: str = DEFAULT_OUTPUT
    iterations: int = 1
    # base matrix name -> (rows, cols)
    matrix_dimensions: Mapping[str, tuple[int, int]] = field(default_factory=dict)
    default_shape: tuple[int, int] = DEFAULT_SHAPE
    max_dimension: int = MAX_DIMENSION
    max_iterations: int = MAX_ITERATIONS

    def __post_init__(self) -> None:
        if self.iterations < 1 or self.iterations > self.max_iterations:
            raise ValueError(
                f"iterations must be between 1 and {self.max_iterations}, got {self.iterations}"
            )
        check_dimensions(*self.default_shape, max_dimension=self.max_dimension)
        for rows, cols in self.matrix_dimensions.values():
            check_dimensions(rows, cols, max_dimension=self.max_dimension)

    def shape_for(self, name: str, fallback: tuple[int, int] | None = None) -> tuple[int, int]:
        """Declared shape of *name*, else *fallback*, else the default shape."""
        if name in self.matrix_dimensions:
            rows, cols = self.matrix_dimensions[name]
            return (rows, cols)
        return fallback if fallback is not None else self.default_shape


@dataclass(frozen=True)
class RecomputeResult:
    """Outcome of one recompute cycle."""

    output_name: str | None = None
    shape: tuple[int, int] | None = None
    computed: tuple[str, ...] = ()  # matrices written, in order
    errors: tuple[CalcIssue, ...] = ()
    parse_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.parse_error is None and not self.errors

    @property
    def messages(self) -> list[str]:
        if self.parse_error is not None:
            return [self.parse_error]
        return [e.message for e in self.errors]


@dataclass(frozen=True)
class ShapeCheck:
    """Predicted output shape of a formula, computed from shapes alone."""

    shape: tuple[int, int] | None = None
    errors: tuple[CalcIssue, ...] = ()
    parse_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.parse_error is None and not self.errors

    @property
    def messages(self) -> list[str]:
        if self.parse_error is not None:
            return [self.parse_error]
        return [e.message for e in self.errors]


@dataclass(frozen=True)
class CSRMatrix:
    """Nonzero structure of a matrix in compressed sparse row layout."""

    row_offsets: list[int]
    col_indices: list[int]
    element_ids: list[str]


@dataclass(frozen=True)
class CSRData:
    """CSR structure plus per-cell colour lists for rendering."""

    row_offsets: list[int]
    col_indices: list[int]
    values: list[list[str]]
    element_ids: list[str]


@runtime_checkable
class CalcEngine(Protocol):
    """Protocol for dependency-tracking matrix engines."""

    graph: DependencyGraph

    def recompute(
        self,
        formula: str | FormulaPlan,
        config: RecomputeConfig | None = None,
    ) -> RecomputeResult:
        """Rebuild the graph from its base matrices and evaluate *formula*."""
        ...
