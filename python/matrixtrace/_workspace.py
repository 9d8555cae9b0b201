"""Workspace: paintable base matrices plus a formula, recomputed on demand.

The workspace owns one DependencyGraph.  Paint operations only change base
matrix cells; nothing is recomputed until ``recompute()`` is called.  Each
recompute rebuilds the graph, so node ids handed out before it are stale
afterwards.
"""

from __future__ import annotations

import json
import logging
import os
import random
from typing import Any

import numpy as np

from matrixtrace._document import (
    CellEntry,
    DocumentError,
    ImportResult,
    build_document,
    load_document,
)
from matrixtrace.calc._evaluator import MatrixEvaluator, check_formula_dimensions
from matrixtrace.calc._export import csr_data, matrix_view, values_array
from matrixtrace.calc._graph import DependencyGraph, Node
from matrixtrace.calc._parser import FormulaPlan, get_base_matrices, output_conflict, parse_formula
from matrixtrace.calc._protocol import (
    DEFAULT_OUTPUT,
    DEFAULT_SHAPE,
    MAX_DIMENSION,
    MAX_ITERATIONS,
    CSRData,
    RecomputeConfig,
    RecomputeResult,
    ShapeCheck,
    check_dimensions,
)

logger = logging.getLogger(__name__)

# with mirroring on, S_right is a read-only copy of S_left
MIRROR_SOURCE = "S_left"
MIRROR_TARGET = "S_right"


class Workspace:
    """A formula and the base matrices it reads.

    Usage::

        ws = Workspace("S*K*S", rows=3, cols=3)
        ws.paint("S", 0, 1, color="#E07A5F")
        ws.paint("K", 1, 1, color="#81B29A")
        result = ws.recompute()
        cell = ws.graph.get_element_at("O", 0, 0)
        ws.highlight(cell.id)
    """

    def __init__(
        self,
        formula: str = "",
        rows: int = DEFAULT_SHAPE[0],
        cols: int = DEFAULT_SHAPE[1],
        *,
        symmetric: bool = False,
        mirror: bool = False,
        iterations: int = 1,
        output_name: str = DEFAULT_OUTPUT,
        max_dimension: int = MAX_DIMENSION,
    ) -> None:
        check_dimensions(rows, cols, max_dimension)
        if iterations < 1 or iterations > MAX_ITERATIONS:
            raise ValueError(f"iterations must be between 1 and {MAX_ITERATIONS}, got {iterations}")
        self.graph = DependencyGraph()
        self._evaluator = MatrixEvaluator(self.graph)
        self.rows = rows
        self.cols = cols
        self.symmetric = symmetric
        self.mirror = mirror
        self.iterations = iterations
        self.output_name = output_name
        self.max_dimension = max_dimension
        # base matrix name -> (rows, cols)
        self.matrix_dimensions: dict[str, tuple[int, int]] = {}
        self.formula = ""
        self.plan: FormulaPlan = parse_formula("")
        self.last_result: RecomputeResult | None = None
        self.set_formula(formula)

    # ------------------------------------------------------------------
    # Formula and dimensions
    # ------------------------------------------------------------------

    def set_formula(self, formula: str) -> FormulaPlan:
        """Parse *formula* and make its base matrices the declared ones.

        New bases are created at the workspace dimensions; declared matrices
        the formula no longer reads are dropped.  A formula with a parse
        error, or one that uses the output matrix, is stored but changes
        nothing; ``recompute()`` reports the problem.
        """
        self.formula = formula
        self.plan = parse_formula(formula)
        if self.plan.error or output_conflict(self.plan, self.output_name):
            return self.plan
        bases = get_base_matrices(self.plan)
        for name in sorted(set(self.matrix_dimensions) - set(bases)):
            logger.debug("Dropping matrix %s, no longer in the formula", name)
            del self.matrix_dimensions[name]
        for name in bases:
            if name not in self.matrix_dimensions:
                self.declare_matrix(name)
        return self.plan

    @property
    def base_matrices(self) -> list[str]:
        return sorted(self.matrix_dimensions)

    def declare_matrix(self, name: str, rows: int | None = None, cols: int | None = None) -> None:
        """Create base matrix *name* (default: workspace dimensions) if it is new."""
        if name in self.matrix_dimensions:
            return
        rows = self.rows if rows is None else rows
        cols = self.cols if cols is None else cols
        check_dimensions(rows, cols, self.max_dimension)
        self.matrix_dimensions[name] = (rows, cols)
        if not self.graph.has_matrix(name):
            self.graph.init_matrix(name, rows, cols)

    def set_matrix_dimensions(self, name: str, rows: int, cols: int) -> None:
        """Resize base matrix *name*, keeping the cells that still fit."""
        check_dimensions(rows, cols, self.max_dimension)
        self.matrix_dimensions[name] = (rows, cols)
        snapshot = self.graph.snapshot(name)
        if snapshot is None:
            self.graph.init_matrix(name, rows, cols)
        elif (snapshot.rows, snapshot.cols) != (rows, cols):
            self.graph.restore(snapshot, rows, cols)

    # ------------------------------------------------------------------
    # Painting
    # ------------------------------------------------------------------

    def _node(self, name: str, row: int, col: int) -> Node:
        node = self.graph.get_element_at(name, row, col)
        if node is None:
            raise ValueError(f"No cell ({row}, {col}) in matrix {name!r}")
        return node

    def _symmetric_cells(self, name: str, row: int, col: int) -> list[tuple[int, int]]:
        cells = [(row, col)]
        shape = self.graph.shape(name)
        if self.symmetric and shape is not None and shape[0] == shape[1] and row != col:
            cells.append((col, row))
        return cells

    def _locked(self, name: str) -> bool:
        if self.mirror and name == MIRROR_TARGET:
            logger.debug("Ignoring edit of %s while it mirrors %s", name, MIRROR_SOURCE)
            return True
        return False

    def _write(
        self,
        name: str,
        row: int,
        col: int,
        value: int | float,
        color: str | None,
        identity: bool = False,
    ) -> None:
        self.graph.update_element(name, row, col, value, color, is_identity=identity)
        if self.mirror and name == MIRROR_SOURCE:
            self.graph.update_element(MIRROR_TARGET, row, col, value, color, is_identity=identity)

    def paint(
        self,
        name: str,
        row: int,
        col: int,
        value: int | float = 1,
        color: str | None = None,
        identity: bool = False,
    ) -> None:
        """Set a base cell; mirrored across the diagonal in symmetric mode.

        While mirroring, edits of S_left are copied to S_right and edits of
        S_right itself are ignored.
        """
        self._node(name, row, col)
        if self._locked(name):
            return
        for r, c in self._symmetric_cells(name, row, col):
            self._write(name, r, c, value, color, identity)

    def toggle(self, name: str, row: int, col: int, color: str | None = None) -> int | float:
        """Flip a cell between 0 and 1 and return its new value."""
        node = self._node(name, row, col)
        if self._locked(name):
            return node.value
        value = 0 if node.value else 1
        self.paint(name, row, col, value, color if value else None)
        return value

    def fill_diagonal(self, name: str, color: str | None = None, identity: bool = False) -> None:
        """Paint the main diagonal with 1s, optionally as identity cells."""
        shape = self.graph.shape(name)
        if shape is None:
            raise ValueError(f"Unknown matrix {name!r}")
        if self._locked(name):
            return
        for i in range(min(shape)):
            self._write(name, i, i, 1, color, identity)

    def clear_matrix(self, name: str) -> None:
        if self._locked(name):
            return
        names = [name, MIRROR_TARGET] if self.mirror and name == MIRROR_SOURCE else [name]
        for target in names:
            for node in self.graph.get_matrix_nodes(target):
                node.value = 0
                node.color = None
                node.is_identity = False

    def randomize(
        self,
        name: str,
        density: float,
        color: str | None = None,
        symmetric_pattern: bool = False,
        rng: random.Random | None = None,
    ) -> None:
        """Replace *name* with a random 0/1 pattern of the given density."""
        shape = self.graph.shape(name)
        if shape is None:
            raise ValueError(f"Unknown matrix {name!r}")
        if self._locked(name):
            return
        rng = rng if rng is not None else random.Random()
        self.clear_matrix(name)
        rows, cols = shape
        for i in range(rows):
            for j in range(cols):
                if symmetric_pattern and j < i:
                    continue
                if rng.random() < density:
                    self._write(name, i, j, 1, color)
                    if symmetric_pattern and i != j and j < rows and i < cols:
                        self._write(name, j, i, 1, color)

    def load_array(self, name: str, values: Any, color: str | None = None) -> None:
        """Replace *name* with a 2D array-like of values, resizing to fit."""
        array = np.asarray(values, dtype=float)
        if array.ndim != 2:
            raise ValueError(f"Expected a 2D array for {name!r}, got {array.ndim}D")
        if self._locked(name):
            return
        rows, cols = array.shape
        self.set_matrix_dimensions(name, rows, cols)
        for (i, j), value in np.ndenumerate(array):
            v = int(value) if float(value).is_integer() else float(value)
            self._write(name, i, j, v, color if v else None)

    # ------------------------------------------------------------------
    # Mirroring
    # ------------------------------------------------------------------

    def set_mirror(self, enabled: bool) -> None:
        """Turn S_left -> S_right mirroring on or off; turning it on syncs."""
        self.mirror = enabled
        if enabled:
            self.sync_mirror()

    def sync_mirror(self) -> None:
        """Copy every S_left cell onto the same position of S_right.

        Cells outside S_right are skipped, and S_right cells beyond S_left
        keep their values.
        """
        if not (self.graph.has_matrix(MIRROR_SOURCE) and self.graph.has_matrix(MIRROR_TARGET)):
            return
        for node in self.graph.get_matrix_nodes(MIRROR_SOURCE):
            self.graph.update_element(
                MIRROR_TARGET, node.row, node.col, node.value, node.color,
                is_identity=node.is_identity,
            )

    # ------------------------------------------------------------------
    # Recompute and queries
    # ------------------------------------------------------------------

    def config(self) -> RecomputeConfig:
        return RecomputeConfig(
            output_name=self.output_name,
            iterations=self.iterations,
            matrix_dimensions=dict(self.matrix_dimensions),
            default_shape=(self.rows, self.cols),
            max_dimension=self.max_dimension,
        )

    def recompute(self) -> RecomputeResult:
        """Run one full recompute cycle for the current formula."""
        self.last_result = self._evaluator.recompute(self.plan, self.config())
        return self.last_result

    def dimension_check(self) -> ShapeCheck:
        """Predicted output shape and dimension errors, without recomputing."""
        return check_formula_dimensions(self.plan, self.config())

    def highlight(self, element_id: str) -> set[str]:
        """Ids of *element_id* and everything it was derived from."""
        return self.graph.get_all_dependencies(element_id)

    def dependents(self, element_id: str) -> set[str]:
        """Ids of *element_id* and everything derived from it."""
        return self.graph.get_all_dependents(element_id)

    def csr(self, name: str) -> CSRData | None:
        return csr_data(self.graph, name)

    def view(self, name: str) -> list[list[dict[str, Any]]] | None:
        return matrix_view(self.graph, name)

    def to_array(self, name: str) -> np.ndarray | None:
        return values_array(self.graph, name)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_document(self) -> dict[str, Any]:
        """Current formula, configuration and painted base cells as a dict."""
        matrices: dict[str, list[CellEntry]] = {}
        for name in self.base_matrices:
            matrices[name] = [
                CellEntry(
                    row=node.row, col=node.col, value=node.value,
                    color=node.color, is_identity=node.is_identity,
                )
                for node in self.graph.get_matrix_nodes(name)
                if node.value
            ]
        doc = build_document(
            self.formula,
            (self.rows, self.cols),
            self.matrix_dimensions,
            matrices,
            symmetric=self.symmetric,
            mirror=self.mirror,
            iterations=self.iterations,
        )
        return doc.model_dump(by_alias=True)

    def import_document(self, data: dict[str, Any] | str) -> ImportResult:
        """Replace the workspace with a document's content.

        Either the whole document is applied and recomputed, or the
        workspace is left exactly as it was.
        """
        try:
            doc = load_document(data, self.max_dimension)
        except DocumentError as e:
            logger.warning("Import failed: %s", e)
            return ImportResult(ok=False, error=str(e))
        conflict = output_conflict(parse_formula(doc.formula), self.output_name)
        if conflict:
            logger.warning("Import failed: %s", conflict)
            return ImportResult(ok=False, error=f"Invalid formula {doc.formula!r}: {conflict}")

        staged = Workspace(
            rows=doc.dimensions.rows,
            cols=doc.dimensions.cols,
            symmetric=doc.configuration.symmetric,
            mirror=doc.configuration.mirror,
            iterations=doc.iterations,
            output_name=self.output_name,
            max_dimension=self.max_dimension,
        )
        for name, dims in doc.matrix_dimensions.items():
            staged.declare_matrix(name, dims.rows, dims.cols)
        for name, cells in doc.matrices.items():
            staged.declare_matrix(name, *doc.shape_of(name))
            for cell in cells:
                staged.graph.update_element(
                    name, cell.row, cell.col, cell.value, cell.color, is_identity=cell.is_identity,
                )
        staged.set_formula(doc.formula)
        staged.recompute()
        self._adopt(staged)
        logger.debug("Imported document with formula %r", doc.formula)
        return ImportResult(ok=True)

    def _adopt(self, other: Workspace) -> None:
        self.graph = other.graph
        self._evaluator = other._evaluator
        self.rows = other.rows
        self.cols = other.cols
        self.symmetric = other.symmetric
        self.mirror = other.mirror
        self.iterations = other.iterations
        self.matrix_dimensions = other.matrix_dimensions
        self.formula = other.formula
        self.plan = other.plan
        self.last_result = other.last_result

    def save(self, filename: str | os.PathLike[str]) -> None:
        """Write the export document to *filename* as JSON."""
        with open(filename, "w", encoding="utf-8") as f:
            json.dump(self.export_document(), f, indent=2)

    def __repr__(self) -> str:
        return f"<Workspace formula={self.formula!r} matrices={self.base_matrices}>"


def load_workspace(filename: str | os.PathLike[str], **kwargs: Any) -> Workspace:
    """Open a saved document as a new, recomputed Workspace.

    Raises DocumentError when the file does not hold a valid document.
    """
    with open(filename, encoding="utf-8") as f:
        text = f.read()
    ws = Workspace(**kwargs)
    result = ws.import_document(text)
    if not result.ok:
        raise DocumentError(result.error or "Invalid document")
    return ws
