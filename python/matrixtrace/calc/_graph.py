"""Dependency graph of matrix cells with bidirectional provenance edges."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from matrixtrace.calc._protocol import CSRMatrix


class IdGenerator:
    """Mints element ids ``elem_0``, ``elem_1``, ... for one graph."""

    __slots__ = ("prefix", "_next")

    def __init__(self, prefix: str = "elem") -> None:
        self.prefix = prefix
        self._next = 0

    def __call__(self) -> str:
        ident = f"{self.prefix}_{self._next}"
        self._next += 1
        return ident

    def reset(self) -> None:
        self._next = 0


class Node:
    """A single matrix cell.

    ``dependencies`` and ``dependents`` are insertion-ordered sets (dict keys)
    and must only be changed through :class:`DependencyGraph`, which keeps the
    two directions symmetric.
    """

    __slots__ = (
        "id", "matrix_name", "row", "col", "value", "color", "color_index",
        "is_identity", "dependencies", "dependents",
    )

    def __init__(
        self,
        id: str,
        matrix_name: str,
        row: int,
        col: int,
        value: int | float = 0,
        color: str | None = None,
    ) -> None:
        self.id = id
        self.matrix_name = matrix_name
        self.row = row
        self.col = col
        self.value = value
        self.color = color
        self.color_index: int | None = None
        self.is_identity = False
        # id -> None, used as an ordered set
        self.dependencies: dict[str, None] = {}
        self.dependents: dict[str, None] = {}

    def __repr__(self) -> str:
        return (
            f"Node({self.id!r}, {self.matrix_name}[{self.row}][{self.col}], "
            f"value={self.value!r}, deps={len(self.dependencies)})"
        )


@dataclass(frozen=True)
class MatrixSnapshot:
    """Painted state of a matrix, detached from node ids."""

    name: str
    rows: int
    cols: int
    # (row, col, value, color, color_index, is_identity)
    cells: tuple[tuple[int, int, int | float, str | None, int | None, bool], ...]


class DependencyGraph:
    """Owns every matrix cell and the provenance edges between them.

    ``matrices`` maps a matrix name to a grid of node ids (rows outer).
    Re-initializing a matrix orphans its old nodes; they stay in ``nodes``
    so edges that still point at them remain resolvable.
    """

    __slots__ = ("nodes", "matrices", "intermediate_counter", "intermediate_descriptions", "_ids")

    def __init__(self, ids: IdGenerator | None = None) -> None:
        self.nodes: dict[str, Node] = {}
        self.matrices: dict[str, list[list[str]]] = {}
        self.intermediate_counter = 0
        # intermediate matrix name -> formula fragment it holds
        self.intermediate_descriptions: dict[str, str] = {}
        self._ids = ids if ids is not None else IdGenerator()

    # ------------------------------------------------------------------
    # Nodes and matrices
    # ------------------------------------------------------------------

    def add_node(self, node: Node) -> None:
        self.nodes[node.id] = node

    def get_node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def has_matrix(self, name: str) -> bool:
        return name in self.matrices

    def shape(self, name: str) -> tuple[int, int] | None:
        grid = self.matrices.get(name)
        if grid is None:
            return None
        return (len(grid), len(grid[0]))

    def init_matrix(self, name: str, rows: int, cols: int) -> None:
        """Allocate a fresh ``rows x cols`` grid of zero-valued nodes under *name*."""
        if rows < 1 or cols < 1:
            raise ValueError(f"Invalid dimensions for {name}: {rows}x{cols}")
        grid: list[list[str]] = []
        for i in range(rows):
            row_ids: list[str] = []
            for j in range(cols):
                node = Node(self._ids(), name, i, j)
                self.add_node(node)
                row_ids.append(node.id)
            grid.append(row_ids)
        self.matrices[name] = grid

    def get_element_at(self, name: str, row: int, col: int) -> Node | None:
        grid = self.matrices.get(name)
        if grid is None:
            return None
        if row < 0 or row >= len(grid) or col < 0 or col >= len(grid[row]):
            return None
        return self.nodes.get(grid[row][col])

    def get_matrix_nodes(self, name: str) -> list[Node]:
        """Nodes currently placed in *name*, row-major."""
        grid = self.matrices.get(name)
        if grid is None:
            return []
        return [self.nodes[node_id] for row in grid for node_id in row]

    def get_matrix_data(self, name: str) -> list[list[Node]] | None:
        grid = self.matrices.get(name)
        if grid is None:
            return None
        return [[self.nodes[node_id] for node_id in row] for row in grid]

    def update_element(
        self,
        name: str,
        row: int,
        col: int,
        value: int | float,
        color: str | None,
        is_identity: bool | None = None,
        color_index: int | None = None,
    ) -> bool:
        """Set value/colour (and optionally identity flag) in place.

        Returns False when the cell does not exist.
        """
        node = self.get_element_at(name, row, col)
        if node is None:
            return False
        node.value = value
        node.color = color
        if is_identity is not None:
            node.is_identity = is_identity
        if color_index is not None:
            node.color_index = color_index
        return True

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_dependency(self, target_id: str, source_id: str) -> None:
        """Record that *target_id* was derived from *source_id*."""
        target = self.nodes.get(target_id)
        source = self.nodes.get(source_id)
        if target is None or source is None:
            return
        target.dependencies[source_id] = None
        source.dependents[target_id] = None

    def clear_matrix_dependencies(self, name: str) -> None:
        """Drop the incoming edges of every node placed in *name*."""
        for node in self.get_matrix_nodes(name):
            for source_id in node.dependencies:
                source = self.nodes.get(source_id)
                if source is not None:
                    source.dependents.pop(node.id, None)
            node.dependencies.clear()

    def get_direct_dependencies(self, node_id: str) -> list[str]:
        node = self.nodes.get(node_id)
        return list(node.dependencies) if node is not None else []

    def get_all_dependencies(self, node_id: str) -> set[str]:
        """Reflexive transitive closure over ``dependencies``."""
        return self._closure(node_id, dependents=False)

    def get_all_dependents(self, node_id: str) -> set[str]:
        """Reflexive transitive closure over ``dependents``."""
        return self._closure(node_id, dependents=True)

    def _closure(self, node_id: str, dependents: bool) -> set[str]:
        if node_id not in self.nodes:
            return set()
        visited: set[str] = {node_id}
        queue: deque[str] = deque([node_id])
        while queue:
            node = self.nodes.get(queue.popleft())
            if node is None:
                continue
            edges = node.dependents if dependents else node.dependencies
            for other in edges:
                if other not in visited and other in self.nodes:
                    visited.add(other)
                    queue.append(other)
        return visited

    # ------------------------------------------------------------------
    # Snapshots, CSR, lifecycle
    # ------------------------------------------------------------------

    def snapshot(self, name: str) -> MatrixSnapshot | None:
        """Capture values, colours and identity flags of *name*."""
        data = self.get_matrix_data(name)
        if data is None:
            return None
        cells = tuple(
            (n.row, n.col, n.value, n.color, n.color_index, n.is_identity)
            for row in data
            for n in row
        )
        return MatrixSnapshot(name=name, rows=len(data), cols=len(data[0]), cells=cells)

    def restore(
        self,
        snapshot: MatrixSnapshot,
        rows: int | None = None,
        cols: int | None = None,
    ) -> None:
        """Re-initialize the snapshot's matrix and copy back in-bounds cells."""
        rows = snapshot.rows if rows is None else rows
        cols = snapshot.cols if cols is None else cols
        self.init_matrix(snapshot.name, rows, cols)
        for row, col, value, color, color_index, is_identity in snapshot.cells:
            if row < rows and col < cols:
                self.update_element(
                    snapshot.name, row, col, value, color,
                    is_identity=is_identity, color_index=color_index,
                )

    def get_csr_with_ids(self, name: str) -> CSRMatrix | None:
        """CSR layout of the nonzero (truthy-valued) cells of *name*."""
        data = self.get_matrix_data(name)
        if data is None:
            return None
        row_offsets = [0]
        col_indices: list[int] = []
        element_ids: list[str] = []
        for row in data:
            for j, node in enumerate(row):
                if node.value:
                    col_indices.append(j)
                    element_ids.append(node.id)
            row_offsets.append(len(col_indices))
        return CSRMatrix(row_offsets=row_offsets, col_indices=col_indices, element_ids=element_ids)

    def next_intermediate_name(self) -> str:
        self.intermediate_counter += 1
        return f"_TEMP_{self.intermediate_counter}"

    def clear(self) -> None:
        """Discard all nodes and matrices and reset id generation."""
        self.nodes.clear()
        self.matrices.clear()
        self.intermediate_counter = 0
        self.intermediate_descriptions.clear()
        self._ids.reset()
