"""Read-only projections of graph matrices for renderers and numeric tools."""

from __future__ import annotations

from typing import Any

import numpy as np

from matrixtrace.calc._graph import DependencyGraph
from matrixtrace.calc._protocol import NEUTRAL_COLOR, CSRData


def csr_data(graph: DependencyGraph, name: str) -> CSRData | None:
    """CSR structure of *name* with a colour list per nonzero cell.

    A cell's list is its own colour (if any) followed by the colour of each
    direct dependency.  Missing colours become ``NEUTRAL_COLOR``.
    """
    csr = graph.get_csr_with_ids(name)
    if csr is None:
        return None

    values: list[list[str]] = []
    for element_id in csr.element_ids:
        node = graph.nodes[element_id]
        colors = []
        for dep_id in node.dependencies:
            dep = graph.get_node(dep_id)
            colors.append(dep.color if dep is not None and dep.color else NEUTRAL_COLOR)
        if node.color:
            values.append([node.color, *colors])
        else:
            values.append(colors or [NEUTRAL_COLOR])

    return CSRData(
        row_offsets=list(csr.row_offsets),
        col_indices=list(csr.col_indices),
        values=values,
        element_ids=list(csr.element_ids),
    )


def matrix_view(graph: DependencyGraph, name: str) -> list[list[dict[str, Any]]] | None:
    """Plain 2D table of cell dicts (``id``, ``value``, ``color``, ``is_identity``, ``dependency_ids``)."""
    data = graph.get_matrix_data(name)
    if data is None:
        return None
    return [
        [
            {
                "id": node.id,
                "value": node.value,
                "color": node.color,
                "is_identity": node.is_identity,
                "dependency_ids": list(node.dependencies),
            }
            for node in row
        ]
        for row in data
    ]


def values_array(graph: DependencyGraph, name: str) -> np.ndarray | None:
    """Cell values of *name* as a 2D float array."""
    data = graph.get_matrix_data(name)
    if data is None:
        return None
    return np.array([[node.value for node in row] for row in data], dtype=float)
