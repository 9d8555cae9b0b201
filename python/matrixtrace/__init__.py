"""matrixtrace: matrix formulas whose every computed cell knows where it came from.

Usage::

    from matrixtrace import Workspace, load_workspace

    ws = Workspace("S_left*K*S_right", rows=3, cols=3)
    ws.paint("K", 0, 1, color="#81B29A")
    ws.fill_diagonal("S_left", color="#E07A5F", identity=True)
    ws.fill_diagonal("S_right", color="#3D405B", identity=True)
    ws.recompute()

    cell = ws.graph.get_element_at("O", 0, 1)
    print(cell.value, ws.highlight(cell.id))
    print(ws.csr("O"))

    ws.save("session.json")
    ws = load_workspace("session.json")
"""

from matrixtrace._document import DocumentError, ImportResult, load_document
from matrixtrace._workspace import Workspace, load_workspace
from matrixtrace.calc import (
    CSRData,
    DependencyGraph,
    DimensionMismatch,
    MatrixEvaluator,
    MissingMatrix,
    Node,
    RecomputeConfig,
    RecomputeResult,
    ShapeCheck,
    parse_formula,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CSRData",
    "DependencyGraph",
    "DimensionMismatch",
    "DocumentError",
    "ImportResult",
    "MatrixEvaluator",
    "MissingMatrix",
    "Node",
    "RecomputeConfig",
    "RecomputeResult",
    "ShapeCheck",
    "Workspace",
    "load_document",
    "load_workspace",
    "parse_formula",
]
