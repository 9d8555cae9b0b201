"""Versioned export documents: schema, migrations and validation.

Documents hold only painted base matrices (nonzero cells).  Computed
matrices are never stored; they are rederived by a recompute after import.

Versions::

    1  fixed S_left / K / S_right layout, formula implied, K sized cols x rows
    2  adds ``formula``; every base matrix is sized by ``dimensions``
    3  adds ``matrixDimensions``, ``iterations`` and per-cell ``isIdentity``
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from matrixtrace.calc._parser import parse_formula
from matrixtrace.calc._protocol import MAX_DIMENSION, MAX_ITERATIONS

logger = logging.getLogger(__name__)

CURRENT_VERSION = 3

V1_FORMULA = "S_left*K*S_right"
V1_MATRICES = ("S_left", "K", "S_right")


class DocumentError(ValueError):
    """A document that cannot be imported."""


@dataclass(frozen=True)
class ImportResult:
    ok: bool
    error: str | None = None


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class CellEntry(BaseModel):
    """One painted cell"""
    model_config = ConfigDict(populate_by_name=True)

    row: int = Field(ge=0)
    col: int = Field(ge=0)
    value: Union[int, float]
    color: Optional[str] = None
    is_identity: bool = Field(default=False, alias="isIdentity")


class Dimensions(BaseModel):
    rows: int = Field(ge=1)
    cols: int = Field(ge=1)


class Configuration(BaseModel):
    """Paint configuration; unknown keys are ignored"""
    model_config = ConfigDict(extra="ignore")

    symmetric: bool = False
    mirror: bool = False  # S_right follows S_left


class _DocumentBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: Optional[str] = None
    dimensions: Dimensions
    configuration: Configuration = Field(default_factory=Configuration)
    matrices: dict[str, list[CellEntry]]


class DocumentV1(_DocumentBase):
    version: Literal[1]


class DocumentV2(_DocumentBase):
    version: Literal[2]
    formula: str


class DocumentV3(_DocumentBase):
    version: Literal[3]
    formula: str
    iterations: int = Field(default=1, ge=1)
    matrix_dimensions: dict[str, Dimensions] = Field(default_factory=dict, alias="matrixDimensions")

    def shape_of(self, name: str) -> tuple[int, int]:
        dims = self.matrix_dimensions.get(name, self.dimensions)
        return (dims.rows, dims.cols)


_SCHEMAS: dict[int, type[_DocumentBase]] = {
    1: DocumentV1,
    2: DocumentV2,
    3: DocumentV3,
}


# ---------------------------------------------------------------------------
# Migrations (each old version straight to the current one)
# ---------------------------------------------------------------------------


def migrate_v1(doc: DocumentV1) -> DocumentV3:
    rows, cols = doc.dimensions.rows, doc.dimensions.cols
    return DocumentV3(
        version=3,
        timestamp=doc.timestamp,
        dimensions=doc.dimensions,
        configuration=doc.configuration,
        formula=V1_FORMULA,
        # v1 also stored the computed KS and O matrices; they are dropped
        matrices={name: list(doc.matrices.get(name, [])) for name in V1_MATRICES},
        matrix_dimensions={
            "S_left": Dimensions(rows=rows, cols=cols),
            "K": Dimensions(rows=cols, cols=rows),
            "S_right": Dimensions(rows=rows, cols=cols),
        },
    )


def migrate_v2(doc: DocumentV2) -> DocumentV3:
    return DocumentV3(
        version=3,
        timestamp=doc.timestamp,
        dimensions=doc.dimensions,
        configuration=doc.configuration,
        formula=doc.formula,
        matrices=dict(doc.matrices),
        matrix_dimensions={name: doc.dimensions for name in doc.matrices},
    )


_MIGRATIONS: dict[int, Callable[[Any], DocumentV3]] = {
    1: migrate_v1,
    2: migrate_v2,
}


# ---------------------------------------------------------------------------
# Loading and building
# ---------------------------------------------------------------------------


def load_document(data: Mapping[str, Any] | str, max_dimension: int = MAX_DIMENSION) -> DocumentV3:
    """Parse, migrate and validate a document.

    Raises DocumentError; nothing outside the returned model is touched.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise DocumentError(f"Invalid JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise DocumentError("Document must be a JSON object")

    version = data.get("version")
    if version is None:
        raise DocumentError("Missing required field: version")
    schema = _SCHEMAS.get(version) if type(version) is int else None
    if schema is None:
        raise DocumentError(f"Unsupported document version: {version!r}")

    try:
        doc = schema.model_validate(data)
    except ValidationError as e:
        raise DocumentError(f"Invalid version {version} document: {e}") from e

    if version != CURRENT_VERSION:
        logger.debug("Migrating document from version %s", version)
        doc = _MIGRATIONS[version](doc)
    assert isinstance(doc, DocumentV3)

    _check(doc, max_dimension)
    return doc


def _check(doc: DocumentV3, max_dimension: int) -> None:
    plan = parse_formula(doc.formula)
    if plan.error:
        raise DocumentError(f"Invalid formula {doc.formula!r}: {plan.error}")
    if doc.iterations > MAX_ITERATIONS:
        raise DocumentError(f"iterations must be at most {MAX_ITERATIONS}, got {doc.iterations}")

    names = {"<dimensions>": doc.dimensions, **doc.matrix_dimensions}
    for name, dims in names.items():
        if dims.rows > max_dimension or dims.cols > max_dimension:
            raise DocumentError(
                f"{name} is {dims.rows}x{dims.cols}, above the {max_dimension} limit"
            )

    for name, cells in doc.matrices.items():
        rows, cols = doc.shape_of(name)
        for cell in cells:
            if cell.row >= rows or cell.col >= cols:
                raise DocumentError(
                    f"Cell ({cell.row}, {cell.col}) is outside {name} ({rows}x{cols})"
                )


def build_document(
    formula: str,
    dimensions: tuple[int, int],
    matrix_dimensions: Mapping[str, tuple[int, int]],
    matrices: Mapping[str, list[CellEntry]],
    symmetric: bool = False,
    mirror: bool = False,
    iterations: int = 1,
) -> DocumentV3:
    return DocumentV3(
        version=CURRENT_VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dimensions=Dimensions(rows=dimensions[0], cols=dimensions[1]),
        configuration=Configuration(symmetric=symmetric, mirror=mirror),
        formula=formula,
        iterations=iterations,
        matrices=dict(matrices),
        matrix_dimensions={
            name: Dimensions(rows=rows, cols=cols) for name, (rows, cols) in matrix_dimensions.items()
        },
    )
