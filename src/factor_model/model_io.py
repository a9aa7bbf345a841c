"""Plain-text framing for model files: a typed header, scalars, vectors and matrices.

Layout conventions:

- first line: ``<ModelType> <version>``
- scalar: one line, shortest round-trip decimal text
- vector: a line with its length, then one line of space-separated values
- matrix: a line ``<rows> <cols>``, then one line per row
"""

from __future__ import annotations

from pathlib import Path
from typing import IO, Iterator

import numpy as np


MODEL_FORMAT_VERSION = "3.00"


class ModelFileError(ValueError):
    """A model file is malformed or inconsistent with the model reading it."""


def format_float(value: float) -> str:
    return repr(float(value))


def write_header(f: IO[str], model_type: str, version: str = MODEL_FORMAT_VERSION) -> None:
    f.write(f"{model_type} {version}\n")


def write_scalar(f: IO[str], value: float) -> None:
    f.write(format_float(value) + "\n")


def write_vector(f: IO[str], vector: np.ndarray) -> None:
    vector = np.asarray(vector, dtype=np.float64).reshape(-1)
    f.write(f"{len(vector)}\n")
    f.write(" ".join(format_float(v) for v in vector) + "\n")


def write_matrix(f: IO[str], matrix: np.ndarray) -> None:
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim != 2:
        raise ValueError(f"Expected 2D matrix, got shape={matrix.shape}")
    rows, cols = matrix.shape
    f.write(f"{rows} {cols}\n")
    for row in matrix:
        f.write(" ".join(format_float(v) for v in row) + "\n")


class ModelReader:
    """Sequential reader over the lines of a model file."""

    def __init__(self, lines: Iterator[str], *, source: str = "<model>") -> None:
        self._lines = lines
        self._lineno = 0
        self.source = source

    @classmethod
    def from_path(cls, path: Path) -> "ModelReader":
        text = Path(path).read_text(encoding="utf-8")
        return cls(iter(text.splitlines()), source=str(path))

    def _fail(self, message: str) -> ModelFileError:
        return ModelFileError(f"{self.source}:{self._lineno}: {message}")

    def read_line(self) -> str:
        try:
            line = next(self._lines)
        except StopIteration:
            raise self._fail("unexpected end of file") from None
        self._lineno += 1
        return line.strip()

    def _parse_floats(self, line: str, expected: int) -> np.ndarray:
        tokens = line.split()
        if len(tokens) != expected:
            raise self._fail(f"expected {expected} values, found {len(tokens)}")
        try:
            return np.array([float(t) for t in tokens], dtype=np.float64)
        except ValueError as exc:
            raise self._fail(f"malformed number: {exc}") from exc

    def _parse_dims(self, line: str, expected: int) -> list[int]:
        tokens = line.split()
        if len(tokens) != expected:
            raise self._fail(f"expected a {expected}-value dimension header, found {line!r}")
        try:
            dims = [int(t) for t in tokens]
        except ValueError as exc:
            raise self._fail(f"malformed dimension header: {line!r}") from exc
        if any(d < 0 for d in dims):
            raise self._fail(f"negative dimension in header: {line!r}")
        return dims

    def read_header(self, model_type: str) -> str:
        """Check the model type on the first line and return the version tag."""
        tokens = self.read_line().split()
        if len(tokens) != 2:
            raise self._fail("missing model header")
        if tokens[0] != model_type:
            raise self._fail(f"unknown model type {tokens[0]!r}, expected {model_type!r}")
        return tokens[1]

    def read_scalar(self) -> float:
        return float(self._parse_floats(self.read_line(), 1)[0])

    def read_vector(self) -> np.ndarray:
        (n,) = self._parse_dims(self.read_line(), 1)
        if n == 0:
            self.read_line()
            return np.zeros(0, dtype=np.float64)
        return self._parse_floats(self.read_line(), n)

    def read_matrix(self) -> np.ndarray:
        rows, cols = self._parse_dims(self.read_line(), 2)
        out = np.zeros((rows, cols), dtype=np.float64)
        for r in range(rows):
            out[r] = self._parse_floats(self.read_line(), cols)
        return out
