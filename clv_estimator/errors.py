"""Error kinds raised by the CLV estimation pipeline.

Each stage validates its own inputs and fails fast with the most specific
kind. The classes subclass the built-in exceptions the rest of the package
raises so callers that already catch ``ValueError``/``RuntimeError`` keep
working.
"""

from __future__ import annotations


class InvalidInputError(ValueError):
    """Malformed or out-of-domain input data (e.g. non-positive revenue)."""


class InsufficientDataError(ValueError):
    """Too few customers or observations to fit a model."""


class ConvergenceError(RuntimeError):
    """The optimizer did not reach a stable optimum within its budget."""


def preview_ids(ids: list[str], limit: int = 5) -> str:
    """Format the first ``limit`` customer ids for error messages."""
    return f"{ids[:limit]}{'...' if len(ids) > limit else ''}"
