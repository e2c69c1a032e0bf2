# tigerflow/errors.py

from __future__ import annotations

from typing import Any


class TigerflowError(Exception):
    """Base class for graph construction errors."""


class UnsupportedOperation(TigerflowError, NotImplementedError):
    """A layer was asked for something it cannot do (e.g. infer its input shape)."""


class ShapeMismatch(TigerflowError, ValueError):
    """Declared dimensions disagree with the wiring of a layer."""


class ConnectionConflict(TigerflowError, ValueError):
    """An input slot is already bound to a different producer, or wiring would close a cycle."""


class BackendAllocationFailure(TigerflowError, RuntimeError):
    """The requested compute backend cannot be constructed for a layer."""


def describe(layer: Any) -> str:
    """Human readable identity used in error messages: ``layer 'fc1' (id=3)``."""
    return f"layer {getattr(layer, 'name', '?')!r} (id={getattr(layer, 'id', -1)})"
