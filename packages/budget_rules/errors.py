"""Exception types raised by the rules engine.

Callers inside the package catch these at well-defined seams (per
transaction, per classifier chunk, per commit chunk) and degrade to leaving
work unmapped; they only escape to users through explicit reports.
"""

from __future__ import annotations


class RulesEngineError(Exception):
    """Base class for every error raised by ``budget_rules``."""


class CategoryResolutionError(RulesEngineError):
    """A category reference could neither be found nor created for an owner."""

    def __init__(self, message: str, *, owner_id: str, reference: object = None) -> None:
        super().__init__(message)
        self.owner_id = owner_id
        self.reference = reference


class ClassifierResponseError(RulesEngineError):
    """The external classifier returned text that is not a usable JSON array."""


class ChunkWriteError(RulesEngineError):
    """A chunk commit failed part-way through a bulk write.

    ``applied`` counts records committed by earlier chunks; those stay in
    place. ``not_updated`` counts the failed chunk plus everything after it.
    """

    def __init__(
        self, message: str, *, chunk_index: int, applied: int, not_updated: int
    ) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
        self.applied = applied
        self.not_updated = not_updated


__all__ = [
    "CategoryResolutionError",
    "ChunkWriteError",
    "ClassifierResponseError",
    "RulesEngineError",
]
