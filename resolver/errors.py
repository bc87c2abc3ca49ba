"""Exceptions and the outcome taxonomy."""

from enum import Enum


class ResolverError(Exception):
    """Base class for errors raised by cellar-resolver."""


class IllegalTransitionError(ResolverError):
    """A resolution job was asked to move along an edge it does not have."""

    def __init__(self, current, target):
        super().__init__(f"Illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class CatalogError(ResolverError):
    """The catalog store could not serve a read or a write."""


class ExtractionError(ResolverError):
    """The field extraction collaborator failed."""


class FailureKind(str, Enum):
    """Why an input did not end in a plain automatic commit."""

    RECOVERABLE_INPUT = 'RECOVERABLE_INPUT'  # retake photo / type it in
    AMBIGUOUS_MATCH = 'AMBIGUOUS_MATCH'
    MISSING_MATCH = 'MISSING_MATCH'
    ROW_ERROR = 'ROW_ERROR'
    WRITE_CONFLICT = 'WRITE_CONFLICT'
