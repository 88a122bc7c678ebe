"""
Exception hierarchy for the content pipeline.

Transient failures of external collaborators are retryable and resolved
locally (fallback classification, skipped source). Everything else is
fatal for the unit of work that raised it.
"""

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    MALFORMED_INPUT = "malformed_input"
    MISCONFIGURED = "misconfigured"

    @property
    def retryable(self) -> bool:
        return self in (FailureKind.RATE_LIMITED, FailureKind.TIMEOUT, FailureKind.UNAVAILABLE)


class PipelineError(Exception):
    """Base class for all content pipeline errors."""


class ConfigurationError(PipelineError):
    """Configuration is missing or invalid."""


class ClassifierError(PipelineError):
    """The classifier/embedder could not produce a result."""

    def __init__(self, message: str, kind: FailureKind, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class ClassifierUnavailableError(ClassifierError):
    """Quota exhausted, rate limited, timed out or unreachable."""


class ClassifierFatalError(ClassifierError):
    """Malformed input or a misconfigured classifier."""


class MalformedItemError(PipelineError):
    """A raw item does not satisfy the ingestion contract."""


class FeedFetchError(PipelineError):
    """A source could not be fetched."""


class StorageError(PipelineError):
    """A read or write against the content store failed."""


class DuplicateContentError(StorageError):
    """A content item with the same dedup key already exists."""

    def __init__(self, source_id: str, dedup_key: str):
        super().__init__(f"Duplicate content for {source_id}: {dedup_key}")
        self.source_id = source_id
        self.dedup_key = dedup_key


class ConsistencyError(StorageError):
    """An operation would break a storage invariant."""


class DropGenerationConflictError(StorageError):
    """Another drop generation for the same user was committed first."""

    def __init__(self, user_id: str, generation: int):
        super().__init__(f"Drop generation {generation} for user {user_id} already exists")
        self.user_id = user_id
        self.generation = generation


class UserNotFoundError(PipelineError):
    """No preference record exists for the user."""
