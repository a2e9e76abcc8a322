"""Error taxonomy for recall-mcp."""

from __future__ import annotations


class RecallError(Exception):
    """Base class for all recall-mcp errors."""


class ProviderError(RecallError):
    """A single embedding or generation call failed.

    ``quota`` marks rate-limit / quota exhaustion (fail over immediately);
    ``transient`` marks failures worth retrying on the same provider.
    """

    def __init__(self, provider: str, message: str, *, quota: bool = False, transient: bool = False):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.quota = quota
        self.transient = transient


class AllProvidersExhausted(RecallError):
    """No configured provider could serve the call."""

    def __init__(self, errors: list[ProviderError] | None = None, reason: str | None = None):
        self.errors = errors or []
        detail = reason or "; ".join(str(e) for e in self.errors) or "no eligible provider"
        super().__init__(f"All embedding providers exhausted ({detail})")


class OversizedInputError(RecallError):
    """Text exceeds the input limit of every eligible provider."""

    def __init__(self, length: int, limit: int):
        super().__init__(f"Input of {length} chars exceeds provider limit of {limit} chars")
        self.length = length
        self.limit = limit


class DimensionMismatch(RecallError):
    """A vector's length does not match the dimensions registered for its model."""

    def __init__(self, model: str, expected: int, actual: int):
        super().__init__(f"Model {model} stores {expected}-dim vectors, got {actual}")
        self.model = model
        self.expected = expected
        self.actual = actual


class MalformedSourceError(RecallError):
    """A transcript line or record cannot be parsed."""

    def __init__(self, source_id: str, line_number: int, message: str):
        super().__init__(f"{source_id}:{line_number}: {message}")
        self.source_id = source_id
        self.line_number = line_number


class NotFound(RecallError, KeyError):
    """Operation on a record id that does not exist."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id

    def __str__(self) -> str:
        return f"{self.kind} {self.record_id} not found"


class EnrichmentError(RecallError):
    """Contextual enrichment could not be generated for a chunk."""


class ConfigurationError(RecallError):
    """The system cannot run with the current configuration."""
