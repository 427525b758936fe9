"""
Error taxonomy for the reader core.

Source errors (SourceUnavailable, FetchFailed) are fatal to a single
streaming attempt and surface to the caller before any chunk is shown.
Enrichment errors never leave the scheduler: they are retried once and
then degrade to unannotated text.
"""
from __future__ import annotations


class LexisError(Exception):
    """Base class for all reader errors."""


# --- Source stream ------------------------------------------------------------

class SourceUnavailable(LexisError):
    """No usable plain-text stream exists for the requested document."""


class FetchFailed(LexisError):
    """Transport-level failure (or non-success status) reading the source."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# --- Enrichment ---------------------------------------------------------------

class EnrichmentCallFailed(LexisError):
    """Transport or service-level failure from the enrichment client."""


class InvalidEnrichmentResult(EnrichmentCallFailed):
    """Structurally malformed enrichment response (wrong shape, empty list)."""
