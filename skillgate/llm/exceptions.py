"""Provider-agnostic errors so callers never depend on a vendor's error shapes."""

from __future__ import annotations


class ProviderError(Exception):
    """Base provider error."""


class ProviderAuthError(ProviderError):
    """API key rejected or missing."""


class ProviderConnectionError(ProviderError):
    """Could not reach the provider."""


class ProviderTimeoutError(ProviderError):
    """Provider did not answer in time."""


class ProviderResponseError(ProviderError):
    """Provider answered with an error status or an unreadable stream."""
