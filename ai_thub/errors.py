"""
Error Taxonomy
==============

Exceptions raised by the dispatch core. Provider failures during a
translation are normally returned as a failed ``NormalizedResult``; the
classes here are what ``NormalizedResult.raise_for_error()`` maps them to,
and what the registry, ledger, resolver and store raise directly.
"""

from __future__ import annotations


class ThubError(Exception):
    """Base class for all dispatch-core errors"""


class StorageError(ThubError):
    """A persistence read or write failed"""


class NoProviderSelected(ThubError):
    """No active provider could be resolved for a scope"""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "No AI provider selected. Please select a provider in the API settings."
        )


class ProviderInactive(ThubError):
    """The requested provider is not activated"""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(
            f"The selected provider ({provider}) is not active. "
            "Please enable it in the API settings."
        )


class DuplicateModel(ThubError):
    """A model with the same name is already verified for the provider"""

    def __init__(self, provider: str, name: str) -> None:
        self.provider = provider
        self.name = name
        super().__init__(f"Model '{name}' is already verified for {provider}")


class TranslationInProgress(ThubError):
    """Raised when a translate call arrives while another is in flight"""

    def __init__(self) -> None:
        super().__init__("Please wait for the previous translation to complete")


class ProviderError(ThubError):
    """Base for failures reported by (or on the way to) a provider"""

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class RateLimited(ProviderError):
    """HTTP 429 responses outlasted the retry budget"""


class CredentialInvalid(ProviderError):
    """The provider rejected the API key"""


class MissingApiKey(CredentialInvalid):
    """No API key is stored for the provider"""

    def __init__(self, provider: str) -> None:
        super().__init__(f"No API key found for {provider}", provider)


class UsageLimited(ProviderError):
    """The key is valid but quota, billing or capacity limits apply"""


class NetworkFailure(ProviderError):
    """Transport-level failure (DNS, connection, timeout)"""


class UnknownProviderError(ProviderError):
    """Provider failure that could not be classified"""
