"""
Response Normalizer & Error Classifier
======================================

Maps provider outcomes onto ``NormalizedResult`` and a small error
taxonomy. Structured signals (transport failure, HTTP status) are used
first; free-text keyword matching is the fallback for everything else.
The same rules serve key verification and translation, so both paths
agree on what a message means.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from .errors import (
    CredentialInvalid,
    NetworkFailure,
    ProviderError,
    RateLimited,
    UnknownProviderError,
    UsageLimited,
)

logger = logging.getLogger(__name__)

USAGE_LIMIT_KEYWORDS = (
    "rate limit",
    "quota",
    "usage limit",
    "credit",
    "billing",
    "payment",
    "exceeded",
    "capacity",
)

CREDENTIAL_KEYWORDS = (
    "invalid api key",
    "authentication",
    "not found",
    "insufficient permissions",
)


class ErrorCategory(Enum):
    """Failure categories surfaced to callers"""

    RATE_LIMITED = auto()
    CREDENTIAL_INVALID = auto()
    USAGE_LIMITED = auto()
    NETWORK_FAILURE = auto()
    UNKNOWN_PROVIDER_ERROR = auto()


class Severity(Enum):
    """How the UI should surface a failure"""

    NONE = auto()
    SILENT = auto()
    BANNER = auto()
    MODAL = auto()


@dataclass(frozen=True)
class Classification:
    category: ErrorCategory
    is_credential_fatal: bool
    is_usage_limited: bool

    @property
    def is_soft_success(self) -> bool:
        """Key works, usage is constrained"""
        return self.is_usage_limited and not self.is_credential_fatal


def _matches(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def classify(raw_error_message: str | None) -> Classification:
    """Keyword classification of a free-text provider error"""
    text = (raw_error_message or "").lower()
    credential = _matches(text, CREDENTIAL_KEYWORDS)
    usage = _matches(text, USAGE_LIMIT_KEYWORDS)

    if credential:
        category = ErrorCategory.CREDENTIAL_INVALID
    elif usage:
        category = ErrorCategory.USAGE_LIMITED
    else:
        category = ErrorCategory.UNKNOWN_PROVIDER_ERROR
    return Classification(category, is_credential_fatal=credential, is_usage_limited=usage)


def classify_failure(
    status_code: int | None,
    message: str | None,
    transport_error: bool = False,
) -> Classification:
    """Classify a failed call, preferring structured signals over text"""
    if transport_error:
        return Classification(ErrorCategory.NETWORK_FAILURE, False, False)

    by_text = classify(message)
    if status_code in (401, 403):
        return Classification(
            ErrorCategory.CREDENTIAL_INVALID, True, by_text.is_usage_limited
        )
    if status_code == 402:
        return Classification(
            ErrorCategory.USAGE_LIMITED, by_text.is_credential_fatal, True
        )
    if status_code == 429:
        if by_text.is_usage_limited and _matches(
            (message or "").lower(), ("quota", "credit", "billing", "payment")
        ):
            return Classification(ErrorCategory.USAGE_LIMITED, False, True)
        return Classification(ErrorCategory.RATE_LIMITED, False, by_text.is_usage_limited)
    return by_text


@dataclass
class ProviderInfo:
    provider: str
    model: str


@dataclass
class NormalizedResult:
    """Single result shape for every provider"""

    translated_text: str
    success: bool
    error: str | None = None
    raw_response: Any = None
    provider_info: ProviderInfo | None = None
    status_code: int | None = None
    attempts: int = 0
    classification: Classification | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> ErrorCategory | None:
        return self.classification.category if self.classification else None

    def raise_for_error(self) -> None:
        """Raise the taxonomy exception matching a failed result"""
        if self.success:
            return
        provider = self.provider_info.provider if self.provider_info else None
        message = self.error or "Translation failed"
        exc_type = _CATEGORY_ERRORS.get(self.category, UnknownProviderError)
        raise exc_type(message, provider)


_CATEGORY_ERRORS: dict[ErrorCategory | None, type[ProviderError]] = {
    ErrorCategory.RATE_LIMITED: RateLimited,
    ErrorCategory.CREDENTIAL_INVALID: CredentialInvalid,
    ErrorCategory.USAGE_LIMITED: UsageLimited,
    ErrorCategory.NETWORK_FAILURE: NetworkFailure,
    ErrorCategory.UNKNOWN_PROVIDER_ERROR: UnknownProviderError,
}


def failure(
    message: str,
    classification: Classification,
    provider: str | None = None,
    model: str | None = None,
    status_code: int | None = None,
    raw_response: Any = None,
    attempts: int = 0,
) -> NormalizedResult:
    return NormalizedResult(
        translated_text="",
        success=False,
        error=message,
        raw_response=raw_response,
        provider_info=ProviderInfo(provider, model) if provider and model else None,
        status_code=status_code,
        attempts=attempts,
        classification=classification,
    )


@dataclass(frozen=True)
class ActivationDecision:
    """What a verification (or translation) outcome means for the provider"""

    save_key: bool
    add_model: bool
    allow_activation: bool
    disable_provider: bool
    severity: Severity


def activation_policy(result: NormalizedResult) -> ActivationDecision:
    """Soft-success aware decision for provider activation"""
    if result.success:
        return ActivationDecision(True, True, True, False, Severity.NONE)

    classification = result.classification or classify(result.error)
    if classification.is_credential_fatal:
        # key is kept when usage wording also matched
        return ActivationDecision(
            save_key=classification.is_usage_limited,
            add_model=False,
            allow_activation=False,
            disable_provider=True,
            severity=Severity.MODAL,
        )
    if classification.is_usage_limited:
        return ActivationDecision(True, True, True, False, Severity.BANNER)
    return ActivationDecision(False, False, False, False, Severity.MODAL)


def severity_for(classification: Classification, retrying: bool = False) -> Severity:
    if classification.category is ErrorCategory.RATE_LIMITED:
        return Severity.SILENT if retrying else Severity.MODAL
    if classification.is_soft_success:
        return Severity.BANNER
    return Severity.MODAL


# ---------------------------------------------------------------------------
# User-facing formatting
# ---------------------------------------------------------------------------

_QUOTA_HELP = {
    "openai": "https://platform.openai.com/docs/guides/error-codes/api-errors",
    "google": "https://ai.google.dev/docs/error_codes",
    "anthropic": "https://docs.anthropic.com/claude/reference/errors",
}


@dataclass
class FormattedError:
    title: str
    message: str
    detail: str
    learn_more_url: str | None = None


def sanitize_for_logging(text: str, max_len: int = 100) -> str:
    """Sanitize text for safe logging (no sensitive data)"""
    if not text:
        return ""
    sanitized = text[:max_len]
    sanitized = re.sub(
        r"(sk-|api[_-]?key|bearer\s+)[a-zA-Z0-9\-_=:]{20,}",
        "[REDACTED]",
        sanitized,
        flags=re.IGNORECASE,
    )
    return sanitized + ("..." if len(text) > max_len else "")


def format_api_error(
    error: BaseException | NormalizedResult | str,
    provider: str | None = None,
    additional_info: dict[str, str] | None = None,
) -> FormattedError:
    """Title, message and a detail block for an error dialog"""
    title = "API Error"
    message = "An error occurred while communicating with the API."
    learn_more: str | None = None

    raw_response: Any = None
    provider_info: ProviderInfo | None = None
    if isinstance(error, NormalizedResult):
        text = error.error or ""
        raw_response = error.raw_response
        provider_info = error.provider_info
    else:
        text = str(error)

    detail = f"Error: {text or 'Unknown error'}\n\n"
    if provider_info is not None:
        detail += f"Provider: {provider_info.provider}\nModel: {provider_info.model}\n"
    elif provider:
        detail += f"Provider: {provider}\n"
    for key, value in (additional_info or {}).items():
        detail += f"{key}: {value}\n"
    if raw_response is not None:
        try:
            detail += f"\nAPI Response:\n{json.dumps(raw_response, indent=2)}"
        except (TypeError, ValueError):
            detail += "\nAPI Response: [Could not stringify response]"

    lowered = text.lower()
    provider_name = provider or (provider_info.provider if provider_info else None)
    if text:
        if _matches(lowered, ("quota", "rate limit", "capacity", "exceeded")):
            title = "Quota Error"
            message = "You exceeded your current quota. Please check your plan and billing details."
            learn_more = _QUOTA_HELP.get(provider_name or "")
        elif _matches(
            lowered,
            ("api key not configured", "no api key found", "invalid_api_key", "invalid api key"),
        ):
            title = "API Key Error"
            message = "API key not properly configured or invalid. Please check your API settings."
        elif _matches(lowered, ("network", "fetch", "internet", "timed out", "connect")):
            title = "Network Error"
            message = "Network error. Please check your internet connection and try again."
        elif "too many requests" in lowered:
            title = "Rate Limit Error"
            message = "Too many requests. Please wait a moment and try again."
        elif "provider" in lowered and "not active" in lowered:
            title = "Provider Error"
            message = "The selected provider is not active. Please enable it in the API settings."
        elif "no ai provider selected" in lowered or "no active ai provider" in lowered:
            title = "Provider Error"
            message = "No AI provider selected. Please select a provider in the API settings."
        else:
            message = text

    return FormattedError(title=title, message=message, detail=detail, learn_more_url=learn_more)
