"""
AI-T Hub - Multi-Provider Translation Dispatch Core
===================================================

Routes translation requests to whichever AI provider the user has
activated (OpenAI, Google, Anthropic, OpenRouter, Groq), with per-tool
provider/model selection, a verified-model ledger, a global throttle and
uniform error classification.

Security Features:
- No API keys stored in code
- Secure credential storage (keyring/encrypted file)
- API keys redacted from logs

Example Usage:
    >>> from ai_thub import ProviderId, TranslationHub, TranslationRequest
    >>> import asyncio
    >>>
    >>> async def main():
    ...     async with TranslationHub() as hub:
    ...         await hub.verify_api_key(ProviderId.OPENAI, "sk-...")
    ...         result = await hub.translate(
    ...             TranslationRequest("Bonjour", "French", "English"),
    ...             scope="box1",
    ...         )
    ...         print(result.translated_text)
    >>>
    >>> asyncio.run(main())
"""

__version__ = "1.0.0"

from .classifier import (
    ErrorCategory,
    NormalizedResult,
    Severity,
    activation_policy,
    classify,
    classify_failure,
    format_api_error,
)
from .config import Settings, load_settings, setup_logging
from .credentials import CredentialManager, SecureStore
from .dispatch import DispatchEngine, DispatchState
from .errors import (
    CredentialInvalid,
    DuplicateModel,
    MissingApiKey,
    NetworkFailure,
    NoProviderSelected,
    ProviderError,
    ProviderInactive,
    RateLimited,
    StorageError,
    ThubError,
    TranslationInProgress,
    UnknownProviderError,
    UsageLimited,
)
from .hub import TranslationHub, VerificationOutcome
from .ledger import VerifiedModel, VerifiedModelLedger
from .providers import DEFAULT_MODELS, ProviderId, TranslationRequest
from .registry import ProviderRegistry, ToggleReason
from .resolver import GLOBAL_SCOPE, ConfigResolver, ScopeState, SelectionWatcher
from .storage import JsonFileStore, KeyValueStore, MemoryStore

__all__ = [
    # Version
    "__version__",

    # Facade
    "TranslationHub",
    "VerificationOutcome",

    # Providers
    "ProviderId",
    "DEFAULT_MODELS",
    "TranslationRequest",
    "ProviderRegistry",
    "ToggleReason",

    # Models and selection
    "VerifiedModel",
    "VerifiedModelLedger",
    "ConfigResolver",
    "ScopeState",
    "SelectionWatcher",
    "GLOBAL_SCOPE",

    # Dispatch
    "DispatchEngine",
    "DispatchState",
    "NormalizedResult",
    "ErrorCategory",
    "Severity",
    "classify",
    "classify_failure",
    "activation_policy",
    "format_api_error",

    # Storage and configuration
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "SecureStore",
    "CredentialManager",
    "Settings",
    "load_settings",
    "setup_logging",

    # Errors
    "ThubError",
    "StorageError",
    "NoProviderSelected",
    "ProviderInactive",
    "DuplicateModel",
    "TranslationInProgress",
    "ProviderError",
    "RateLimited",
    "CredentialInvalid",
    "MissingApiKey",
    "UsageLimited",
    "NetworkFailure",
    "UnknownProviderError",
]
