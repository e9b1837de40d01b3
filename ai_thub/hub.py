"""
TranslationHub
==============

Entry point for the app's screens. Wires the store, registry, ledger,
resolver and dispatch engine together and applies the activation policy
after key verifications and translation failures.

Example:
    async with TranslationHub() as hub:
        await hub.verify_api_key(ProviderId.GROQ, "gsk_...")
        result = await hub.translate(
            TranslationRequest("Hola", "Spanish", "English"), scope="box1"
        )
        print(result.translated_text)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from .classifier import (
    ActivationDecision,
    NormalizedResult,
    activation_policy,
    sanitize_for_logging,
)
from .config import Settings, load_settings
from .credentials import SecureStore
from .dispatch import DispatchEngine
from .errors import MissingApiKey, ProviderInactive
from .ledger import VerifiedModelLedger
from .providers import ProviderId, TranslationRequest, default_model
from .registry import ProviderRegistry, ToggleReason
from .resolver import GLOBAL_SCOPE, ConfigResolver, SelectionWatcher
from .storage import JsonFileStore, KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class VerificationOutcome:
    """What happened when a key/model pair was verified"""

    provider: ProviderId
    model: str
    result: NormalizedResult
    decision: ActivationDecision
    key_saved: bool = False
    model_added: bool = False
    activated: bool = False
    disabled: bool = False

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def is_soft_success(self) -> bool:
        return not self.result.success and self.decision.allow_activation


class TranslationHub:
    """Facade over the dispatch core"""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        engine: DispatchEngine | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.store = store or SecureStore(JsonFileStore())
        self.ledger = VerifiedModelLedger(self.store)
        self.registry = ProviderRegistry(self.store, self.ledger)
        self.resolver = ConfigResolver(self.store, self.registry, self.ledger)
        self.engine = engine or DispatchEngine(
            client=client, settings=self.settings, sleep=sleep
        )
        self.watcher = SelectionWatcher(self.resolver, self.settings.poll_interval)
        self._loaded = False

    async def __aenter__(self) -> TranslationHub:
        await self.load()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def load(self) -> None:
        await self.registry.load()
        await self.ledger.load()
        self._loaded = True
        active = ", ".join(p.value for p in self.registry.active_providers()) or "none"
        logger.info(f"Translation hub loaded (active providers: {active})")

    def start_watching(self) -> None:
        """Poll the store for selections written outside this process"""
        self.watcher.start()

    async def aclose(self) -> None:
        await self.watcher.stop()
        await self.engine.aclose()

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    async def translate(
        self,
        request: TranslationRequest,
        scope: str = GLOBAL_SCOPE,
        provider: ProviderId | None = None,
    ) -> NormalizedResult:
        """Translate with the scope's provider, or an explicit active one.

        Raises ``NoProviderSelected`` when nothing is active,
        ``ProviderInactive`` for an explicit inactive provider and
        ``TranslationInProgress`` while another call is in flight.
        Provider failures come back as an unsuccessful result.
        """
        if provider is None:
            provider = await self.resolver.require_provider(scope)
        elif not self.registry.is_active(provider):
            raise ProviderInactive(provider.value)

        model = request.model or await self.resolver.resolve_model(scope, provider)
        api_key = await self.registry.get_api_key(provider)
        if not api_key:
            raise MissingApiKey(provider.value)

        result = await self.engine.translate(request, provider, api_key, model)

        if not result.success and result.classification is not None:
            if result.classification.is_credential_fatal:
                logger.warning(
                    f"Disabling {provider.value} after credential failure: "
                    f"{sanitize_for_logging(result.error or '')}"
                )
                await self.registry.toggle(
                    provider, False, ToggleReason.CREDENTIAL_FAILURE
                )
        return result

    # ------------------------------------------------------------------
    # Key verification
    # ------------------------------------------------------------------

    async def verify_api_key(
        self, provider: ProviderId, api_key: str, model: str | None = None
    ) -> VerificationOutcome:
        """Verify ``api_key`` against ``provider`` and apply the activation policy"""
        api_key = api_key.strip()
        if not api_key:
            raise ValueError("API key must be non-empty")
        model = (model or "").strip() or default_model(provider)

        result = await self.engine.verify(provider, api_key, model)
        decision = activation_policy(result)
        outcome = VerificationOutcome(provider, model, result, decision)

        if decision.save_key:
            await self.registry.set_api_key(provider, api_key)
            outcome.key_saved = True
        if decision.add_model and not self.ledger.has_model(provider, model):
            outcome.model_added = await self.ledger.add_model(provider, model)
        if decision.allow_activation:
            if not self.registry.is_active(provider):
                await self.registry.toggle(provider, True)
            outcome.activated = True
        elif decision.disable_provider and self.registry.is_active(provider):
            await self.registry.toggle(provider, False, ToggleReason.CREDENTIAL_FAILURE)
            outcome.disabled = True

        logger.info(
            f"Verification for {provider.value} ({model}): "
            f"{'ok' if result.success else result.category.name if result.category else 'failed'}"
        )
        return outcome

    # ------------------------------------------------------------------
    # Registry / ledger / resolver passthroughs
    # ------------------------------------------------------------------

    async def toggle_provider(self, provider: ProviderId, is_active: bool) -> None:
        await self.registry.toggle(provider, is_active)

    async def remove_api_key(self, provider: ProviderId) -> None:
        await self.registry.remove_api_key(provider)

    async def add_verified_model(self, provider: ProviderId, name: str) -> bool:
        return await self.ledger.add_model(provider, name)

    async def reorder_model(
        self, provider: ProviderId, from_index: int, to_index: int
    ) -> bool:
        changed = await self.ledger.reorder_model(provider, from_index, to_index)
        if changed:
            await self.resolver.sync()
        return changed

    async def remove_model(self, provider: ProviderId, index: int) -> bool:
        changed = await self.ledger.remove_model(provider, index)
        if changed:
            await self.resolver.sync()
        return changed

    async def select_provider(self, scope: str, provider: ProviderId) -> None:
        await self.resolver.select_provider(scope, provider)

    async def select_model(self, scope: str, provider: ProviderId, name: str) -> None:
        await self.resolver.select_model(scope, provider, name)

    async def reset_to_global(self, scope: str) -> ProviderId | None:
        return await self.resolver.reset_to_global(scope)

    async def resolve(self, scope: str = GLOBAL_SCOPE) -> tuple[ProviderId | None, str | None]:
        """Current ``(provider, model)`` for ``scope``"""
        provider = await self.resolver.resolve_provider(scope)
        if provider is None:
            return None, None
        return provider, await self.resolver.resolve_model(scope, provider)
