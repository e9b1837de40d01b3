"""
Config Resolver
===============

Resolves the effective provider and model for a scope. A scope is either
``GLOBAL_SCOPE`` or a tool name; every tool keeps its own overrides under
``{tool}_selected_provider`` / ``{tool}_selected_models`` and never shares
them with the global selection or with other tools.

Provider lookup (first match wins):
1. the scope's own selection, if that provider is active
2. the global ``selected_provider``, if active (scope follows global)
3. the first active provider, persisted as the scope's own selection unless
   the scope already tracks the global selection (then a silent failover)
4. None

Model lookup: scope override -> ``current_models`` / ``{provider}_model``
-> provider default.

Scopes that follow the global selection are re-synced whenever the
registry reports an activation change or the global selection changes
through this resolver. ``SelectionWatcher`` additionally polls the store
to pick up changes made by other writers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .errors import NoProviderSelected, ProviderInactive, StorageError
from .ledger import VerifiedModelLedger
from .providers import ProviderId, default_model
from .registry import ProviderRegistry, ToggleReason
from .storage import (
    CURRENT_MODELS_KEY,
    GLOBAL_PROVIDER_KEY,
    KeyValueStore,
    model_key,
    tool_models_key,
    tool_provider_key,
)

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"

SelectionListener = Callable[[str, "ScopeState"], Awaitable[None]]


@dataclass
class ScopeState:
    """Last resolution result for a scope plus its following-global flags"""

    provider: ProviderId | None = None
    model: str | None = None
    following_global_provider: bool = True
    following_global_models: bool = True
    # set once the scope has followed the global provider; cleared by an own selection
    tracks_global: bool = False


class ConfigResolver:
    """Per-scope provider/model resolution over the key/value store"""

    def __init__(
        self,
        store: KeyValueStore,
        registry: ProviderRegistry,
        ledger: VerifiedModelLedger | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.ledger = ledger
        self._states: dict[str, ScopeState] = {}
        self._listeners: list[SelectionListener] = []
        registry.subscribe(self._on_activation_change)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state(self, scope: str) -> ScopeState:
        if scope not in self._states:
            self._states[scope] = ScopeState()
        return self._states[scope]

    def known_scopes(self) -> list[str]:
        return list(self._states)

    def is_following_global_provider(self, scope: str) -> bool:
        return self.state(scope).following_global_provider

    def is_following_global_models(self, scope: str) -> bool:
        return self.state(scope).following_global_models

    def subscribe(self, listener: SelectionListener) -> Callable[[], None]:
        """Be told when a scope's resolved provider or model changes"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Stored selections
    # ------------------------------------------------------------------

    async def _stored_provider(self, scope: str) -> ProviderId | None:
        key = GLOBAL_PROVIDER_KEY if scope == GLOBAL_SCOPE else tool_provider_key(scope)
        return ProviderId.parse(await self.store.get(key))

    async def _store_provider(self, scope: str, provider: ProviderId) -> None:
        key = GLOBAL_PROVIDER_KEY if scope == GLOBAL_SCOPE else tool_provider_key(scope)
        await self.store.set(key, provider.value)

    async def _model_table(self, key: str) -> dict[str, str]:
        raw = await self.store.get_json(key)
        if not isinstance(raw, dict):
            return {}
        return {str(k): v for k, v in raw.items() if isinstance(v, str) and v}

    async def global_model(self, provider: ProviderId) -> str | None:
        table = await self._model_table(CURRENT_MODELS_KEY)
        if provider.value in table:
            return table[provider.value]
        return await self.store.get(model_key(provider.value)) or None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_provider(self, scope: str) -> ProviderId | None:
        """Effective provider for ``scope``; never an inactive one"""
        state = self.state(scope)

        own = await self._stored_provider(scope)
        if own is not None and self.registry.is_active(own):
            state.provider = own
            state.following_global_provider = False
            state.tracks_global = False
            return own

        return await self._resolve_from_global(
            scope, persist_fallback=not state.tracks_global
        )

    async def _resolve_from_global(
        self, scope: str, persist_fallback: bool
    ) -> ProviderId | None:
        state = self.state(scope)

        if scope != GLOBAL_SCOPE:
            global_provider = await self._stored_provider(GLOBAL_SCOPE)
            if global_provider is not None and self.registry.is_active(global_provider):
                state.provider = global_provider
                state.following_global_provider = True
                state.tracks_global = True
                return global_provider

        fallback = self.registry.first_active()
        if fallback is not None:
            if persist_fallback:
                await self._store_provider(scope, fallback)
                state.following_global_provider = False
            else:
                # temporary failover; the scope keeps following global
                state.following_global_provider = scope != GLOBAL_SCOPE
            state.provider = fallback
            logger.debug(f"Scope {scope!r} fell back to first active provider {fallback.value}")
            return fallback

        state.provider = None
        logger.warning(
            f"No active AI provider found for scope {scope!r}. "
            "Please enable a provider in the API settings."
        )
        return None

    async def require_provider(self, scope: str) -> ProviderId:
        provider = await self.resolve_provider(scope)
        if provider is None:
            raise NoProviderSelected(
                "No active AI provider found. Please enable a provider in the API settings."
            )
        return provider

    async def resolve_model(self, scope: str, provider: ProviderId) -> str:
        state = self.state(scope)
        if scope != GLOBAL_SCOPE:
            overrides = await self._model_table(tool_models_key(scope))
            if provider.value in overrides:
                state.model = overrides[provider.value]
                state.following_global_models = False
                return state.model

        state.following_global_models = True
        state.model = await self.global_model(provider) or default_model(provider)
        return state.model

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_provider(self, scope: str, provider: ProviderId) -> None:
        """Persist an explicit provider choice for ``scope``"""
        if not self.registry.is_active(provider):
            raise ProviderInactive(provider.value)
        await self._store_provider(scope, provider)
        state = self.state(scope)
        state.provider = provider
        state.following_global_provider = scope == GLOBAL_SCOPE
        state.tracks_global = False
        logger.info(f"Scope {scope!r} selected provider {provider.value}")
        if scope == GLOBAL_SCOPE:
            await self.sync()

    async def select_model(self, scope: str, provider: ProviderId, name: str) -> None:
        """Persist a model choice; the scope stops following global models"""
        if not name:
            raise ValueError("Model name must be non-empty")

        if scope == GLOBAL_SCOPE:
            await self._select_global_model(provider, name)
        else:
            overrides = await self._model_table(tool_models_key(scope))
            overrides[provider.value] = name
            await self.store.set_json(tool_models_key(scope), overrides)
            self.state(scope).following_global_models = False

        state = self.state(scope)
        if state.provider == provider:
            state.model = name
        logger.info(f"Scope {scope!r} selected model {name} for {provider.value}")
        if scope == GLOBAL_SCOPE:
            await self.sync()

    async def _select_global_model(self, provider: ProviderId, name: str) -> None:
        # a verified model becomes current by moving it to the head of the ledger
        if self.ledger is not None and self.ledger.has_model(provider, name):
            index = self.ledger.names(provider).index(name)
            await self.ledger.reorder_model(provider, index, 0)
            return
        table = await self._model_table(CURRENT_MODELS_KEY)
        table[provider.value] = name
        await self.store.set_json(CURRENT_MODELS_KEY, table)

    async def reset_to_global(self, scope: str) -> ProviderId | None:
        """Drop the scope's overrides and follow the global selection again"""
        if scope == GLOBAL_SCOPE:
            raise ValueError("The global scope cannot be reset to itself")
        await self.store.remove(tool_provider_key(scope))
        await self.store.remove(tool_models_key(scope))

        state = self.state(scope)
        state.following_global_provider = True
        state.following_global_models = True
        state.tracks_global = True
        provider = await self._resolve_from_global(scope, persist_fallback=False)
        if provider is not None:
            await self.resolve_model(scope, provider)
        else:
            state.model = None
        logger.info(f"Scope {scope!r} reset to global selection")
        return provider

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self) -> list[str]:
        """Re-resolve every known scope; returns the scopes that changed"""
        changed: list[str] = []
        for scope in self.known_scopes():
            state = self.state(scope)
            before = (state.provider, state.model)
            provider = await self.resolve_provider(scope)
            if provider is not None:
                await self.resolve_model(scope, provider)
            else:
                state.model = None
            if (state.provider, state.model) != before:
                changed.append(scope)

        for scope in changed:
            logger.debug(f"Scope {scope!r} now uses {self.state(scope)}")
            for listener in list(self._listeners):
                await listener(scope, self.state(scope))
        return changed

    async def _on_activation_change(
        self, provider: ProviderId, is_active: bool, reason: ToggleReason
    ) -> None:
        await self.sync()


class SelectionWatcher:
    """Polls the store so scopes notice selections written by other writers"""

    def __init__(self, resolver: ConfigResolver, interval: float = 2.0) -> None:
        self.resolver = resolver
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.resolver.sync()
            except StorageError as e:
                logger.warning(f"Selection sync failed: {e}")
