"""
Provider Registry
=================

Tracks which providers are activated. The activation map is persisted
under ``@active_providers``; the in-memory copy only changes after the
write succeeds, so a failed toggle leaves both sides untouched and the
caller reverts any optimistic UI state.

Listeners registered with ``subscribe`` are awaited after each successful
toggle; the config resolver uses this to re-sync scopes that follow the
global selection. Listener storage failures reach the caller of ``toggle``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum, auto

from .errors import MissingApiKey, StorageError
from .ledger import VerifiedModelLedger
from .providers import ProviderId
from .storage import ACTIVE_PROVIDERS_KEY, KeyValueStore, api_key_key

logger = logging.getLogger(__name__)


class ToggleReason(Enum):
    """Why a provider's activation bit is changing"""

    USER = auto()
    API_KEY_REMOVED = auto()
    CREDENTIAL_FAILURE = auto()


ActivationListener = Callable[[ProviderId, bool, ToggleReason], Awaitable[None]]


class ProviderRegistry:
    """Activation state for every provider"""

    def __init__(
        self, store: KeyValueStore, ledger: VerifiedModelLedger | None = None
    ) -> None:
        self.store = store
        self.ledger = ledger
        self._active: dict[ProviderId, bool] = {p: False for p in ProviderId}
        self._listeners: list[ActivationListener] = []

    async def load(self) -> None:
        """Load the persisted activation map.

        Providers marked active without a stored key are treated as
        inactive; nothing is written back until the next toggle.
        """
        raw = await self.store.get_json(ACTIVE_PROVIDERS_KEY)
        active = {p: False for p in ProviderId}
        if isinstance(raw, dict):
            for key, value in raw.items():
                provider = ProviderId.parse(key)
                if provider is not None and value is True:
                    active[provider] = True

        for provider, is_active in active.items():
            if is_active and not await self.has_api_key(provider):
                logger.warning(
                    f"Provider {provider.value} was active without an API key; "
                    "treating it as inactive"
                )
                active[provider] = False

        self._active = active

    def is_active(self, provider: ProviderId) -> bool:
        return self._active.get(provider, False)

    def active_providers(self) -> list[ProviderId]:
        """Active providers in fixed enumeration order"""
        return [p for p in ProviderId if self._active.get(p, False)]

    def first_active(self) -> ProviderId | None:
        active = self.active_providers()
        return active[0] if active else None

    def snapshot(self) -> dict[ProviderId, bool]:
        return dict(self._active)

    async def get_api_key(self, provider: ProviderId) -> str | None:
        key = await self.store.get(api_key_key(provider.value))
        return key or None

    async def has_api_key(self, provider: ProviderId) -> bool:
        key = await self.get_api_key(provider)
        return bool(key and key.strip())

    async def toggle(
        self,
        provider: ProviderId,
        is_active: bool,
        reason: ToggleReason = ToggleReason.USER,
    ) -> None:
        """Persist the activation bit for ``provider``.

        Raises ``MissingApiKey`` when activating a provider with no key and
        lets ``StorageError`` propagate; in both cases nothing changes. A
        listener that fails to persist raises ``StorageError`` after the
        toggle itself has been committed.
        """
        if is_active and not await self.has_api_key(provider):
            raise MissingApiKey(provider.value)

        updated = dict(self._active)
        updated[provider] = is_active
        await self.store.set_json(
            ACTIVE_PROVIDERS_KEY, {p.value: v for p, v in updated.items()}
        )
        self._active = updated
        logger.info(
            f"Provider {provider.value} {'activated' if is_active else 'deactivated'} "
            f"({reason.name.lower()})"
        )

        if (
            not is_active
            and reason is ToggleReason.API_KEY_REMOVED
            and self.ledger is not None
        ):
            await self.ledger.clear(provider)

        await self._notify(provider, is_active, reason)

    async def set_api_key(self, provider: ProviderId, api_key: str) -> None:
        api_key = api_key.strip()
        if not api_key:
            raise ValueError("API key must be non-empty")
        await self.store.set(api_key_key(provider.value), api_key)

    async def remove_api_key(self, provider: ProviderId) -> None:
        """Delete the key, deactivate the provider and clear its ledger"""
        await self.store.remove(api_key_key(provider.value))
        await self.toggle(provider, False, ToggleReason.API_KEY_REMOVED)

    def subscribe(self, listener: ActivationListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(
        self, provider: ProviderId, is_active: bool, reason: ToggleReason
    ) -> None:
        # every listener runs; the first storage failure is re-raised afterwards
        storage_error: StorageError | None = None
        for listener in list(self._listeners):
            try:
                await listener(provider, is_active, reason)
            except StorageError as e:
                logger.error(f"Activation listener could not persist for {provider.value}: {e}")
                if storage_error is None:
                    storage_error = e
            except Exception:
                logger.exception(f"Activation listener failed for {provider.value}")
        if storage_error is not None:
            raise storage_error
