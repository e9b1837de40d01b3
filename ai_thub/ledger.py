"""
Verified Model Ledger
=====================

Per-provider ordered list of models the user has successfully exercised.
Index 0 is the preferred ("current") model. Every mutation writes the new
list and the derived ``current_models`` table to storage before touching
memory; a failed second write rolls the first one back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .errors import DuplicateModel, StorageError
from .providers import ProviderId, default_model
from .storage import CURRENT_MODELS_KEY, VERIFIED_MODELS_KEY, KeyValueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedModel:
    """A model name confirmed to work with a provider key"""

    name: str
    order: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "order": self.order}


def _renumber(names: list[str]) -> list[VerifiedModel]:
    return [VerifiedModel(name=name, order=i) for i, name in enumerate(names)]


class VerifiedModelLedger:
    """Ordered verified-model lists for every provider"""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._models: dict[ProviderId, list[VerifiedModel]] = {
            p: [] for p in ProviderId
        }

    async def load(self) -> None:
        """Read ``verified_models``; stored orders are re-densified"""
        raw = await self.store.get_json(VERIFIED_MODELS_KEY)
        models: dict[ProviderId, list[VerifiedModel]] = {p: [] for p in ProviderId}
        if isinstance(raw, dict):
            for key, entries in raw.items():
                provider = ProviderId.parse(key)
                if provider is None or not isinstance(entries, list):
                    continue
                valid = [
                    e
                    for e in entries
                    if isinstance(e, dict) and isinstance(e.get("name"), str) and e["name"]
                ]
                valid.sort(key=lambda e: e.get("order", 0) if isinstance(e.get("order"), int) else 0)
                names: list[str] = []
                for entry in valid:
                    if entry["name"] not in names:
                        names.append(entry["name"])
                models[provider] = _renumber(names)
        self._models = models
        logger.debug(
            "Loaded verified models: "
            + ", ".join(f"{p.value}={len(m)}" for p, m in models.items())
        )

    def models(self, provider: ProviderId) -> list[VerifiedModel]:
        return list(self._models[provider])

    def names(self, provider: ProviderId) -> list[str]:
        return [m.name for m in self._models[provider]]

    def current_model(self, provider: ProviderId) -> str:
        """Order-0 model, or the provider default when nothing is verified"""
        models = self._models[provider]
        return models[0].name if models else default_model(provider)

    def current_models(self) -> dict[ProviderId, str]:
        return {p: self.current_model(p) for p in ProviderId}

    def has_model(self, provider: ProviderId, name: str) -> bool:
        return name in self.names(provider)

    async def add_model(self, provider: ProviderId, name: str) -> bool:
        """Insert ``name`` as the most-preferred model for ``provider``"""
        if not name or not name.strip():
            raise ValueError("Model name must be non-empty")
        names = self.names(provider)
        if name in names:
            raise DuplicateModel(provider.value, name)
        await self._commit(provider, [name, *names])
        logger.info(f"Verified model added for {provider.value}: {name}")
        return True

    async def reorder_model(
        self, provider: ProviderId, from_index: int, to_index: int
    ) -> bool:
        if from_index == to_index:
            return False
        names = self.names(provider)
        self._check_index(names, from_index)
        self._check_index(names, to_index)
        moved = names.pop(from_index)
        names.insert(to_index, moved)
        await self._commit(provider, names)
        return True

    async def remove_model(self, provider: ProviderId, index: int) -> bool:
        names = self.names(provider)
        self._check_index(names, index)
        removed = names.pop(index)
        await self._commit(provider, names)
        logger.info(f"Verified model removed for {provider.value}: {removed}")
        return True

    async def clear(self, provider: ProviderId) -> bool:
        """Drop every verified model (used when the API key is removed)"""
        if not self._models[provider]:
            return False
        await self._commit(provider, [])
        logger.info(f"Cleared verified models for {provider.value}")
        return True

    @staticmethod
    def _check_index(names: list[str], index: int) -> None:
        if not 0 <= index < len(names):
            raise IndexError(f"Model index {index} out of range (0..{len(names) - 1})")

    async def _commit(self, provider: ProviderId, names: list[str]) -> None:
        updated = dict(self._models)
        updated[provider] = _renumber(names)
        previous = await self.store.get(VERIFIED_MODELS_KEY)
        await self.store.set_json(
            VERIFIED_MODELS_KEY,
            {p.value: [m.to_dict() for m in entries] for p, entries in updated.items()},
        )
        current = {
            p.value: entries[0].name if entries else default_model(p)
            for p, entries in updated.items()
        }
        try:
            await self.store.set_json(CURRENT_MODELS_KEY, current)
        except StorageError:
            await self._restore(previous)
            raise
        self._models = updated

    async def _restore(self, previous: str | None) -> None:
        try:
            if previous is None:
                await self.store.remove(VERIFIED_MODELS_KEY)
            else:
                await self.store.set(VERIFIED_MODELS_KEY, previous)
        except StorageError as e:
            logger.error(f"Could not roll back {VERIFIED_MODELS_KEY}: {e}")
