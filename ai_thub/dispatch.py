"""
Dispatch Engine
===============

Executes provider calls under one shared throttle:

    IDLE -> THROTTLING -> REQUESTING -> SUCCEEDED
                              |  ^
                              v  |
                         RETRY_PENDING      (HTTP 429 only)
                              |
                              v
                            FAILED

- Only one call may be in flight; a concurrent call fails immediately
  with ``TranslationInProgress`` instead of queueing.
- ``rate_limit_delay`` is a single budget across every provider and scope.
  The engine owns the last-dispatch timestamp.
- HTTP 429 is retried after ``retry_delay * attempt`` up to ``max_retries``
  times (``max_retries + 1`` calls in total). Nothing else is retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum, auto
from typing import Any

import httpx

from .classifier import (
    Classification,
    ErrorCategory,
    NormalizedResult,
    ProviderInfo,
    classify_failure,
    failure,
    sanitize_for_logging,
)
from .config import Settings
from .errors import TranslationInProgress
from .providers import (
    ProviderCall,
    ProviderId,
    ProviderStrategy,
    TranslationRequest,
    UnsupportedInput,
    build_strategies,
    format_table_response,
)

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = "Network error. Please check your internet connection."


class DispatchState(Enum):
    IDLE = auto()
    THROTTLING = auto()
    REQUESTING = auto()
    RETRY_PENDING = auto()
    SUCCEEDED = auto()
    FAILED = auto()


class DispatchEngine:
    """Single-flight, throttled executor for provider calls"""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        strategies: dict[ProviderId, ProviderStrategy] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.strategies = strategies or build_strategies(
            self.settings.endpoint_overrides, self.settings.max_tokens
        )
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._sleep = sleep
        self._last_dispatch: float | None = None
        self._in_flight = False
        self.state = DispatchState.IDLE

    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def last_dispatch(self) -> float | None:
        return self._last_dispatch

    def strategy(self, provider: ProviderId) -> ProviderStrategy:
        return self.strategies[provider]

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _pause(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def translate(
        self,
        request: TranslationRequest,
        provider: ProviderId,
        api_key: str,
        model: str,
    ) -> NormalizedResult:
        """Translate ``request`` with ``provider``/``model``"""
        strategy = self.strategy(provider)
        try:
            call = strategy.build_translation(request, api_key, model)
        except UnsupportedInput as e:
            return failure(
                str(e),
                Classification(ErrorCategory.UNKNOWN_PROVIDER_ERROR, False, False),
                provider=provider.value,
                model=model,
            )
        return await self._dispatch(strategy, call, model, format_output=True)

    async def verify(
        self, provider: ProviderId, api_key: str, model: str
    ) -> NormalizedResult:
        """Send the short verification request for a key/model pair"""
        strategy = self.strategy(provider)
        call = strategy.build_verification(api_key, model)
        return await self._dispatch(strategy, call, model, format_output=False)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        strategy: ProviderStrategy,
        call: ProviderCall,
        model: str,
        format_output: bool,
    ) -> NormalizedResult:
        if self._in_flight:
            raise TranslationInProgress()

        self._in_flight = True
        try:
            self.state = DispatchState.THROTTLING
            await self._throttle()
            result = await self._execute(strategy, call, model, format_output)
            self.state = (
                DispatchState.SUCCEEDED if result.success else DispatchState.FAILED
            )
            return result
        except BaseException:
            self.state = DispatchState.FAILED
            raise
        finally:
            self._in_flight = False

    async def _throttle(self) -> None:
        if self._last_dispatch is None:
            return
        wait = self.settings.rate_limit_delay - (self._clock() - self._last_dispatch)
        if wait > 0:
            logger.debug(f"Throttling dispatch for {wait:.3f}s")
            await self._pause(wait)

    async def _execute(
        self,
        strategy: ProviderStrategy,
        call: ProviderCall,
        model: str,
        format_output: bool,
    ) -> NormalizedResult:
        provider = strategy.provider.value
        attempt = 0

        while True:
            attempt += 1
            self.state = DispatchState.REQUESTING
            self._last_dispatch = self._clock()
            logger.info(f"Dispatching to {provider} ({model}), attempt {attempt}")

            try:
                response = await self._get_client().post(
                    call.url,
                    headers=call.headers,
                    json=call.body,
                    params=call.params or None,
                    timeout=self.settings.timeout,
                )
            except httpx.RequestError as e:
                logger.error(
                    f"Transport error talking to {provider}: "
                    f"{sanitize_for_logging(str(e) or type(e).__name__)}"
                )
                return failure(
                    NETWORK_ERROR_MESSAGE,
                    classify_failure(None, str(e), transport_error=True),
                    provider=provider,
                    model=model,
                    raw_response={"exception": type(e).__name__, "detail": str(e)},
                    attempts=attempt,
                )

            payload = _decode(response)

            if response.status_code == 200:
                text = strategy.extract_text(payload)
                if text:
                    text = text.strip()
                    return NormalizedResult(
                        translated_text=format_table_response(text) if format_output else text,
                        success=True,
                        raw_response=payload,
                        provider_info=ProviderInfo(provider, model),
                        status_code=200,
                        attempts=attempt,
                    )
                logger.warning(f"{provider} returned 200 without text")
                return failure(
                    "No translation received",
                    Classification(ErrorCategory.UNKNOWN_PROVIDER_ERROR, False, False),
                    provider=provider,
                    model=model,
                    status_code=200,
                    raw_response=payload,
                    attempts=attempt,
                )

            message, error_type = strategy.extract_error(payload)
            if not message:
                message = response.text.strip() if payload is None and response.text else None
            message = message or f"HTTP {response.status_code}: {response.reason_phrase or 'Unknown error'}"

            if response.status_code == 429 and attempt <= self.settings.max_retries:
                self.state = DispatchState.RETRY_PENDING
                delay = self.settings.retry_delay * attempt
                logger.warning(
                    f"Rate limited by {provider}, retrying in {delay:.1f}s "
                    f"({attempt}/{self.settings.max_retries})"
                )
                await self._pause(delay)
                continue

            classification = classify_failure(response.status_code, message)
            logger.error(
                f"{provider} request failed with HTTP {response.status_code} "
                f"[{classification.category.name}]: {sanitize_for_logging(message)}"
            )
            result = failure(
                message,
                classification,
                provider=provider,
                model=model,
                status_code=response.status_code,
                raw_response=payload if payload is not None else response.text,
                attempts=attempt,
            )
            if error_type:
                result.metadata["error_type"] = error_type
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                result.metadata["retry_after"] = retry_after
            return result


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
