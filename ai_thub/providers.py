"""
Provider Strategies
===================
One strategy per provider describes the wire contract: endpoint URL,
auth headers, JSON body, and where the text (or the error message) lives
in the response. The dispatch engine never branches on provider identity;
adding a provider means adding a strategy and registering it in
``STRATEGIES``.

Request bodies match what the mobile app sends.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ProviderId(str, Enum):
    """Supported providers, in fallback order"""

    OPENAI = "openai"
    GOOGLE = "google"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"
    GROQ = "groq"

    @classmethod
    def parse(cls, value: str | None) -> ProviderId | None:
        """Return the member for ``value``, or None for unknown/empty names"""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


DEFAULT_MODELS: dict[ProviderId, str] = {
    ProviderId.OPENAI: "gpt-3.5-turbo",
    ProviderId.GOOGLE: "gemini-1.5-flash",
    ProviderId.ANTHROPIC: "claude-3-opus-20240229",
    ProviderId.OPENROUTER: "deepseek/deepseek-r1:free",
    ProviderId.GROQ: "llama3-8b-8192",
}

MAX_OUTPUT_TOKENS = 7999
VERIFY_MAX_TOKENS = 10
VERIFY_MESSAGE = "Hello, this is a test message."

_TABLE_RULES = """If the content contains a table or structured data:
1. Preserve the table format using markdown or plaintext alignment
2. Ensure all columns are properly aligned
3. Maintain consistent spacing between elements
4. Keep numbers right-aligned
5. Wrap long text within reasonable width (max 35 characters per cell)"""

TRANSLATION_PROMPTS = {
    "image_only": (
        "Analyze the following image and translate any text or content from "
        "{from_language} to {to_language}. \n" + _TABLE_RULES
    ),
    "image_with_text": (
        "Translate the following content from {from_language} to {to_language}. "
        "{additional_text}\n" + _TABLE_RULES
    ),
    "text_only": (
        "Translate the following text from {from_language} to {to_language}. \n"
        + _TABLE_RULES
        + "\n\nText to translate:\n{text}"
    ),
}


def default_model(provider: ProviderId) -> str:
    """Hardcoded fallback model for a provider"""
    return DEFAULT_MODELS[provider]


def is_base64_image(text: str) -> bool:
    """True for ``data:image/...;base64,...`` payloads"""
    return text.startswith("data:image/") and ";base64," in text


def split_data_url(data_url: str) -> tuple[str, str]:
    """Return ``(mime_type, base64_data)`` for a data URL"""
    header, _, data = data_url.partition(",")
    mime_type = header.split(";")[0].split(":", 1)[-1]
    return mime_type, data


def format_table_response(text: str) -> str:
    """Wrap over-long lines of table-like output at column separators"""
    lines = text.split("\n")
    is_table = any("|" in line or re.search(r"\s{3,}", line) for line in lines)
    if not is_table:
        return text

    formatted: list[str] = []
    for line in lines:
        if len(line) <= 40:
            formatted.append(line)
            continue
        current_length = 0
        out = ""
        for part in re.split(r"(\s{2,}|\|)", line):
            if current_length + len(part) > 40:
                out += "\n  " + part
                current_length = 2 + len(part)
            else:
                out += part
                current_length += len(part)
        formatted.append(out)
    return "\n".join(formatted)


@dataclass
class TranslationRequest:
    """A single translation job as submitted by a tool"""

    text: str
    from_language: str
    to_language: str
    model: str | None = None
    additional_text: str | None = None

    @property
    def is_image(self) -> bool:
        return is_base64_image(self.text)

    def prompt(self) -> str:
        """Render the instruction text for this request"""
        if self.is_image:
            if self.additional_text:
                template = TRANSLATION_PROMPTS["image_with_text"]
            else:
                template = TRANSLATION_PROMPTS["image_only"]
        else:
            template = TRANSLATION_PROMPTS["text_only"]
        return template.format(
            from_language=self.from_language,
            to_language=self.to_language,
            additional_text=self.additional_text or "",
            text=self.text,
        )


@dataclass
class ProviderCall:
    """A fully built outbound HTTP call"""

    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    params: dict[str, str] = field(default_factory=dict)


class UnsupportedInput(ValueError):
    """The provider cannot handle this kind of request (e.g. images)"""


class ProviderStrategy(ABC):
    """Wire contract for one provider"""

    provider: ProviderId
    endpoint: str = ""

    def __init__(
        self, endpoint: str | None = None, max_tokens: int = MAX_OUTPUT_TOKENS
    ) -> None:
        if endpoint:
            self.endpoint = endpoint
        self.max_tokens = max_tokens

    def url(self, model: str) -> str:
        return self.endpoint

    @abstractmethod
    def headers(self, api_key: str) -> dict[str, str]:
        """Auth and content headers"""

    @abstractmethod
    def translation_body(self, request: TranslationRequest, model: str) -> dict[str, Any]:
        """JSON body for a translation request"""

    @abstractmethod
    def verification_body(self, model: str) -> dict[str, Any]:
        """JSON body for the small key-verification request"""

    @abstractmethod
    def extract_text(self, payload: Any) -> str | None:
        """Pull the generated text out of a success payload"""

    def build_translation(
        self, request: TranslationRequest, api_key: str, model: str
    ) -> ProviderCall:
        return ProviderCall(
            url=self.url(model),
            headers=self.headers(api_key),
            body=self.translation_body(request, model),
        )

    def build_verification(self, api_key: str, model: str) -> ProviderCall:
        return ProviderCall(
            url=self.verification_url(model),
            headers=self.headers(api_key),
            body=self.verification_body(model),
        )

    def verification_url(self, model: str) -> str:
        return self.url(model)

    def extract_error(self, payload: Any) -> tuple[str | None, str | None]:
        """Return ``(message, error_type)`` from an error payload"""
        if not isinstance(payload, dict):
            return None, None
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            error_type = error.get("type") or error.get("status")
            return (
                str(message) if message else None,
                str(error_type) if error_type else None,
            )
        if isinstance(error, str):
            return error, None
        return None, None


class ChatCompletionsStrategy(ProviderStrategy):
    """OpenAI-compatible ``/chat/completions`` providers"""

    temperature = 0.3

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    def translation_body(self, request: TranslationRequest, model: str) -> dict[str, Any]:
        if request.is_image:
            content: Any = [
                {"type": "text", "text": request.prompt()},
                {"type": "image_url", "image_url": {"url": request.text}},
            ]
        else:
            content = request.prompt()
        return {
            "model": model,
            "messages": [{"role": "user", "content": content}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def verification_body(self, model: str) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [{"role": "user", "content": VERIFY_MESSAGE}],
            "max_tokens": VERIFY_MAX_TOKENS,
        }

    def extract_text(self, payload: Any) -> str | None:
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        return content if isinstance(content, str) else None


class OpenAIStrategy(ChatCompletionsStrategy):
    provider = ProviderId.OPENAI
    endpoint = "https://api.openai.com/v1/chat/completions"


class OpenRouterStrategy(ChatCompletionsStrategy):
    provider = ProviderId.OPENROUTER
    endpoint = "https://openrouter.ai/api/v1/chat/completions"
    referer = "https://github.com/MohammedRehanAlam/AI-THub"

    def headers(self, api_key: str) -> dict[str, str]:
        headers = super().headers(api_key)
        headers["HTTP-Referer"] = self.referer
        return headers


class GroqStrategy(ChatCompletionsStrategy):
    provider = ProviderId.GROQ
    endpoint = "https://api.groq.com/openai/v1/chat/completions"

    def translation_body(self, request: TranslationRequest, model: str) -> dict[str, Any]:
        if request.is_image:
            raise UnsupportedInput(
                "Groq does not currently support image analysis. Please use a "
                "text-only input or choose a different provider for image translation."
            )
        return super().translation_body(request, model)


class GoogleStrategy(ProviderStrategy):
    """Gemini ``generateContent``"""

    provider = ProviderId.GOOGLE
    endpoint = "https://generativelanguage.googleapis.com/v1/models/{model}:generateContent"
    verify_endpoint = (
        "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
    )

    def url(self, model: str) -> str:
        return self.endpoint.format(model=model)

    def verification_url(self, model: str) -> str:
        return self.verify_endpoint.format(model=model)

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": api_key,
        }

    def translation_body(self, request: TranslationRequest, model: str) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": request.prompt()}]
        if request.is_image:
            mime_type, data = split_data_url(request.text)
            parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": 0.2,
                "maxOutputTokens": self.max_tokens,
                "topP": 0.8,
                "topK": 40,
            },
        }

    def verification_body(self, model: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": VERIFY_MESSAGE}]}],
            "generationConfig": {"maxOutputTokens": VERIFY_MAX_TOKENS},
        }

    def extract_text(self, payload: Any) -> str | None:
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None
        return text if isinstance(text, str) else None


class AnthropicStrategy(ProviderStrategy):
    """Anthropic Messages API"""

    provider = ProviderId.ANTHROPIC
    endpoint = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
        }

    def translation_body(self, request: TranslationRequest, model: str) -> dict[str, Any]:
        content: list[dict[str, Any]] = [{"type": "text", "text": request.prompt()}]
        if request.is_image:
            mime_type, data = split_data_url(request.text)
            content.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": mime_type, "data": data},
                }
            )
        return {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": 0.2,
            "messages": [{"role": "user", "content": content}],
        }

    def verification_body(self, model: str) -> dict[str, Any]:
        return {
            "model": model,
            "max_tokens": VERIFY_MAX_TOKENS,
            "messages": [{"role": "user", "content": VERIFY_MESSAGE}],
        }

    def extract_text(self, payload: Any) -> str | None:
        try:
            text = payload["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None
        return text if isinstance(text, str) else None


STRATEGIES: dict[ProviderId, type[ProviderStrategy]] = {
    ProviderId.OPENAI: OpenAIStrategy,
    ProviderId.GOOGLE: GoogleStrategy,
    ProviderId.ANTHROPIC: AnthropicStrategy,
    ProviderId.OPENROUTER: OpenRouterStrategy,
    ProviderId.GROQ: GroqStrategy,
}


def build_strategies(
    endpoint_overrides: dict[str, str] | None = None,
    max_tokens: int = MAX_OUTPUT_TOKENS,
) -> dict[ProviderId, ProviderStrategy]:
    """Instantiate every registered strategy, applying endpoint overrides"""
    overrides = endpoint_overrides or {}
    strategies: dict[ProviderId, ProviderStrategy] = {}
    for provider, strategy_cls in STRATEGIES.items():
        endpoint = overrides.get(provider.value)
        if endpoint:
            logger.info(f"Using endpoint override for {provider.value}: {endpoint}")
        strategies[provider] = strategy_cls(endpoint, max_tokens=max_tokens)
    return strategies
