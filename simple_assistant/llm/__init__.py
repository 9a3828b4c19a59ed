"""Chat providers - direct HTTP calls to OpenAI, Gemini and Claude."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Iterable, Sequence

import httpx

from simple_assistant.cancellation import CancelToken
from simple_assistant.config import ProviderConfig
from simple_assistant.exceptions import (
    ConfigError,
    OperationCancelledError,
    ParseError,
    ProviderError,
)
from simple_assistant.history import Message
from simple_assistant.logging import get_logger

log = get_logger(__name__)


def split_system(messages: Iterable[Message]) -> tuple[str | None, list[Message]]:
    """Separate the system preamble from the chat-role messages."""
    system: str | None = None
    chat: list[Message] = []
    for msg in messages:
        if msg.role == "system":
            if system is None:
                system = msg.content
            continue
        chat.append(msg)
    return system, chat


def _dig(data: Any, path: Sequence[str | int], label: str) -> str:
    """Walk a decoded JSON body along ``path`` and return non-empty text."""
    node = data
    for key in path:
        try:
            node = node[key]
        except (KeyError, IndexError, TypeError):
            raise ParseError(f"Unexpected {label} response format") from None
    if not isinstance(node, str) or not node:
        raise ParseError(f"Unexpected {label} response format")
    return node


class ChatProvider(ABC):
    """One hosted LLM backend: endpoint, auth scheme, body and reply shape."""

    name: str = ""
    label: str = ""
    default_model: str = ""

    @abstractmethod
    def url(self, model: str) -> str:
        pass

    @abstractmethod
    def headers(self, api_key: str) -> dict[str, str]:
        pass

    @abstractmethod
    def build_body(self, model: str, system: str | None, chat: list[Message]) -> dict[str, Any]:
        pass

    @abstractmethod
    def extract_text(self, data: Any) -> str:
        pass

    def resolve_model(self, model: str) -> str:
        return (model or "").strip() or self.default_model


class OpenAIProvider(ChatProvider):
    """OpenAI chat completions."""

    name = "openai"
    label = "OpenAI"
    default_model = "gpt-4o-mini"

    def url(self, model: str) -> str:
        return "https://api.openai.com/v1/chat/completions"

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def build_body(self, model: str, system: str | None, chat: list[Message]) -> dict[str, Any]:
        # System content stays inline as the first chat message.
        messages: list[dict[str, str]] = []
        if system is not None:
            messages.append({"role": "system", "content": system})
        messages.extend({"role": msg.role, "content": msg.content} for msg in chat)
        return {"model": model, "messages": messages}

    def extract_text(self, data: Any) -> str:
        return _dig(data, ("choices", 0, "message", "content"), self.label)


class GeminiProvider(ChatProvider):
    """Google Gemini generateContent."""

    name = "gemini"
    label = "Gemini"
    default_model = "gemini-2.5-flash"

    def url(self, model: str) -> str:
        return f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def headers(self, api_key: str) -> dict[str, str]:
        # Key travels in a header so it never appears in request URLs.
        return {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }

    def build_body(self, model: str, system: str | None, chat: list[Message]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if msg.role == "assistant" else "user",
                    "parts": [{"text": msg.content}],
                }
                for msg in chat
            ],
        }
        if system is not None:
            body["system_instruction"] = {"parts": [{"text": system}]}
        return body

    def extract_text(self, data: Any) -> str:
        return _dig(data, ("candidates", 0, "content", "parts", 0, "text"), self.label)


class ClaudeProvider(ChatProvider):
    """Anthropic messages API."""

    name = "claude"
    label = "Claude"
    default_model = "claude-sonnet-4-20250514"
    api_version = "2023-06-01"
    max_tokens = 4096

    def url(self, model: str) -> str:
        return "https://api.anthropic.com/v1/messages"

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    def build_body(self, model: str, system: str | None, chat: list[Message]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": msg.role, "content": msg.content} for msg in chat],
        }
        if system is not None:
            body["system"] = system
        return body

    def extract_text(self, data: Any) -> str:
        return _dig(data, ("content", 0, "text"), self.label)


PROVIDERS: dict[str, type[ChatProvider]] = {
    OpenAIProvider.name: OpenAIProvider,
    GeminiProvider.name: GeminiProvider,
    ClaudeProvider.name: ClaudeProvider,
}


def create_provider(name: str) -> ChatProvider:
    """Create a provider by name.

    Raises:
        ProviderError: if the name is not a registered provider
    """
    key = (name or "").strip().lower()
    provider_cls = PROVIDERS.get(key)
    if provider_cls is None:
        raise ProviderError(f"Invalid provider: {name!r}")
    return provider_cls()


class ProviderAdapter:
    """Sends a transcript to the configured provider and returns reply text."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 60.0):
        """Initialize the adapter.

        Args:
            client: Optional preconfigured HTTP client (tests inject a mock transport)
            timeout: Request timeout in seconds when creating a client
        """
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def send(
        self,
        config: ProviderConfig,
        messages: Sequence[Message],
        cancel_token: CancelToken | None = None,
    ) -> str:
        """Issue one completion request and return the reply text verbatim.

        Raises:
            ConfigError: empty API key
            ProviderError: unknown provider, transport failure or non-2xx status
            ParseError: reply field missing from the decoded body
            OperationCancelledError: token triggered before or during the request
        """
        provider = create_provider(config.provider)
        if not (config.api_key or "").strip():
            raise ConfigError("API Key is missing")

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        model = provider.resolve_model(config.model)
        system, chat = split_system(messages)
        url = provider.url(model)
        body = provider.build_body(model, system, chat)

        log.debug(
            "calling provider",
            provider=provider.name,
            model=model,
            msg_count=len(chat),
        )
        response = await self._post(url, body, provider.headers(config.api_key), cancel_token, provider)
        log.debug("provider response status", provider=provider.name, status=response.status_code)

        if not response.is_success:
            error_text = response.text
            raise ProviderError(
                f"{provider.label} Error: {response.status_code} - {error_text}",
                status_code=response.status_code,
                body=error_text,
            )

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Failed to parse {provider.label} response: {e}") from e
        return provider.extract_text(data)

    async def _post(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        cancel_token: CancelToken | None,
        provider: ChatProvider,
    ) -> httpx.Response:
        post_task = asyncio.create_task(self.client.post(url, json=body, headers=headers))
        cancel_task: asyncio.Task[bool] | None = None
        if cancel_token is not None:
            cancel_task = asyncio.create_task(cancel_token.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {post_task}
            if cancel_task is not None:
                wait_tasks.add(cancel_task)
            done, _ = await asyncio.wait(wait_tasks, return_when=asyncio.FIRST_COMPLETED)

            if cancel_token is not None and cancel_token.cancelled:
                post_task.cancel()
                try:
                    await post_task
                except (asyncio.CancelledError, httpx.HTTPError):
                    pass
                raise OperationCancelledError("Request cancelled")

            try:
                return post_task.result()
            except httpx.HTTPError as e:
                raise ProviderError(f"{provider.label} HTTP error: {e}") from e
        except asyncio.CancelledError:
            post_task.cancel()
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
                try:
                    await cancel_task
                except asyncio.CancelledError:
                    pass

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
