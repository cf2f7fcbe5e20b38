"""
LLM Client

HTTP client for the models that explain anomalies:
- OpenAI chat completions
- Anthropic messages
- Ollama (local models)
- Mock (canned structured answer, no network)

Each provider differs only in its wire format: where requests go, how the
payload is shaped, and how responses and stream lines are read. The request,
retry and streaming flow is shared.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Literal, Optional

import httpx

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    MOCK = "mock"


@dataclass
class Message:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass
class LLMResponse:
    """A completed (non-streamed) answer."""

    content: str
    model: str
    provider: LLMProvider
    usage: dict = field(default_factory=dict)
    latency_ms: float = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "model": self.model,
            "provider": self.provider.value,
            "usage": self.usage,
            "latency_ms": round(self.latency_ms, 1),
            "timestamp": self.timestamp.isoformat(),
        }


MOCK_ANALYSIS = """SUMMARY: Latency spike consistent with downstream resource contention.
CAUSES:
- Downstream dependency responded slowly
- Resource saturation on the serving host
RECOMMENDATIONS:
- Inspect the slowest child spans of the trace
- Check CPU and connection pool utilization for the service
CONFIDENCE: medium"""

DEFAULT_MODELS = {
    LLMProvider.OPENAI: "gpt-4o-mini",
    LLMProvider.ANTHROPIC: "claude-3-5-haiku-latest",
    LLMProvider.OLLAMA: "llama3.2:1b",
    LLMProvider.MOCK: "mock-model",
}

DEFAULT_BASE_URLS = {
    LLMProvider.OPENAI: "https://api.openai.com/v1",
    LLMProvider.ANTHROPIC: "https://api.anthropic.com/v1",
    LLMProvider.OLLAMA: "http://localhost:11434",
    LLMProvider.MOCK: "",
}

API_KEY_ENV = {
    LLMProvider.OPENAI: "OPENAI_API_KEY",
    LLMProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
}

ANTHROPIC_VERSION = "2023-06-01"


def _usage(prompt_tokens: int, completion_tokens: int) -> dict:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


class LLMClient:
    """
    Chat client for one provider.

    Usage:
        llm = LLMClient(provider=LLMProvider.OLLAMA)
        response = await llm.chat([Message(role="user", content=prompt)])
        async for fragment in llm.chat_stream(messages):
            ...
    """

    DEFAULT_MODELS = DEFAULT_MODELS

    def __init__(
        self,
        provider: LLMProvider = LLMProvider.OLLAMA,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 2,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ):
        """
        Args:
            provider: LLM provider to use
            model: Model name (LLM_MODEL, then the provider default)
            api_key: API key (provider env var when None)
            base_url: API base URL (OLLAMA_HOST for Ollama when None)
            timeout: Request timeout in seconds
            max_retries: Attempts for non-streaming requests
            temperature: Sampling temperature
            max_tokens: Completion token cap
        """
        self.provider = provider
        self.model = model or os.getenv("LLM_MODEL") or DEFAULT_MODELS[provider]
        self.timeout = timeout
        self.max_retries = max_retries
        self.temperature = temperature
        self.max_tokens = max_tokens

        key_env = API_KEY_ENV.get(provider)
        self.api_key = api_key if api_key is not None else (os.getenv(key_env) if key_env else None)

        if base_url:
            self.base_url = base_url.rstrip("/")
        elif provider == LLMProvider.OLLAMA:
            self.base_url = os.getenv("OLLAMA_HOST", DEFAULT_BASE_URLS[provider]).rstrip("/")
        else:
            self.base_url = DEFAULT_BASE_URLS[provider]

        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    # -------------------------------------------------------------------------
    # Wire formats
    # -------------------------------------------------------------------------

    def _endpoint(self) -> tuple[str, dict]:
        """Request URL and headers for the provider."""
        if self.provider == LLMProvider.OPENAI:
            return f"{self.base_url}/chat/completions", {
                "Authorization": f"Bearer {self.api_key}",
            }
        if self.provider == LLMProvider.ANTHROPIC:
            return f"{self.base_url}/messages", {
                "x-api-key": self.api_key or "",
                "anthropic-version": ANTHROPIC_VERSION,
            }
        if self.provider == LLMProvider.OLLAMA:
            return f"{self.base_url}/api/chat", {}
        raise ValueError(f"Provider {self.provider.value} has no HTTP endpoint")

    def _payload(
        self,
        messages: list[Message],
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> dict:
        chat = [{"role": m.role, "content": m.content} for m in messages]

        if self.provider == LLMProvider.ANTHROPIC:
            # System prompt travels outside the message list
            system = "\n\n".join(m["content"] for m in chat if m["role"] == "system")
            payload = {
                "model": self.model,
                "messages": [m for m in chat if m["role"] != "system"],
                "max_tokens": max_tokens,
                "temperature": temperature,
                "stream": stream,
            }
            if system:
                payload["system"] = system
            return payload

        if self.provider == LLMProvider.OLLAMA:
            options = {"temperature": temperature, "num_predict": max_tokens}
            if stream:
                # Small local models loop without a repeat penalty
                options.update({"repeat_penalty": 1.3, "repeat_last_n": 64})
            return {"model": self.model, "messages": chat, "options": options, "stream": stream}

        return {
            "model": self.model,
            "messages": chat,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }

    def _parse_response(self, data: dict) -> LLMResponse:
        if self.provider == LLMProvider.OPENAI:
            usage = data.get("usage", {})
            content = data["choices"][0]["message"]["content"]
            tokens = _usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0))
        elif self.provider == LLMProvider.ANTHROPIC:
            usage = data.get("usage", {})
            content = "".join(b.get("text", "") for b in data["content"] if b.get("type") == "text")
            tokens = _usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0))
        else:
            content = data["message"]["content"]
            tokens = _usage(data.get("prompt_eval_count", 0), data.get("eval_count", 0))

        return LLMResponse(
            content=content,
            model=data.get("model", self.model),
            provider=self.provider,
            usage=tokens,
        )

    def _parse_stream_line(self, line: str) -> Optional[str]:
        """Text fragment carried by one stream line, if any."""
        line = line.strip()
        if not line:
            return None

        if self.provider == LLMProvider.OLLAMA:
            # Newline-delimited JSON
            raw = line
        elif line.startswith("data:"):
            # Server-sent events
            raw = line[5:].strip()
            if raw == "[DONE]":
                return None
        else:
            return None

        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            return None

        if self.provider == LLMProvider.OPENAI:
            choices = event.get("choices") or [{}]
            return choices[0].get("delta", {}).get("content") or None
        if self.provider == LLMProvider.ANTHROPIC:
            if event.get("type") != "content_block_delta":
                return None
            return event.get("delta", {}).get("text") or None
        return event.get("message", {}).get("content") or None

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _complete(self, messages: list[Message], temperature: float, max_tokens: int) -> LLMResponse:
        if self.provider == LLMProvider.MOCK:
            return LLMResponse(
                content=MOCK_ANALYSIS,
                model=self.model,
                provider=self.provider,
                usage=_usage(10, 20),
            )

        url, headers = self._endpoint()
        client = await self._get_client()
        response = await client.post(
            url,
            headers=headers,
            json=self._payload(messages, temperature, max_tokens, stream=False),
        )
        response.raise_for_status()
        return self._parse_response(response.json())

    async def chat(
        self,
        messages: list[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """
        Complete a conversation.

        Failed attempts are retried with exponential backoff; the last error
        is raised once `max_retries` attempts have failed.
        """
        temperature = self.temperature if temperature is None else temperature
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        start = time.time()
        attempts = max(self.max_retries, 1)

        for attempt in range(1, attempts + 1):
            try:
                response = await self._complete(messages, temperature, max_tokens)
            except Exception as e:
                logger.warning(
                    f"{self.provider.value} request failed (attempt {attempt}/{attempts}): {e}"
                )
                if attempt == attempts:
                    raise
                await asyncio.sleep(2 ** (attempt - 1))
                continue

            response.latency_ms = (time.time() - start) * 1000
            return response

    async def chat_stream(
        self,
        messages: list[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """
        Stream a completion as text fragments.

        Streams are not retried: an error mid-stream propagates to the caller.
        """
        temperature = self.temperature if temperature is None else temperature
        max_tokens = self.max_tokens if max_tokens is None else max_tokens

        if self.provider == LLMProvider.MOCK:
            for word in MOCK_ANALYSIS.split(" "):
                yield word + " "
            return

        url, headers = self._endpoint()
        client = await self._get_client()
        async with client.stream(
            "POST",
            url,
            headers=headers,
            json=self._payload(messages, temperature, max_tokens, stream=True),
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                fragment = self._parse_stream_line(line)
                if fragment:
                    yield fragment

    async def health_check(self) -> bool:
        """Whether the provider can be used."""
        if self.provider == LLMProvider.MOCK:
            return True
        if self.provider != LLMProvider.OLLAMA:
            return bool(self.api_key)

        try:
            client = await self._get_client()
            response = await client.get(f"{self.base_url}/api/tags", timeout=2.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


def _ollama_running(url: str = "http://localhost:11434") -> bool:
    try:
        return httpx.get(f"{url}/api/tags", timeout=2).status_code == 200
    except httpx.HTTPError:
        return False


def get_best_available_client() -> LLMClient:
    """
    Client for the first usable provider.

    LLM_PROVIDER wins when set. Otherwise: OpenAI key, Anthropic key,
    a reachable Ollama, and finally the mock.
    """
    configured = os.getenv("LLM_PROVIDER")
    if configured:
        return LLMClient(provider=LLMProvider(configured.lower()))

    for provider in (LLMProvider.OPENAI, LLMProvider.ANTHROPIC):
        if os.getenv(API_KEY_ENV[provider]):
            return LLMClient(provider=provider)

    if os.getenv("OLLAMA_HOST") or _ollama_running():
        return LLMClient(provider=LLMProvider.OLLAMA)

    logger.warning("No LLM provider available, using mock")
    return LLMClient(provider=LLMProvider.MOCK)
