"""
LLM provider clients behind a uniform chat contract.

This module provides:
- One client class per backend flavour (OpenAI, Azure OpenAI, Dashscope,
  Ollama and any OpenAI-compatible custom endpoint)
- A shared ``chat(messages, options)`` call returning content, token usage,
  model and finish reason
- Translation of transport and API failures into ``ProviderError``
- Construction from a stored ``LlmConfig`` with credential decoding

The OpenAI and Azure backends go through the official ``openai`` SDK; the
others are plain JSON-over-HTTP calls made with ``httpx``.
"""

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from openai import APIError, APIStatusError, AsyncAzureOpenAI, AsyncOpenAI
from pydantic import BaseModel, Field

from traceval.models import LlmConfig, ProviderKind
from traceval.utils import ConfigurationError, Timer, decrypt_api_key, get_config


OPENAI_BASE_URL = "https://api.openai.com/v1"
DASHSCOPE_BASE_URL = "https://dashscope.aliyuncs.com/api/v1"
OLLAMA_BASE_URL = "http://localhost:11434"
AZURE_API_VERSION = "2024-02-01"


class ProviderError(Exception):
    """Raised when an LLM provider call fails."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        self.message = message
        prefix = f"{provider} API error"
        if status_code is not None:
            prefix += f" ({status_code})"
        super().__init__(f"{prefix}: {message}")


class ChatOptions(BaseModel):
    """Sampling options. Unset values fall back to the provider's defaults."""
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    top_p: Optional[float] = Field(None, gt=0.0, le=1.0)


class ChatUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResult(BaseModel):
    """Normalized chat completion result."""
    content: str
    usage: ChatUsage = Field(default_factory=ChatUsage)
    model: str
    finish_reason: str = "stop"


class BaseProvider:
    """Common behaviour of every provider client."""

    kind: str = ""
    default_top_p: float = 1.0

    def __init__(
        self,
        model_name: str,
        api_key: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.model_name = model_name
        self.api_key = api_key
        self.api_endpoint = api_endpoint.rstrip("/") if api_endpoint else None
        self.options = dict(options or {})
        self.timeout = timeout if timeout is not None else get_config()["PROVIDER_TIMEOUT_SECONDS"]
        # Runs before any client exists so a rejected config leaves nothing to close
        self._validate()
        # Injected clients belong to the caller and are never closed here
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.timeout)

    def _validate(self) -> None:
        """Raise ProviderError if the settings cannot work for this backend."""
        pass

    async def chat(self, messages: List[Dict[str, str]], options: Optional[ChatOptions] = None) -> ChatResult:
        raise NotImplementedError

    async def test_connection(self) -> bool:
        """
        Send a tiny prompt to check that the backend answers.

        Returns:
            bool: True if the call succeeded
        """
        try:
            await self.chat([{"role": "user", "content": "Hello"}], ChatOptions(max_tokens=10))
            return True
        except ProviderError as e:
            logger.warning("Provider connection test failed", provider=self.kind, error=str(e))
            return False

    def _sampling(self, options: Optional[ChatOptions]) -> Dict[str, Any]:
        options = options or ChatOptions()
        return {
            "temperature": options.temperature if options.temperature is not None else 0.7,
            "max_tokens": options.max_tokens if options.max_tokens is not None else 1024,
            "top_p": options.top_p if options.top_p is not None else self.default_top_p,
        }

    async def _post_json(self, url: str, payload: Dict[str, Any],
                         headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """POST a JSON payload and return the decoded JSON body."""
        try:
            response = await self._http.post(url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise ProviderError(self.kind, f"request timed out: {e}")
        except httpx.HTTPError as e:
            raise ProviderError(self.kind, f"request failed: {e}")

        if response.is_error:
            raise ProviderError(self.kind, _error_message(response), status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise ProviderError(self.kind, "response body is not JSON", status_code=response.status_code)
        if not isinstance(data, dict):
            raise ProviderError(self.kind, "response body is not a JSON object", status_code=response.status_code)
        return data

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


def _error_message(response: httpx.Response) -> str:
    """Best-effort extraction of an error message from a failed response."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return response.reason_phrase or f"HTTP {response.status_code}"


class _OpenAISDKProvider(BaseProvider):
    """Shared completion call for the SDK-backed providers."""

    def _build_client(self):
        raise NotImplementedError

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.client = self._build_client()

    def _validate(self) -> None:
        if not self.api_key:
            raise ProviderError(self.kind, "API key is required")

    async def chat(self, messages: List[Dict[str, str]], options: Optional[ChatOptions] = None) -> ChatResult:
        sampling = self._sampling(options)
        try:
            with Timer(f"{self.kind}_chat"):
                response = await self.client.chat.completions.create(
                    model=self.model_name,
                    messages=messages,
                    **sampling
                )
        except APIStatusError as e:
            raise ProviderError(self.kind, e.message, status_code=e.status_code)
        except APIError as e:
            raise ProviderError(self.kind, e.message)

        if not response.choices:
            raise ProviderError(self.kind, "no choices returned")

        choice = response.choices[0]
        usage = response.usage
        return ChatResult(
            content=choice.message.content or "",
            usage=ChatUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                total_tokens=getattr(usage, "total_tokens", 0) or 0,
            ),
            model=response.model or self.model_name,
            finish_reason=choice.finish_reason or "stop",
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self.client.close()
            await self._http.aclose()


class OpenAIProvider(_OpenAISDKProvider):
    """Generic chat-completions backend (api.openai.com or a compatible base URL)."""

    kind = ProviderKind.OPENAI.value

    def _build_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.api_endpoint or OPENAI_BASE_URL,
            timeout=self.timeout,
            max_retries=0,
            http_client=self._http
        )


class AzureOpenAIProvider(_OpenAISDKProvider):
    """Azure-hosted chat completions; the model name is the deployment name."""

    kind = ProviderKind.AZURE.value

    def _validate(self) -> None:
        super()._validate()
        if not self.api_endpoint:
            raise ProviderError(self.kind, "Azure OpenAI requires an API endpoint")

    def _build_client(self) -> AsyncAzureOpenAI:
        return AsyncAzureOpenAI(
            api_key=self.api_key,
            azure_endpoint=self.api_endpoint,
            api_version=str(self.options.get("api_version") or AZURE_API_VERSION),
            timeout=self.timeout,
            max_retries=0,
            http_client=self._http
        )


class DashscopeProvider(BaseProvider):
    """Alibaba Dashscope text-generation API."""

    kind = ProviderKind.DASHSCOPE.value
    default_top_p = 0.8

    async def chat(self, messages: List[Dict[str, str]], options: Optional[ChatOptions] = None) -> ChatResult:
        base_url = self.api_endpoint or DASHSCOPE_BASE_URL
        payload = {
            "model": self.model_name,
            "input": {"messages": messages},
            "parameters": {**self._sampling(options), "result_format": "message"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        with Timer("dashscope_chat"):
            data = await self._post_json(f"{base_url}/services/aigc/text-generation/generation", payload, headers)

        if data.get("code"):
            raise ProviderError(self.kind, str(data.get("message") or data["code"]))

        try:
            choice = data["output"]["choices"][0]
            content = choice["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError(self.kind, "unexpected response envelope")

        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens") or 0
        output_tokens = usage.get("output_tokens") or 0
        return ChatResult(
            content=content or "",
            usage=ChatUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            model=self.model_name,
            finish_reason=choice.get("finish_reason") or "stop",
        )


class OllamaProvider(BaseProvider):
    """Local Ollama daemon chat API. No authentication."""

    kind = ProviderKind.OLLAMA.value
    default_top_p = 0.9

    async def chat(self, messages: List[Dict[str, str]], options: Optional[ChatOptions] = None) -> ChatResult:
        base_url = self.api_endpoint or OLLAMA_BASE_URL
        sampling = self._sampling(options)
        payload = {
            "model": self.model_name,
            "messages": messages,
            "stream": False,
            "options": {
                "temperature": sampling["temperature"],
                "num_predict": sampling["max_tokens"],
                "top_p": sampling["top_p"],
            },
        }

        with Timer("ollama_chat"):
            data = await self._post_json(f"{base_url}/api/chat", payload)

        message = data.get("message")
        if not isinstance(message, dict) or "content" not in message:
            raise ProviderError(self.kind, "unexpected response envelope")

        prompt_tokens = data.get("prompt_eval_count") or 0
        completion_tokens = data.get("eval_count") or 0
        return ChatResult(
            content=message["content"] or "",
            usage=ChatUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            model=data.get("model") or self.model_name,
            finish_reason="stop" if data.get("done") else "length",
        )


class CustomProvider(BaseProvider):
    """Any endpoint speaking the OpenAI chat-completions envelope."""

    kind = ProviderKind.CUSTOM.value

    def _validate(self) -> None:
        if not self.api_endpoint:
            raise ProviderError(self.kind, "custom provider requires an API endpoint")

    async def chat(self, messages: List[Dict[str, str]], options: Optional[ChatOptions] = None) -> ChatResult:
        payload = {
            "model": self.model_name,
            "messages": messages,
            **self._sampling(options),
            **self.options,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        with Timer("custom_chat"):
            data = await self._post_json(f"{self.api_endpoint}/chat/completions", payload, headers)

        try:
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError(self.kind, "unexpected response envelope")

        usage = data.get("usage") or {}
        return ChatResult(
            content=content or "",
            usage=ChatUsage(
                prompt_tokens=usage.get("prompt_tokens") or 0,
                completion_tokens=usage.get("completion_tokens") or 0,
                total_tokens=usage.get("total_tokens") or 0,
            ),
            model=data.get("model") or self.model_name,
            finish_reason=choice.get("finish_reason") or "stop",
        )


PROVIDER_CLASSES = {
    ProviderKind.OPENAI.value: OpenAIProvider,
    ProviderKind.AZURE.value: AzureOpenAIProvider,
    ProviderKind.DASHSCOPE.value: DashscopeProvider,
    ProviderKind.OLLAMA.value: OllamaProvider,
    ProviderKind.CUSTOM.value: CustomProvider,
}


def create_provider_from_config(
    llm_config: LlmConfig,
    timeout: Optional[float] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> BaseProvider:
    """
    Build the provider client described by a stored LLM config.

    Args:
        llm_config: Stored backend binding
        timeout: HTTP timeout in seconds (defaults to PROVIDER_TIMEOUT_SECONDS)
        http_client: Optional pre-built httpx client (tests inject a mock transport)

    Returns:
        BaseProvider: Ready-to-use client

    Raises:
        ProviderError: If the provider is unknown or its settings are incomplete
    """
    provider_class = PROVIDER_CLASSES.get(str(llm_config.provider).lower())
    if provider_class is None:
        raise ProviderError(llm_config.provider, f"Unknown provider: {llm_config.provider}")

    try:
        api_key = decrypt_api_key(llm_config.api_key_encrypted)
    except ConfigurationError as e:
        raise ProviderError(llm_config.provider, str(e))

    logger.debug("Creating provider client",
                 provider=provider_class.kind,
                 model=llm_config.model_name,
                 llm_config_id=llm_config.id)

    return provider_class(
        model_name=llm_config.model_name,
        api_key=api_key,
        api_endpoint=llm_config.api_endpoint,
        options=llm_config.config,
        timeout=timeout,
        http_client=http_client
    )


# Export key classes and functions
__all__ = [
    'ProviderError',
    'ChatOptions',
    'ChatUsage',
    'ChatResult',
    'BaseProvider',
    'OpenAIProvider',
    'AzureOpenAIProvider',
    'DashscopeProvider',
    'OllamaProvider',
    'CustomProvider',
    'PROVIDER_CLASSES',
    'create_provider_from_config',
]
