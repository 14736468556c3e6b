"""Shared fixtures and helpers for the traceval test suite."""

import base64
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from traceval.models import EvaluatorTemplate, LlmConfig, Trace
from traceval.providers import create_provider_from_config
from traceval.store import InMemoryStore
from traceval.utils import encrypt_api_key, reset_config


TEST_PROJECT_ID = "default"
TEST_CUSTOM_ENDPOINT = "https://judge.example.test/v1"
TEST_PUBLIC_KEY = "pk-test"
TEST_SECRET_KEY = "sk-test"


@pytest.fixture(autouse=True)
def test_config(monkeypatch):
    """Give every test a fresh, deterministic configuration."""
    for key, value in {
        "DEFAULT_PROJECT_ID": TEST_PROJECT_ID,
        "INGESTION_PUBLIC_KEY": "",
        "INGESTION_SECRET_KEY": "",
        "INGESTION_REJECT_ORPHANS": "false",
        "DIFY_WEBHOOK_SECRET": "",
        "PROVIDER_TIMEOUT_SECONDS": "5",
        "EVAL_CONCURRENCY": "5",
        "LOG_LEVEL": "WARNING",
        "LOG_JSON": "false",
        "SEED_PRESET_EVALUATORS": "true",
        "LOCK_CLEANUP_INTERVAL_SECONDS": "3600",
        "LOCK_MAX_AGE_SECONDS": "86400",
    }.items():
        monkeypatch.setenv(key, value)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


def basic_auth(public_key: str = TEST_PUBLIC_KEY, secret_key: str = TEST_SECRET_KEY) -> Dict[str, str]:
    token = base64.b64encode(f"{public_key}:{secret_key}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


def create_test_llm_config(
    config_id: str = "llm-1",
    provider: str = "custom",
    api_endpoint: Optional[str] = TEST_CUSTOM_ENDPOINT,
    api_key: Optional[str] = "sk-judge",
    model_name: str = "judge-model",
    config: Optional[Dict[str, Any]] = None
) -> LlmConfig:
    return LlmConfig(
        id=config_id,
        project_id=TEST_PROJECT_ID,
        name=f"{provider} judge",
        provider=provider,
        model_name=model_name,
        api_endpoint=api_endpoint,
        api_key_encrypted=encrypt_api_key(api_key) if api_key else None,
        config=config or {},
    )


def create_test_evaluator(evaluator_id: str, name: Optional[str] = None, is_active: bool = True) -> EvaluatorTemplate:
    return EvaluatorTemplate(
        id=evaluator_id,
        project_id=TEST_PROJECT_ID,
        name=name or evaluator_id.title(),
        prompt_template="Rate the answer.\nQuestion: {{input}}\nAnswer: {{output}}",
        is_active=is_active,
    )


def create_test_trace(trace_id: str, input_text: str = "What is 2+2?", output_text: str = "4") -> Trace:
    return Trace(id=trace_id, project_id=TEST_PROJECT_ID, input=input_text, output=output_text)


def chat_completion_body(content: str, model: str = "judge-model") -> Dict[str, Any]:
    """OpenAI-style chat completion response body."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 20, "completion_tokens": 10, "total_tokens": 30},
    }


def judge_handler(content: str = '{"score": 8, "reason": "Correct and concise answer."}') -> Callable:
    """Mock transport handler answering every chat request with ``content``."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=chat_completion_body(content))

    return handler


def mock_provider_factory(handler: Callable, requests: Optional[List[httpx.Request]] = None):
    """Provider factory routing all HTTP calls through ``handler``."""

    async def recording_handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        response = handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    def factory(llm_config: LlmConfig):
        client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
        return create_provider_from_config(llm_config, http_client=client)

    return factory


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)
