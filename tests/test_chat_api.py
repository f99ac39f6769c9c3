from __future__ import annotations

import pytest
from arture_service.app.main import create_app
from arture_service.app.providers.chain import ProviderChain
from arture_service.modules.chat.service import GENERATION_FAILED_MESSAGE, NOT_CONFIGURED_MESSAGE, ChatService
from fastapi.testclient import TestClient

from libs.common.errors import UpstreamTransientError
from libs.contracts.models import AiResponseRequest
from tests.conftest import AUTH_HEADERS, ScriptedProvider, build_test_settings


def test_ai_response_returns_parsed_message_and_actions(client: TestClient) -> None:
    response = client.post("/v1/chat/ai-response", json={"message": "제목을 써줘"}, headers=AUTH_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["isConfigured"] is True
    assert body["model"] == "placeholder:canned"
    assert "제목을 써줘" in body["response"]
    assert [action["type"] for action in body["actions"]] == ["add_text"]
    assert body["actions"][0]["id"].startswith("act_")
    assert "error" not in body


def test_ai_response_without_configured_provider() -> None:
    settings = build_test_settings(enabled_provider_names=["openai"], openai_api_key="")
    with TestClient(create_app(settings)) as unconfigured:
        response = unconfigured.post("/v1/chat/ai-response", json={"message": "hi"}, headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"response": NOT_CONFIGURED_MESSAGE, "isConfigured": False}


def test_ai_response_requires_auth(client: TestClient) -> None:
    response = client.post("/v1/chat/ai-response", json={"message": "hi"}, headers={"x-user-id": "u1"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_chat_service_reports_generation_failure() -> None:
    service = ChatService(providers=ProviderChain([ScriptedProvider([], error=UpstreamTransientError())]))

    response = await service.ai_response("u1", AiResponseRequest(message="hi"))

    assert response.error is True
    assert response.is_configured is True
    assert response.response == GENERATION_FAILED_MESSAGE


@pytest.mark.asyncio
async def test_chat_service_falls_back_to_raw_text() -> None:
    service = ChatService(providers=ProviderChain([ScriptedProvider(["그냥 ", "문장이에요"])]))

    response = await service.ai_response("u1", AiResponseRequest(message="hi"))

    assert response.response == "그냥 문장이에요"
    assert response.actions == []
    assert response.model == "scripted:test-model"
