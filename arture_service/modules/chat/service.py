from __future__ import annotations

from arture_service.app.parser import parse_complete_response
from arture_service.app.prompts import build_system_prompt
from arture_service.app.providers.base import ProviderRequest
from arture_service.app.providers.chain import ProviderChain
from libs.common.errors import DomainError
from libs.common.logging import get_logger
from libs.contracts.models import AiResponse, AiResponseAction, AiResponseRequest

logger = get_logger("arture_service.modules.chat")

NOT_CONFIGURED_MESSAGE = "AI 프로바이더가 설정되지 않았어요. 관리자에게 API 키 설정을 요청해 주세요."
GENERATION_FAILED_MESSAGE = "지금은 응답을 생성하지 못했어요. 잠시 후 다시 시도해 주세요."


class ChatService:
    """스트리밍이 불가능할 때 쓰는 단발성 응답 경로예요."""

    def __init__(self, *, providers: ProviderChain, history_window: int = 6, element_limit: int = 8) -> None:
        self._providers = providers
        self._history_window = history_window
        self._element_limit = element_limit

    async def ai_response(self, owner_id: str, request: AiResponseRequest) -> AiResponse:
        if not self._providers.is_configured:
            logger.warning("ai_response_not_configured", owner_id=owner_id)
            return AiResponse(response=NOT_CONFIGURED_MESSAGE, is_configured=False)

        provider_request = ProviderRequest(
            session_id="",
            system_prompt=build_system_prompt(
                request.context,
                request.conversation_history,
                request.image_attachments,
                history_window=self._history_window,
                element_limit=self._element_limit,
            ),
            message=request.message,
        )
        try:
            piece = await self._providers.generate(provider_request)
        except DomainError as exc:
            logger.warning("ai_response_failed", owner_id=owner_id, error_code=exc.error_code, error=exc.message)
            return AiResponse(response=GENERATION_FAILED_MESSAGE, is_configured=True, error=True)

        parsed = parse_complete_response(piece.text)
        logger.info(
            "ai_response_generated",
            owner_id=owner_id,
            provider=piece.label,
            actions_count=len(parsed.actions),
        )
        return AiResponse(
            response=parsed.message,
            is_configured=True,
            actions=[
                AiResponseAction(
                    id=action.id,
                    type=action.type,
                    payload=action.payload,
                    description=action.description,
                )
                for action in parsed.actions
            ],
            model=piece.label,
        )
