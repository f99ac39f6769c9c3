from __future__ import annotations

from fastapi import APIRouter, Header, Request

from arture_service.modules.common.deps import get_chat_service, require_auth, resolve_principal
from libs.contracts.models import AiResponse, AiResponseRequest

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/ai-response", response_model=AiResponse, response_model_exclude_none=True)
async def ai_response(
    request: Request,
    req: AiResponseRequest,
    authorization: str = Header(default=""),
    x_user_id: str = Header(default=""),
) -> AiResponse:
    require_auth(request, authorization)
    return await get_chat_service(request).ai_response(resolve_principal(x_user_id), req)
