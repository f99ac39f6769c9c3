from __future__ import annotations

from libs.contracts.models import CanvasContext, ConversationTurn, ImageAttachment

_RESPONSE_FORMAT = """당신은 캔버스 디자인 도우미예요. 사용자가 디자인을 만들고 고치도록 도와요.

항상 아래 형태의 올바른 JSON 하나로만 답해요:
{
  "message": "사용자에게 보여줄 답변",
  "actions": [
    {"type": "action_type", "payload": {}, "description": "이 액션이 하는 일"}
  ]
}

액션 예시: spawn_shape, add_text, move_element, modify_element, resize_element,
delete_element, change_canvas_background, search_images, add_image_to_canvas, ask_clarification.
요청이 분명하면 바로 액션을 실행하고, 애매하면 ask_clarification으로 되물어요."""


def summarize_context(context: CanvasContext | None, *, element_limit: int) -> str:
    if context is None:
        return ""
    parts: list[str] = []
    if context.canvas_size is not None:
        parts.append(f"Canvas: {context.canvas_size.width:g}x{context.canvas_size.height:g}px.")
    if context.background_color:
        parts.append(f"Background: {context.background_color}.")
    if context.selected_element_ids:
        parts.append(f"SELECTED: {','.join(context.selected_element_ids)}.")
    if context.elements:
        labels = []
        for element in context.elements[:element_limit]:
            marker = "*" if element.get("isSelected") else ""
            labels.append(f"{element.get('type', '?')}{marker}")
        parts.append(f"Elements: {', '.join(labels)}.")
    if context.summary:
        parts.append(context.summary)
    return " ".join(parts)


def summarize_history(history: list[ConversationTurn], *, window: int) -> str:
    recent = history[-window:] if window > 0 else []
    return "\n".join(f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.content}" for turn in recent)


def summarize_images(images: list[ImageAttachment]) -> str:
    lines = []
    for index, image in enumerate(images, start=1):
        url = image.cloudinary_url or (f"{image.data_url[:50]}..." if image.data_url else "")
        lines.append(f"{index}. {image.name}: {url}")
    return "\n".join(lines)


def build_system_prompt(
    context: CanvasContext | None,
    history: list[ConversationTurn],
    images: list[ImageAttachment],
    *,
    history_window: int = 6,
    element_limit: int = 8,
) -> str:
    sections = [_RESPONSE_FORMAT]
    context_text = summarize_context(context, element_limit=element_limit)
    if context_text:
        sections.append(f"CANVAS STATE:\n{context_text}")
    history_text = summarize_history(history, window=history_window)
    if history_text:
        sections.append(f"RECENT HISTORY:\n{history_text}")
    image_text = summarize_images(images)
    if image_text:
        sections.append(f"ATTACHED IMAGES:\n{image_text}")
    return "\n\n".join(sections)
