from __future__ import annotations

import argparse
import asyncio
import sys

from arture_client.api_client import ArtureApiClient
from arture_client.runner import FlowRunner
from arture_client.settings import settings
from arture_client.state import ConsumerOptions
from libs.common.logging import configure_logging
from libs.contracts.models import GenerationInput


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="arture-ask", description="스트리밍 서버에 질문하고 응답을 바로 출력해요.")
    parser.add_argument("prompt", help="보낼 메시지")
    parser.add_argument("--conversation-id", default=None)
    parser.add_argument("--project-id", default=None)
    parser.add_argument("--no-fallback", action="store_true", help="스트리밍이 실패해도 REST로 다시 요청하지 않아요.")
    return parser


def _print_delta(content: str, is_partial: bool) -> None:
    if is_partial:
        sys.stdout.write(content)
    else:
        # 부분이 아닌 메시지는 전체 교정본이라 새 줄에 다시 출력해요.
        sys.stdout.write(f"\n{content}")
    sys.stdout.flush()


async def _ask(args: argparse.Namespace) -> int:
    api = ArtureApiClient(
        base_url=settings.base_url,
        token=settings.api_token,
        user_id=settings.user_id,
        timeout_seconds=settings.request_timeout_seconds,
    )
    runner = FlowRunner(
        api,
        options=ConsumerOptions(
            fallback_to_rest=settings.fallback_to_rest and not args.no_fallback,
            timeout_ms=settings.timeout_ms,
        ),
        on_message=_print_delta,
        idle_timeout_ms=settings.idle_timeout_ms,
    )
    try:
        state = await runner.run(
            GenerationInput(message=args.prompt),
            conversation_id=args.conversation_id,
            project_id=args.project_id,
        )
    finally:
        await api.aclose()

    sys.stdout.write("\n")
    for action in state.actions:
        sys.stdout.write(f"- [{action.type}] {action.description or ''} {action.payload}\n")
    if state.error:
        sys.stderr.write(f"오류: {state.error}\n")
        return 1
    return 0


def main() -> None:
    args = _build_parser().parse_args()
    configure_logging(settings.log_level, json_output=False, stream=sys.stderr)
    raise SystemExit(asyncio.run(_ask(args)))
