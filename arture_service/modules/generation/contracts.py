from __future__ import annotations

from dataclasses import dataclass

from libs.contracts.models import StreamRequest


@dataclass(slots=True)
class GenerationTask:
    task_id: str
    trace_id: str
    session_id: str
    owner_id: str
    request: StreamRequest
