"""Task runtime interface consumed by the checkpoint orchestrator."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

ASSISTANT = "assistant"
TOOL_START = "tool_start"
TOOL_END = "tool_end"
RESULT = "result"


@dataclass(slots=True)
class RuntimeRequest:
    """Inputs required to execute one unit attempt."""

    prompt: str
    workspace: Path
    unit: str
    session_id: str
    allowed_tools: str = "*"
    max_turns: int = 200
    attempt: int = 1


@dataclass(slots=True)
class RuntimeEvent:
    """One normalized event streamed by a runtime.

    Terminal `result` events carry ``success``, ``error``, ``cost_usd``,
    ``duration_ms``, ``turns`` and ``api_error`` in `data`.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_result(self) -> bool:
        return self.type == RESULT


class TaskRuntime(Protocol):
    """Protocol implemented by task runtimes."""

    def execute(self, request: RuntimeRequest) -> AsyncIterator[RuntimeEvent]:
        """Run one attempt and stream its events, ending with a `result` event."""
