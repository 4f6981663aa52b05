"""Task runtime implementations."""

from pentest_pipeline.orchestrator.backend.base import RuntimeEvent, RuntimeRequest, TaskRuntime
from pentest_pipeline.orchestrator.backend.cli_backend import CliTaskRuntime

__all__ = [
    "CliTaskRuntime",
    "RuntimeEvent",
    "RuntimeRequest",
    "TaskRuntime",
]
