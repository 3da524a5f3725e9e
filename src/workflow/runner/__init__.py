"""Agent CLI worker runner.

This module runs phase workers as subprocesses:
- Phase input handed over as a JSON file
- Timeout enforcement
- stdout/stderr capture and streaming
- JSON result line parsing into a WorkerResult
"""

from src.workflow.runner.command import CommandOutput, CommandWorker, parse_result_line

__all__ = ["CommandOutput", "CommandWorker", "parse_result_line"]
