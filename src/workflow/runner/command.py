"""Agent CLI worker.

Runs a configured agent command as an async subprocess for one phase. The
phase input is written to a JSON file the command reads; the command's
result is the last stdout line that parses as a JSON object.

Invocation:

    <command...> --phase <phase> --workspace <worktree> --input <file>

Exit code 0 with a JSON result line yields a completed WorkerResult (the
command may still report ``{"status": "failed", ...}`` itself). A non-zero
exit, a timeout or a launch failure yields a failed WorkerResult; the
state machine records it as a phase failure.
"""

import asyncio
import json
import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from src.workflow.workers import PhaseInput, WorkerResult, WorkerStatus

logger = logging.getLogger(__name__)

INPUT_DIRNAME = ".workflow-input"
STDERR_TAIL_LINES = 20


@dataclass
class CommandOutput:
    """Raw outcome of one command execution.

    Attributes:
        exit_code: Process exit code (-1 for timeout/OS errors).
        stdout_lines: Captured standard output lines.
        stderr_lines: Captured standard error lines.
        duration_seconds: Wall-clock execution time.
        timed_out: True when the process was killed for exceeding the timeout.
    """

    exit_code: int
    stdout_lines: List[str]
    stderr_lines: List[str]
    duration_seconds: float
    timed_out: bool = False


def parse_result_line(lines: Sequence[str]) -> Optional[Dict[str, Any]]:
    """Return the last line that decodes to a JSON object, if any."""
    for line in reversed(lines):
        candidate = line.strip()
        if not candidate.startswith("{"):
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class CommandWorker:
    """ExternalWorker backed by an agent CLI.

    Attributes:
        command: Executable and leading arguments.
        timeout_seconds: Maximum execution time before the process is killed.
        log_callback: Optional function called with each output line.
    """

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        timeout_seconds: int = 3600,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        if isinstance(command, str):
            command = shlex.split(command)
        if not command:
            raise ValueError("command cannot be empty")
        self.command: List[str] = list(command)
        self.timeout_seconds = timeout_seconds
        self.log_callback = log_callback

    async def run(self, phase_input: PhaseInput) -> WorkerResult:
        worktree = Path(phase_input.worktree)
        input_file = self._write_input(worktree, phase_input)
        output = await self.execute(
            [
                "--phase",
                phase_input.phase,
                "--workspace",
                str(worktree),
                "--input",
                str(input_file),
            ],
            cwd=worktree,
        )
        return self._to_worker_result(phase_input.phase, output)

    def _write_input(self, worktree: Path, phase_input: PhaseInput) -> Path:
        input_dir = worktree / INPUT_DIRNAME
        input_dir.mkdir(parents=True, exist_ok=True)
        input_file = input_dir / f"{phase_input.phase}-{phase_input.attempt}.json"
        input_file.write_text(
            phase_input.model_dump_json(by_alias=True, indent=2), encoding="utf-8"
        )
        return input_file

    async def execute(
        self, args: Sequence[str], cwd: Optional[Path] = None
    ) -> CommandOutput:
        """Run the command with extra arguments, streaming its output."""
        start_time = time.monotonic()
        process: Optional[asyncio.subprocess.Process] = None

        try:
            logger.info(
                "Starting worker command",
                extra={
                    "command": self.command[0],
                    "cwd": str(cwd) if cwd else None,
                    "timeout": self.timeout_seconds,
                },
            )
            process = await asyncio.create_subprocess_exec(
                *self.command,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_lines, stderr_lines = await asyncio.wait_for(
                self._collect(process), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            if process is not None and process.returncode is None:
                process.kill()
                await process.wait()
            logger.error("Worker command timed out after %ds", self.timeout_seconds)
            return CommandOutput(
                exit_code=-1,
                stdout_lines=[],
                stderr_lines=[f"Process timed out after {self.timeout_seconds}s"],
                duration_seconds=time.monotonic() - start_time,
                timed_out=True,
            )
        except OSError as exc:
            logger.error("Failed to start worker command: %s", exc)
            return CommandOutput(
                exit_code=-1,
                stdout_lines=[],
                stderr_lines=[f"Failed to start {self.command[0]}: {exc}"],
                duration_seconds=time.monotonic() - start_time,
            )

        duration = time.monotonic() - start_time
        exit_code = process.returncode if process.returncode is not None else -1
        if exit_code == 0:
            logger.info("Worker command completed in %.1fs", duration)
        else:
            logger.error(
                "Worker command failed with exit code %d in %.1fs", exit_code, duration
            )
        return CommandOutput(
            exit_code=exit_code,
            stdout_lines=stdout_lines,
            stderr_lines=stderr_lines,
            duration_seconds=duration,
        )

    async def _collect(self, process: asyncio.subprocess.Process) -> tuple:
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        async def pump(stream: Optional[asyncio.StreamReader], name: str, sink: List[str]) -> None:
            async for line in _read_lines(stream):
                sink.append(line)
                logger.debug("worker %s: %s", name, line)
                if self.log_callback is not None:
                    self.log_callback(f"[{name}] {line}")

        await asyncio.gather(
            pump(process.stdout, "stdout", stdout_lines),
            pump(process.stderr, "stderr", stderr_lines),
        )
        await process.wait()
        return stdout_lines, stderr_lines

    def _to_worker_result(self, phase: str, output: CommandOutput) -> WorkerResult:
        stderr_tail = "\n".join(output.stderr_lines[-STDERR_TAIL_LINES:])

        if output.exit_code != 0:
            return WorkerResult.failed(
                error=stderr_tail or f"exit code {output.exit_code}",
                exit_code=output.exit_code,
                timed_out=output.timed_out,
            )

        parsed = parse_result_line(output.stdout_lines)
        if parsed is None:
            return WorkerResult.completed(exit_code=0)

        status = parsed.pop("status", WorkerStatus.COMPLETED.value)
        if status not in (WorkerStatus.COMPLETED.value, WorkerStatus.FAILED.value):
            logger.warning(
                "Worker reported unknown status",
                extra={"phase": phase, "reported_status": status},
            )
            parsed["error"] = f"unknown worker status {status!r}"
            return WorkerResult(status=WorkerStatus.FAILED, result=parsed)
        return WorkerResult(status=WorkerStatus(status), result=parsed)


async def _read_lines(stream: Optional[asyncio.StreamReader]) -> AsyncIterator[str]:
    if stream is None:
        return
    while True:
        raw_line = await stream.readline()
        if not raw_line:
            break
        yield raw_line.decode("utf-8", errors="replace").rstrip("\n")
