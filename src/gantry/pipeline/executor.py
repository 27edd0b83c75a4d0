"""Step execution collaborator.

The scheduler never runs commands itself; it hands each step to a
:class:`StepExecutor`. :class:`ShellStepExecutor` is the built-in one for
``run`` steps: the script runs in a subprocess and writes outputs to the file
named by ``$GANTRY_OUTPUT``::

    echo "version=1.2.3" >> "$GANTRY_OUTPUT"
    {
      echo "notes<<EOF"
      cat notes.txt
      echo "EOF"
    } >> "$GANTRY_OUTPUT"

On cancellation or timeout the process is terminated, given a grace period,
then killed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from gantry.errors import ErrorKind, ExecutionError
from gantry.pipeline.concurrency import CancellationToken

logger = logging.getLogger("gantry.pipeline.executor")

OUTPUT_ENV_VAR = "GANTRY_OUTPUT"


@dataclass(frozen=True)
class StepRequest:
    """A fully rendered step, ready to execute."""

    run_id: str
    job_id: str
    instance_id: str
    name: str
    step_id: str | None = None
    run: str | None = None
    uses: str | None = None
    with_: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    shell: str | None = None
    working_directory: str | None = None
    timeout_seconds: float | None = None
    runs_on: Any = None


@dataclass
class StepResult:
    exit_code: int
    outputs: dict[str, str] = field(default_factory=dict)
    logs: list[str] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


class StepExecutor(Protocol):
    """Executes one step; must return promptly once ``token`` is cancelled."""

    async def __call__(self, request: StepRequest, token: CancellationToken) -> StepResult: ...


# ── Shell Executor ───────────────────────────────────────────────────────────


class ShellStepExecutor:
    """Runs ``run`` steps as local subprocesses.

    ``uses`` steps that are neither reusable pipelines nor registered
    composite actions reach this executor and fail with ExecutionError.
    """

    def __init__(
        self,
        workspace: str | Path = ".",
        *,
        grace_seconds: float = 5.0,
        default_shell: str = "bash",
    ):
        self._workspace = Path(workspace)
        self._grace_seconds = grace_seconds
        self._default_shell = default_shell

    async def __call__(self, request: StepRequest, token: CancellationToken) -> StepResult:
        if request.run is None:
            raise ExecutionError(
                ErrorKind.STEP_FAILED,
                f"no runner available for action '{request.uses}'",
                step=request.name,
            )

        cwd = self._workspace
        if request.working_directory:
            cwd = (self._workspace / request.working_directory).resolve()
        if not cwd.is_dir():
            raise ExecutionError(
                ErrorKind.STEP_FAILED,
                f"working directory '{cwd}' does not exist",
                step=request.name,
            )

        fd, output_path = tempfile.mkstemp(prefix="gantry-output-")
        os.close(fd)
        script_path: str | None = None
        try:
            argv, script_path = self._command(request.shell or self._default_shell, request.run)
            env = {**os.environ, **request.env, OUTPUT_ENV_VAR: output_path}
            env["GANTRY_WORKSPACE"] = str(self._workspace.resolve())
            return await self._execute(request, argv, cwd, env, output_path, token)
        finally:
            for path in (output_path, script_path):
                if path:
                    try:
                        os.unlink(path)
                    except FileNotFoundError:
                        pass

    def _command(self, shell: str, script: str) -> tuple[list[str], str | None]:
        match shell:
            case "bash":
                return ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c", script], None
            case "sh":
                return ["sh", "-e", "-c", script], None
            case "python":
                return [sys.executable, "-c", script], None
        # Custom shell template, e.g. "perl {0}"
        fd, script_path = tempfile.mkstemp(prefix="gantry-script-")
        with os.fdopen(fd, "w") as f:
            f.write(script)
        if "{0}" in shell:
            return shell.format(script_path).split(), script_path
        return [*shell.split(), script_path], script_path

    async def _execute(
        self,
        request: StepRequest,
        argv: list[str],
        cwd: Path,
        env: dict[str, str],
        output_path: str,
        token: CancellationToken,
    ) -> StepResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ExecutionError(
                ErrorKind.STEP_FAILED, f"could not start '{argv[0]}': {e}", step=request.name
            ) from e

        logs: list[str] = []
        reader = asyncio.create_task(_read_lines(proc.stdout, logs))
        cancel_wait = asyncio.create_task(token.wait())
        proc_wait = asyncio.create_task(proc.wait())
        timed_out = cancelled = False
        try:
            done, _ = await asyncio.wait(
                {proc_wait, cancel_wait},
                timeout=request.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if proc_wait not in done:
                if cancel_wait in done:
                    cancelled = True
                else:
                    timed_out = True
                await self._stop(proc, request.name)
        except asyncio.CancelledError:
            # Force-cancelled by the scheduler after the grace period
            if proc.returncode is None:
                proc.kill()
            reader.cancel()
            raise
        finally:
            cancel_wait.cancel()
        exit_code = await proc_wait
        await reader

        outputs: dict[str, str] = {}
        if not (timed_out or cancelled):
            outputs = parse_output_file(Path(output_path).read_text(encoding="utf-8"))
        return StepResult(
            exit_code=exit_code,
            outputs=outputs,
            logs=logs,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    async def _stop(self, proc: asyncio.subprocess.Process, name: str) -> None:
        """Terminate, wait the grace period, then kill."""
        if proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Step '%s' ignored SIGTERM; killing", name)
            proc.kill()


async def _read_lines(stream: asyncio.StreamReader | None, logs: list[str]) -> None:
    if stream is None:
        return
    while line := await stream.readline():
        logs.append(line.decode("utf-8", errors="replace").rstrip("\n"))


def parse_output_file(text: str) -> dict[str, str]:
    """Parse ``name=value`` and ``name<<DELIM ... DELIM`` output records."""
    outputs: dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        heredoc = line.find("<<")
        equals = line.find("=")
        if heredoc > 0 and (equals < 0 or heredoc < equals):
            name, delimiter = line[:heredoc], line[heredoc + 2 :]
            body: list[str] = []
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ExecutionError(
                    ErrorKind.STEP_FAILED,
                    f"output '{name}': missing closing delimiter '{delimiter}'",
                )
            i += 1
            outputs[name] = "\n".join(body)
        elif equals > 0:
            outputs[line[:equals]] = line[equals + 1 :]
        else:
            raise ExecutionError(ErrorKind.STEP_FAILED, f"invalid output record: {line!r}")
    return outputs
