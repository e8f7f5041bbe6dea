"""
Command execution utility for the provisioner.
Runs external commands (package manager, git, npm, systemctl, nginx) with
output capture, per-call timeouts and secret masking.
SECURITY: commands are argument vectors, never shell strings.
"""

import asyncio
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from .errors import CommandFailedError
from .logger import StepLogger
from .security import SecretsMasker

Command = Union[str, Sequence[str]]


def to_argv(command: Command) -> List[str]:
    """Normalise a command to an argument vector."""
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command]


def display(argv: Sequence[str]) -> str:
    """Printable, secret-masked form of a command."""
    return SecretsMasker.mask_secrets(shlex.join(argv))


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: str
    return_code: int
    stdout: str
    stderr: str
    success: bool
    duration_seconds: float
    timed_out: bool = False

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return f"{self.stdout}\n{self.stderr}".strip()

    def tail(self, lines: int = 40) -> str:
        """Last lines of combined output, secrets masked."""
        return SecretsMasker.mask_secrets("\n".join(self.output.splitlines()[-lines:]))

    def to_dict(self) -> dict:
        """Convert to dictionary with secrets masked."""
        return {
            "command": SecretsMasker.mask_secrets(self.command),
            "return_code": self.return_code,
            "stdout": SecretsMasker.mask_secrets(self.stdout),
            "stderr": SecretsMasker.mask_secrets(self.stderr),
            "success": self.success,
            "duration_seconds": self.duration_seconds,
            "timed_out": self.timed_out,
        }


class CommandExecutor:
    """Executes external commands with proper error handling and logging."""

    def __init__(
        self,
        working_dir: Path = None,
        logger: StepLogger = None,
        default_timeout: int = 300,
    ):
        self.working_dir = working_dir or Path.cwd()
        self.logger = logger or StepLogger("CommandExecutor")
        self.default_timeout = default_timeout

    async def run(
        self,
        command: Command,
        timeout: int = None,
        env: Dict[str, str] = None,
        cwd: Path = None,
        run_as: str = None,
        stream_output: bool = False,
        on_output: Callable[[str], None] = None,
    ) -> CommandResult:
        """
        Execute a command asynchronously.

        Args:
            command: Argument vector (or a string split with shlex)
            timeout: Maximum execution time in seconds; the child is killed on expiry
            env: Additional environment variables
            cwd: Working directory (defaults to the executor's)
            run_as: Run through ``sudo -u <user> -H`` as an unprivileged user
            stream_output: Echo output lines as they arrive
            on_output: Callback for real-time output

        Returns:
            CommandResult with execution details
        """
        argv = to_argv(command)
        if run_as:
            # sudo resets the environment, so extra variables go through env(1)
            assignments = [f"{k}={v}" for k, v in (env or {}).items()]
            prefix = ["sudo", "-u", run_as, "-H", "--"]
            if assignments:
                prefix += ["env", *assignments]
            argv = prefix + argv

        timeout = timeout or self.default_timeout
        shown = display(argv)
        self.logger.debug(f"Executing: {shown}")
        start_time = time.time()

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        if stream_output and on_output is None:
            on_output = self.logger.output

        try:
            completed = await self._run_process(
                argv, timeout, full_env, cwd or self.working_dir, on_output
            )
        except asyncio.TimeoutError:
            duration = time.time() - start_time
            self.logger.error(f"Command timed out after {timeout}s: {shown}")
            return CommandResult(
                command=shown,
                return_code=-1,
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                success=False,
                duration_seconds=duration,
                timed_out=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            duration = time.time() - start_time
            self.logger.error(f"Command could not be started: {e}")
            return CommandResult(
                command=shown,
                return_code=127,
                stdout="",
                stderr=str(e),
                success=False,
                duration_seconds=duration,
            )

        duration = time.time() - start_time
        cmd_result = CommandResult(
            command=shown,
            return_code=completed.returncode,
            stdout=completed.stdout.decode(errors="replace") if completed.stdout else "",
            stderr=completed.stderr.decode(errors="replace") if completed.stderr else "",
            success=completed.returncode == 0,
            duration_seconds=duration,
        )

        if cmd_result.success:
            self.logger.debug(f"Command succeeded in {duration:.2f}s")
        else:
            self.logger.debug(f"Command failed with code {completed.returncode}")

        return cmd_result

    async def _run_process(
        self,
        argv: List[str],
        timeout: int,
        env: dict,
        cwd: Path,
        on_output: Callable[[str], None] = None,
    ) -> subprocess.CompletedProcess:
        """Run a process, optionally forwarding output lines as they arrive."""
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=str(cwd),
            env=env,
        )

        stdout_lines: List[bytes] = []
        stderr_lines: List[bytes] = []

        async def read_stream(stream, lines: list):
            while True:
                line = await stream.readline()
                if not line:
                    break
                lines.append(line)
                if on_output:
                    on_output(line.decode(errors="replace"))

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    read_stream(process.stdout, stdout_lines),
                    read_stream(process.stderr, stderr_lines),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise

        return subprocess.CompletedProcess(
            args=argv,
            returncode=process.returncode,
            stdout=b"".join(stdout_lines),
            stderr=b"".join(stderr_lines),
        )

    async def check(
        self,
        command: Command,
        hint: str = None,
        **kwargs,
    ) -> CommandResult:
        """Run a command and raise CommandFailedError unless it succeeds."""
        result = await self.run(command, **kwargs)
        if not result.success:
            raise CommandFailedError(
                result.command,
                result.return_code,
                output=result.tail(),
                hint=hint,
            )
        return result

    async def check_tool_exists(self, tool: str) -> bool:
        """Check if a command-line tool is available."""
        result = await self.run(["which", tool], timeout=10)
        return result.success

    async def get_tool_version(self, tool: str, version_flag: str = "--version") -> Optional[str]:
        """Get the version of a tool (some tools, like nginx, print it on stderr)."""
        result = await self.run([tool, version_flag], timeout=10)
        if result.success:
            text = result.stdout.strip() or result.stderr.strip()
            return text.split("\n")[0] if text else None
        return None
