"""
Sandbox Runner - runs one untrusted program in a resource-capped container.

The program is started through the docker CLI so that stdout and stderr can be
streamed from pipes and capped while they are read. Limits enforced per run:
- CPU share (--cpus), memory ceiling (--memory, no swap), process count
- wall clock: `timeout` inside the container plus a host-side watchdog
- captured output size (both streams combined)
"""
import asyncio
import logging
import math
import uuid
from typing import List, Optional

from .config import Settings
from .models import ExecutionOutcome, Failed, FailureKind, LanguageProfile, StagedFile, Succeeded

logger = logging.getLogger(__name__)

# Exit status of `timeout` when it had to stop the command
TIMEOUT_EXIT_CODE = 124
# 128 + SIGTERM: busybox `timeout` (alpine images) execs the program, which then dies from the signal
TERMINATED_EXIT_CODE = 143
# 128 + SIGKILL: the kernel OOM killer stopped the program
MEMORY_EXIT_CODE = 137
# docker run itself failed (daemon unavailable, bad image, ...)
RUNTIME_ERROR_EXIT_CODE = 125

READ_CHUNK_SIZE = 4096


class OutputTooLarge(Exception):
    """Raised while draining streams once the output budget is used up."""


class _OutputBudget:
    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def consume(self, size: int) -> None:
        self.used += size
        if self.used > self.limit:
            raise OutputTooLarge(f"output exceeded {self.limit} bytes")


class SandboxRunner:
    """Launches sandboxed programs and turns their exit into an ExecutionOutcome."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.timeout = settings.SANDBOX_TIMEOUT
        self.max_output_size = settings.MAX_OUTPUT_SIZE

    @property
    def deadline(self) -> float:
        """Host-side wall clock limit, including container start-up."""
        return self.timeout + self.settings.SANDBOX_STARTUP_GRACE

    def build_command(self, profile: LanguageProfile, staged: StagedFile, container_name: str) -> List[str]:
        s = self.settings
        mount = s.SANDBOX_MOUNT_PATH
        return [
            s.DOCKER_BINARY, "run",
            "--rm",
            "--name", container_name,
            "--network", "none",
            "--cpus", str(s.SANDBOX_CPUS),
            "--memory", s.SANDBOX_MEMORY_LIMIT,
            "--memory-swap", s.SANDBOX_MEMORY_LIMIT,
            "--pids-limit", str(s.SANDBOX_PIDS_LIMIT),
            "--user", s.SANDBOX_USER,
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "-v", f"{s.staging_host_dir}:{mount}:ro",
            "-w", mount,
            profile.image,
            "timeout", "-s", "TERM", str(max(1, math.ceil(self.timeout))),
            *profile.command,
            staged.name,
        ]

    def kill_command(self, container_name: str) -> Optional[List[str]]:
        return [self.settings.DOCKER_BINARY, "kill", container_name]

    async def run(self, profile: LanguageProfile, staged: StagedFile) -> ExecutionOutcome:
        container_name = f"coderunner-{uuid.uuid4().hex[:12]}"
        cmd = self.build_command(profile, staged, container_name)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to launch sandbox for {staged.name}: {e}")
            return Failed(str(e), FailureKind.SANDBOX_LAUNCH_FAILURE)

        stdout = bytearray()
        stderr = bytearray()
        budget = _OutputBudget(self.max_output_size)
        readers = [
            asyncio.ensure_future(self._drain(proc.stdout, stdout, budget)),
            asyncio.ensure_future(self._drain(proc.stderr, stderr, budget)),
            asyncio.ensure_future(proc.wait()),
        ]

        try:
            await asyncio.wait_for(asyncio.gather(*readers), timeout=self.deadline)
        except asyncio.TimeoutError:
            logger.info(f"Sandbox {container_name} hit the {self.deadline}s watchdog")
            await self._kill(proc, container_name)
            return Failed("exceeded timeout", FailureKind.SANDBOX_TIMEOUT)
        except OutputTooLarge:
            logger.info(f"Sandbox {container_name} produced more than {self.max_output_size} bytes")
            await self._kill(proc, container_name)
            return Failed("output too large", FailureKind.OUTPUT_TOO_LARGE)
        except asyncio.CancelledError:
            logger.info(f"Sandbox {container_name} cancelled, stopping container")
            await self._kill(proc, container_name)
            raise
        finally:
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        return self.classify(
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    @staticmethod
    def classify(returncode: int, stdout: str, stderr: str) -> ExecutionOutcome:
        if returncode in (TIMEOUT_EXIT_CODE, TERMINATED_EXIT_CODE):
            return Failed("exceeded timeout", FailureKind.SANDBOX_TIMEOUT)
        if returncode == MEMORY_EXIT_CODE:
            return Failed("exceeded memory usage", FailureKind.SANDBOX_MEMORY_EXCEEDED)
        if returncode == RUNTIME_ERROR_EXIT_CODE:
            return Failed(stderr.strip() or "sandbox failed to start", FailureKind.SANDBOX_LAUNCH_FAILURE)
        # Non-zero exits are still program output (e.g. a traceback on stderr)
        return Succeeded(stdout if stdout else stderr)

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, sink: bytearray, budget: _OutputBudget) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            budget.consume(len(chunk))
            sink.extend(chunk)

    async def _kill(self, proc: asyncio.subprocess.Process, container_name: str) -> None:
        """Force-stop the sandbox; never relies on the program cooperating."""
        kill_cmd = self.kill_command(container_name)
        if kill_cmd:
            try:
                killer = await asyncio.create_subprocess_exec(
                    *kill_cmd,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                await asyncio.wait_for(killer.wait(), timeout=5)
            except (OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Failed to kill container {container_name}: {e}")

        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
