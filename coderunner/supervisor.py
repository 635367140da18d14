"""
Execution Supervisor - owns exactly one task from staging to reply.
"""
import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .actors import Actor
from .models import ExecutionOutcome, Failed, FailureKind, LanguageProfile, StagedFile, Task
from .sandbox import SandboxRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionFinished:
    """Message sent by a supervisor to its worker."""
    task_id: str
    outcome: ExecutionOutcome


def _write_staged_file(staged: StagedFile) -> None:
    staged.path.parent.mkdir(parents=True, exist_ok=True)
    staged.path.write_text(staged.contents, encoding="utf-8")
    # The sandbox runs as SANDBOX_USER (nobody by default) and mounts the directory read-only
    os.chmod(staged.path, 0o644)


def _remove_staged_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove staged file {path}: {e}")


class ExecutionSupervisor:
    """Single-use: one task, one staged file, one sandbox run, one reply."""

    def __init__(
        self,
        task: Task,
        profile: LanguageProfile,
        sandbox: SandboxRunner,
        staging_dir: Path,
        reply_to: Actor,
    ):
        self.task = task
        self.profile = profile
        self.sandbox = sandbox
        self.staging_dir = Path(staging_dir)
        self.reply_to = reply_to
        self.staged: Optional[StagedFile] = None
        self._started = False

    def start(self) -> asyncio.Task:
        if self._started:
            raise RuntimeError("execution supervisor is single-use")
        self._started = True
        return asyncio.create_task(self._supervise(), name=f"supervisor-{self.task.task_id}")

    async def _supervise(self) -> None:
        try:
            outcome = await self._execute()
        except asyncio.CancelledError:
            if self.staged is not None:
                self._schedule_cleanup(self.staged)
            raise
        except Exception as e:
            logger.exception(f"Unexpected sandbox fault for task {self.task.task_id}")
            outcome = Failed(f"sandbox error: {type(e).__name__}", FailureKind.INTERNAL)

        self.reply_to.tell(ExecutionFinished(self.task.task_id, outcome))

        if self.staged is not None:
            self._schedule_cleanup(self.staged)

    async def _execute(self) -> ExecutionOutcome:
        try:
            staged = await self._stage()
        except OSError as e:
            logger.error(f"Failed to stage source for task {self.task.task_id}: {e}")
            return Failed("failed to stage source file", FailureKind.STAGING_FAILURE)

        logger.debug(f"Task {self.task.task_id} staged as {staged.path}")
        return await self.sandbox.run(self.profile, staged)

    async def _stage(self) -> StagedFile:
        name = f"{uuid.uuid4().hex}{self.profile.extension}"
        staged = StagedFile(name=name, path=self.staging_dir / name, contents=self.task.code)
        # Recorded before writing so a partially written file is cleaned up too
        self.staged = staged
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, _write_staged_file, staged)
        return staged

    @staticmethod
    def _schedule_cleanup(staged: StagedFile) -> None:
        # Fire and forget: the executor owns the job from here
        loop = asyncio.get_event_loop()
        loop.run_in_executor(None, _remove_staged_file, staged.path)
