"""
Worker actors and the per-node Worker Pool.

A Worker runs at most one task at a time: it validates the language, hands the
task to a fresh ExecutionSupervisor and forwards the supervisor's outcome to the
original requester. The pool owns a fixed number of Worker slots, dispatches
round-robin and replaces a slot whose Worker crashed.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .actors import Actor, reply
from .languages import get_profile
from .models import ExecutionOutcome, Failed, FailureKind, Succeeded, Task
from .routing import RoundRobinSelector
from .sandbox import SandboxRunner
from .supervisor import ExecutionFinished, ExecutionSupervisor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartExecution:
    task: Task


class WorkerState(str, Enum):
    IDLE = "idle"
    AWAITING_SUPERVISOR = "awaiting_supervisor"


@dataclass
class ExecutionInfo:
    """Information about a finished execution."""
    task_id: str
    language: str
    worker_name: str
    start_time: float
    duration_ms: int
    success: bool
    failure_kind: Optional[str] = None


class Worker(Actor):
    def __init__(
        self,
        name: str,
        sandbox: SandboxRunner,
        staging_dir: Path,
        on_outcome: Optional[Callable[["Worker", Task, ExecutionOutcome, float], None]] = None,
    ):
        super().__init__(name)
        self.sandbox = sandbox
        self.staging_dir = staging_dir
        self.on_outcome = on_outcome
        self.state = WorkerState.IDLE
        self.current: Optional[Task] = None
        self._started_at: float = 0.0
        self._stash: List[StartExecution] = []
        self._supervision: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self.state is WorkerState.AWAITING_SUPERVISOR

    async def receive(self, message: Any) -> None:
        if isinstance(message, StartExecution):
            if self.busy:
                self._stash.append(message)
                return
            self._start_execution(message.task)
        elif isinstance(message, ExecutionFinished):
            self._finish_execution(message)
        else:
            logger.warning(f"Worker {self.name} ignoring unknown message {message!r}")

    def _start_execution(self, task: Task) -> None:
        profile = get_profile(task.language)
        if profile is None:
            logger.info(f"Task {task.task_id} rejected: unsupported language {task.language!r}")
            outcome = Failed(f"unsupported language: {task.language}", FailureKind.UNSUPPORTED_LANGUAGE)
            reply(task.reply_to, outcome)
            self._record(task, outcome, time.time())
            return

        supervisor = ExecutionSupervisor(task, profile, self.sandbox, self.staging_dir, reply_to=self)
        self.current = task
        self._started_at = time.time()
        self.state = WorkerState.AWAITING_SUPERVISOR
        self._supervision = supervisor.start()
        logger.debug(f"Worker {self.name} started task {task.task_id} ({profile.name})")

    def _finish_execution(self, message: ExecutionFinished) -> None:
        task = self.current
        if task is None or task.task_id != message.task_id:
            logger.warning(f"Worker {self.name} got a result for unknown task {message.task_id}")
            return

        if not reply(task.reply_to, message.outcome):
            logger.info(f"Requester of task {task.task_id} is gone; result dropped")
        self._record(task, message.outcome, self._started_at)

        self.current = None
        self._supervision = None
        self.state = WorkerState.IDLE
        stashed, self._stash = self._stash, []
        for pending in stashed:
            self.tell(pending)

    def _record(self, task: Task, outcome: ExecutionOutcome, started_at: float) -> None:
        if self.on_outcome is not None:
            self.on_outcome(self, task, outcome, started_at)

    async def stop(self) -> None:
        """Stop the running supervisor (and its sandbox) before the mailbox."""
        supervision = self._supervision
        if supervision is not None and not supervision.done():
            supervision.cancel()
            await asyncio.gather(supervision, return_exceptions=True)
        self._supervision = None

        if self.current is not None:
            reply(self.current.reply_to, Failed("worker pool shut down", FailureKind.INTERNAL))
        await super().stop()

    def pending_messages(self) -> List[Any]:
        """Stashed and queued messages, for handing over to a replacement."""
        stashed, self._stash = self._stash, []
        return [*stashed, *self.drain_mailbox()]


class WorkerPool:
    """
    Fixed-size set of Worker slots addressed round-robin.

    Features:
    - Restart-on-failure per slot
    - Execution statistics and bounded history
    """

    def __init__(
        self,
        pool_size: int,
        sandbox: SandboxRunner,
        staging_dir: Path,
        max_history: int = 100,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.pool_size = pool_size
        self.sandbox = sandbox
        self.staging_dir = Path(staging_dir)
        self.workers: List[Worker] = []
        self._selector = RoundRobinSelector()
        self._restarts = 0

        self._execution_history: List[ExecutionInfo] = []
        self._max_history = max_history
        self.stats = {
            "total_executions": 0,
            "total_exec_time_ms": 0,
            "success_count": 0,
            "failure_count": 0,
        }

    def start(self) -> None:
        logger.info(f"Starting worker pool with {self.pool_size} workers")
        self.workers = [self._spawn_worker(i) for i in range(self.pool_size)]

    def _spawn_worker(self, index: int) -> Worker:
        worker = Worker(
            name=f"worker-{index}",
            sandbox=self.sandbox,
            staging_dir=self.staging_dir,
            on_outcome=self._record_outcome,
        )
        worker.on_failure(self._on_worker_failure)
        worker.start()
        return worker

    def dispatch(self, task: Task) -> None:
        if not self.workers:
            raise RuntimeError("worker pool is not started")
        worker = self._selector.select(self.workers)
        worker.tell(StartExecution(task))

    def _on_worker_failure(self, actor: Actor, error: BaseException) -> None:
        try:
            index = self.workers.index(actor)
        except ValueError:
            return

        failed: Worker = self.workers[index]
        logger.warning(f"Restarting {failed.name} after failure: {error}")
        if failed.current is not None:
            reply(failed.current.reply_to, Failed("worker crashed", FailureKind.WORKER_CRASHED))
        if failed._supervision is not None:
            # Nobody would receive its result; the cancelled run stops its container
            failed._supervision.cancel()

        replacement = self._spawn_worker(index)
        for message in failed.pending_messages():
            replacement.tell(message)
        self.workers[index] = replacement
        self._restarts += 1

    def _record_outcome(self, worker: Worker, task: Task, outcome: ExecutionOutcome, started_at: float) -> None:
        duration_ms = int((time.time() - started_at) * 1000)
        success = isinstance(outcome, Succeeded)

        self.stats["total_executions"] += 1
        self.stats["total_exec_time_ms"] += duration_ms
        if success:
            self.stats["success_count"] += 1
        else:
            self.stats["failure_count"] += 1

        self._execution_history.append(ExecutionInfo(
            task_id=task.task_id,
            language=task.language,
            worker_name=worker.name,
            start_time=started_at,
            duration_ms=duration_ms,
            success=success,
            failure_kind=None if success else outcome.kind.value,
        ))
        if len(self._execution_history) > self._max_history:
            self._execution_history.pop(0)

    def status(self) -> Dict[str, Any]:
        busy = sum(1 for w in self.workers if w.busy)
        return {
            "total": len(self.workers),
            "busy": busy,
            "available": len(self.workers) - busy,
            "restarts": self._restarts,
            "workers": [
                {
                    "name": w.name,
                    "state": w.state.value,
                    "alive": w.alive,
                    "queued": w.mailbox.qsize(),
                    "current_task": w.current.task_id if w.current else None,
                }
                for w in self.workers
            ],
        }

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats["total_executions"]
        return {
            **self.stats,
            "avg_exec_time_ms": self.stats["total_exec_time_ms"] / total if total > 0 else 0,
            "success_rate": self.stats["success_count"] / total * 100 if total > 0 else 0,
        }

    def get_execution_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [
            {
                "task_id": e.task_id,
                "language": e.language,
                "worker": e.worker_name,
                "start_time": e.start_time,
                "duration_ms": e.duration_ms,
                "success": e.success,
                "failure_kind": e.failure_kind,
            }
            for e in reversed(self._execution_history[-limit:])
        ]

    async def shutdown(self) -> None:
        logger.info("Shutting down worker pool...")
        for worker in self.workers:
            await worker.stop()
        self.workers.clear()
        logger.info("Worker pool shutdown complete")
