"""
Load Balancer actors - forward tasks to remote worker pools round-robin.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Set, Tuple

import httpx

from .actors import Actor, reply
from .models import Failed, FailureKind, ExecutionOutcome, Task, WorkerPoolHandle, outcome_from_dict
from .routing import RoundRobinSelector

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """The pool was reached but did not return a usable outcome."""


class PoolUnreachable(DispatchError):
    """The task never reached the pool (connection refused, DNS, ...)."""


@dataclass(frozen=True)
class Dispatch:
    task: Task


@dataclass(frozen=True)
class PoolsChanged:
    pools: Tuple[WorkerPoolHandle, ...]


class HttpPoolClient:
    """Sends a task to a worker node's /execute endpoint."""

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def execute(self, handle: WorkerPoolHandle, task: Task) -> ExecutionOutcome:
        try:
            response = await self._client.post(
                f"{handle.address}/execute",
                json={"language": task.language, "code": task.code, "task_id": task.task_id},
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise PoolUnreachable(f"{handle.node_id} unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise DispatchError(f"{handle.node_id} request failed: {e}") from e

        try:
            return outcome_from_dict(response.json())
        except ValueError as e:
            raise DispatchError(
                f"{handle.node_id} returned status {response.status_code} without an outcome"
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()


class LoadBalancer(Actor):
    def __init__(self, name: str, client: HttpPoolClient):
        super().__init__(name)
        self.client = client
        self.pools: Tuple[WorkerPoolHandle, ...] = ()
        self._selector = RoundRobinSelector()
        self._in_flight: Set[asyncio.Task] = set()

    async def receive(self, message: Any) -> None:
        if isinstance(message, PoolsChanged):
            self.pools = message.pools
        elif isinstance(message, Dispatch):
            self._dispatch(message.task)
        else:
            logger.warning(f"{self.name} ignoring unknown message {message!r}")

    def _dispatch(self, task: Task) -> None:
        if not self.pools:
            logger.warning(f"{self.name}: no worker pool available for task {task.task_id}")
            reply(task.reply_to, Failed("no worker pool available", FailureKind.NO_WORKER_POOL))
            return

        # Forwarding runs beside the mailbox so one slow pool does not hold up dispatch
        first = self._selector.select(self.pools)
        forward = asyncio.create_task(self._forward(task, first, self.pools))
        self._in_flight.add(forward)
        forward.add_done_callback(self._in_flight.discard)

    async def _forward(self, task: Task, first: WorkerPoolHandle, snapshot: Tuple[WorkerPoolHandle, ...]) -> None:
        # A task that never reached a pool may go to the next one; once
        # delivered it is never sent again.
        start = snapshot.index(first)
        candidates = snapshot[start:] + snapshot[:start]
        for handle in candidates:
            if task.reply_to.done():
                return
            try:
                outcome = await self.client.execute(handle, task)
            except PoolUnreachable as e:
                logger.warning(f"{self.name}: {e}; trying next pool")
                continue
            except DispatchError as e:
                logger.error(f"{self.name}: dispatch of task {task.task_id} failed: {e}")
                reply(task.reply_to, Failed("dispatch failed", FailureKind.DISPATCH_FAILURE))
                return
            reply(task.reply_to, outcome)
            return

        reply(task.reply_to, Failed("no worker pool reachable", FailureKind.DISPATCH_FAILURE))

    async def stop(self) -> None:
        for forward in list(self._in_flight):
            forward.cancel()
        await asyncio.gather(*self._in_flight, return_exceptions=True)
        await super().stop()
