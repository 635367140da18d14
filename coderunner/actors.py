"""
Minimal mailbox actors on top of asyncio.

Each actor is one asyncio task draining its own queue, so an actor handles one
message at a time and never shares mutable state with another actor. Replies
travel through asyncio futures ("reply destinations").
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


def reply(destination: asyncio.Future, message: Any) -> bool:
    """
    Deliver a reply. Returns False if nobody is waiting any more
    (the requester timed out or went away); the reply is then dropped.
    """
    if destination.done():
        return False
    destination.set_result(message)
    return True


class Actor:
    """Base class: subclasses implement `receive`."""

    def __init__(self, name: str):
        self.name = name
        self.mailbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._failure_callbacks: List[Callable[["Actor", BaseException], None]] = []

    def start(self) -> "Actor":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def tell(self, message: Any) -> None:
        self.mailbox.put_nowait(message)

    def on_failure(self, callback: Callable[["Actor", BaseException], None]) -> None:
        """Register a supervisor callback invoked when `receive` raises."""
        self._failure_callbacks.append(callback)

    async def receive(self, message: Any) -> None:
        raise NotImplementedError

    def drain_mailbox(self) -> List[Any]:
        """Take every queued message (used when a replacement takes over)."""
        messages = []
        while not self.mailbox.empty():
            messages.append(self.mailbox.get_nowait())
        return messages

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            message = await self.mailbox.get()
            try:
                await self.receive(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Actor {self.name} crashed while handling {type(message).__name__}")
                for callback in self._failure_callbacks:
                    try:
                        callback(self, e)
                    except Exception as cb_error:
                        logger.warning(f"Error in failure callback of {self.name}: {cb_error}")
                return
