"""
Test doubles shared across test modules.

LocalSandbox runs staged programs with the current interpreter instead of a
container, so the worker side can be tested without a docker daemon.
"""
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from coderunner.config import Settings
from coderunner.models import LanguageProfile, StagedFile, Succeeded
from coderunner.sandbox import SandboxRunner


class LocalSandbox(SandboxRunner):
    def build_command(self, profile: LanguageProfile, staged: StagedFile, container_name: str) -> List[str]:
        return [sys.executable, "-u", str(staged.path)]

    def kill_command(self, container_name: str) -> Optional[List[str]]:
        return None


class EchoSandbox:
    """Returns the staged source as output without running anything."""

    def __init__(self):
        self.runs: List[StagedFile] = []

    async def run(self, profile, staged):
        self.runs.append(staged)
        return Succeeded(staged.contents)


class GatedSandbox(EchoSandbox):
    """Like EchoSandbox, but every run waits until `release` is set."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def run(self, profile, staged):
        self.runs.append(staged)
        await self.release.wait()
        return Succeeded(staged.contents)


class Inbox:
    """Stands in for an actor that only collects what it is told."""

    def __init__(self):
        self.messages: List[Any] = []
        self.received = asyncio.Event()

    def tell(self, message: Any) -> None:
        self.messages.append(message)
        self.received.set()


def make_settings(staging_dir: Path, **overrides) -> Settings:
    values = dict(
        REGISTRY_BACKEND="memory",
        SANDBOX_PULL_IMAGES=False,
        STAGING_DIR=str(staging_dir),
        SANDBOX_TIMEOUT=1.0,
        SANDBOX_STARTUP_GRACE=1.0,
        WORKER_POOL_SIZE=2,
        LOAD_BALANCER_COUNT=2,
        HEARTBEAT_INTERVAL=0.05,
        MEMBER_TTL=1.0,
        DISCOVERY_REFRESH_INTERVAL=0.05,
        KAFKA_BOOTSTRAP_SERVERS="",
    )
    values.update(overrides)
    return Settings(**values)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_event_loop().time() + timeout
    while not predicate():
        if asyncio.get_event_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def busy_loop_writing_pid(pid_file: Path) -> str:
    """Source of a program that records its pid, then spins forever."""
    return (
        "import os, pathlib\n"
        f"pathlib.Path({str(pid_file)!r}).write_text(str(os.getpid()))\n"
        "while True: pass\n"
    )


def process_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True
