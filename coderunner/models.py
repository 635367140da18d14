"""
Core data types shared by the worker and gateway sides.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Union


class FailureKind(str, Enum):
    """Why an execution did not produce program output."""
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    STAGING_FAILURE = "staging_failure"
    SANDBOX_TIMEOUT = "sandbox_timeout"
    SANDBOX_MEMORY_EXCEEDED = "sandbox_memory_exceeded"
    SANDBOX_LAUNCH_FAILURE = "sandbox_launch_failure"
    OUTPUT_TOO_LARGE = "output_too_large"
    DISPATCH_TIMEOUT = "dispatch_timeout"
    NO_WORKER_POOL = "no_worker_pool"
    DISPATCH_FAILURE = "dispatch_failure"
    WORKER_CRASHED = "worker_crashed"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Succeeded:
    output: str


@dataclass(frozen=True)
class Failed:
    reason: str
    kind: FailureKind = FailureKind.INTERNAL


ExecutionOutcome = Union[Succeeded, Failed]


def outcome_to_dict(outcome: ExecutionOutcome) -> Dict[str, Any]:
    if isinstance(outcome, Succeeded):
        return {"status": "succeeded", "output": outcome.output}
    return {"status": "failed", "reason": outcome.reason, "kind": outcome.kind.value}


def outcome_from_dict(data: Dict[str, Any]) -> ExecutionOutcome:
    """Parse an outcome received from a remote worker node."""
    status = data.get("status")
    if status == "succeeded":
        return Succeeded(output=str(data.get("output", "")))
    if status == "failed":
        try:
            kind = FailureKind(data.get("kind", FailureKind.INTERNAL.value))
        except ValueError:
            kind = FailureKind.INTERNAL
        return Failed(reason=str(data.get("reason", "")), kind=kind)
    raise ValueError(f"unknown outcome status: {status!r}")


@dataclass(frozen=True)
class LanguageProfile:
    """How to run one language inside the sandbox."""
    name: str
    command: tuple[str, ...]
    extension: str
    image: str


@dataclass(eq=False)
class Task:
    code: str
    language: str
    reply_to: asyncio.Future
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass(frozen=True)
class StagedFile:
    name: str
    path: Path
    contents: str


class NodeRole(str, Enum):
    WORKER = "worker"
    GATEWAY = "gateway"


class Liveness(str, Enum):
    UP = "up"
    UNREACHABLE = "unreachable"


@dataclass
class ClusterNode:
    node_id: str
    role: NodeRole
    address: str
    liveness: Liveness = Liveness.UP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "role": self.role.value,
            "address": self.address,
            "liveness": self.liveness.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterNode":
        return cls(
            node_id=data["node_id"],
            role=NodeRole(data["role"]),
            address=data["address"],
            liveness=Liveness(data.get("liveness", Liveness.UP.value)),
        )


@dataclass(frozen=True)
class WorkerPoolHandle:
    """Location-transparent reference to a worker pool on some node."""
    node_id: str
    address: str

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "address": self.address}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerPoolHandle":
        return cls(node_id=data["node_id"], address=data["address"])
