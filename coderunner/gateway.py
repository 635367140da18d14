"""
Gateway - HTTP front for code submissions.
"""
import asyncio
import logging
import random
from typing import List

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from .balancer import Dispatch, LoadBalancer
from .models import ExecutionOutcome, Failed, FailureKind, Succeeded, Task

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong"
GENERIC_RETRY_ERROR = "Something went wrong, please try again later"

# Failures caused by the submitted program; their reasons are safe to show
PROGRAM_FAILURES = {
    FailureKind.SANDBOX_TIMEOUT,
    FailureKind.SANDBOX_MEMORY_EXCEEDED,
    FailureKind.OUTPUT_TOO_LARGE,
}
UNAVAILABLE_FAILURES = {
    FailureKind.DISPATCH_TIMEOUT,
    FailureKind.NO_WORKER_POOL,
    FailureKind.DISPATCH_FAILURE,
}


class Gateway:
    def __init__(self, balancers: List[LoadBalancer], reply_timeout: float = 3.0):
        self.balancers = balancers
        self.reply_timeout = reply_timeout

    async def submit(self, language: str, code: str) -> ExecutionOutcome:
        """Send a task to a random balancer and wait a bounded time for its outcome."""
        if not self.balancers:
            return Failed("no load balancer available", FailureKind.NO_WORKER_POOL)

        loop = asyncio.get_event_loop()
        task = Task(code=code, language=language, reply_to=loop.create_future())
        balancer = random.choice(self.balancers)
        balancer.tell(Dispatch(task))

        try:
            return await asyncio.wait_for(task.reply_to, timeout=self.reply_timeout)
        except asyncio.TimeoutError:
            # wait_for cancelled the future, so a late reply is dropped
            logger.warning(f"Task {task.task_id} ({language}) got no reply within {self.reply_timeout}s")
            return Failed("dispatch timed out", FailureKind.DISPATCH_TIMEOUT)


def public_outcome(outcome: ExecutionOutcome) -> ExecutionOutcome:
    """Replace internal failure reasons with a generic text for external callers."""
    if isinstance(outcome, Succeeded):
        return outcome
    if outcome.kind is FailureKind.UNSUPPORTED_LANGUAGE or outcome.kind in PROGRAM_FAILURES:
        return outcome
    if outcome.kind in UNAVAILABLE_FAILURES:
        return Failed(GENERIC_RETRY_ERROR, outcome.kind)
    return Failed(GENERIC_ERROR, outcome.kind)


def outcome_response(outcome: ExecutionOutcome, retry_after: int = 1) -> PlainTextResponse:
    outcome = public_outcome(outcome)
    if isinstance(outcome, Succeeded):
        return PlainTextResponse(outcome.output, status_code=200)
    if outcome.kind is FailureKind.UNSUPPORTED_LANGUAGE:
        return PlainTextResponse(outcome.reason, status_code=400)
    if outcome.kind in PROGRAM_FAILURES:
        return PlainTextResponse(outcome.reason, status_code=422)
    if outcome.kind in UNAVAILABLE_FAILURES:
        return PlainTextResponse(
            outcome.reason,
            status_code=503,
            headers={"Retry-After": str(retry_after)},
        )
    return PlainTextResponse(outcome.reason, status_code=500)


router = APIRouter(tags=["gateway"])


@router.get("/health")
async def health(request: Request):
    """Gateway liveness plus the worker pools it currently knows about."""
    node = request.app.state.node
    return {
        "status": "healthy",
        "role": "gateway",
        "node_id": node.node.node_id,
        "load_balancers": len(node.balancers),
        "worker_pools": [h.to_dict() for h in node.watcher.snapshot],
    }


@router.get("/cluster")
async def cluster(request: Request):
    node = request.app.state.node
    members = await node.registry.members()
    return {"members": [m.to_dict() for m in members]}


@router.post("/{language}", response_class=PlainTextResponse)
async def submit_code(language: str, request: Request):
    """Run the raw request body as a `language` program and return its output."""
    settings = request.app.state.settings
    body = await request.body()

    if len(body) > settings.MAX_CODE_SIZE:
        return PlainTextResponse("code too large", status_code=413)
    try:
        code = body.decode("utf-8")
    except UnicodeDecodeError:
        return PlainTextResponse("code must be UTF-8 text", status_code=400)
    if not code.strip():
        return PlainTextResponse("code is required", status_code=400)

    outcome = await request.app.state.gateway.submit(language, code)
    return outcome_response(outcome, retry_after=settings.RETRY_AFTER_SECONDS)
