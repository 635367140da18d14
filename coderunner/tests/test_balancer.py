import asyncio

import httpx
import pytest

from coderunner.balancer import (
    Dispatch,
    DispatchError,
    HttpPoolClient,
    LoadBalancer,
    PoolsChanged,
    PoolUnreachable,
)
from coderunner.models import Failed, FailureKind, Succeeded, Task, WorkerPoolHandle
from coderunner.routing import RoundRobinSelector

POOL_A = WorkerPoolHandle(node_id="worker-a", address="http://worker-a:8080")
POOL_B = WorkerPoolHandle(node_id="worker-b", address="http://worker-b:8080")


class FakePoolClient:
    """Answers per node id; an exception instance is raised instead of returned."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def execute(self, handle, task):
        self.calls.append(handle.node_id)
        response = self.responses.get(handle.node_id, Succeeded(f"ran on {handle.node_id}"))
        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self):
        pass


def make_task(code: str = "print(1)") -> Task:
    return Task(code=code, language="python", reply_to=asyncio.get_event_loop().create_future())


async def dispatch(balancer: LoadBalancer, task: Task):
    balancer.tell(Dispatch(task))
    return await asyncio.wait_for(task.reply_to, timeout=1)


@pytest.mark.asyncio
async def test_no_pools_fails_immediately():
    balancer = LoadBalancer("load-balancer-0", FakePoolClient()).start()

    outcome = await dispatch(balancer, make_task())

    assert outcome == Failed("no worker pool available", FailureKind.NO_WORKER_POOL)
    await balancer.stop()


@pytest.mark.asyncio
async def test_round_robin_over_pools():
    client = FakePoolClient()
    balancer = LoadBalancer("load-balancer-0", client).start()
    balancer.tell(PoolsChanged((POOL_A, POOL_B)))

    outcomes = [await dispatch(balancer, make_task()) for _ in range(3)]

    assert client.calls == ["worker-a", "worker-b", "worker-a"]
    assert outcomes[1] == Succeeded("ran on worker-b")
    await balancer.stop()


@pytest.mark.asyncio
async def test_unreachable_pool_falls_through_to_next():
    client = FakePoolClient({"worker-a": PoolUnreachable("connection refused")})
    balancer = LoadBalancer("load-balancer-0", client).start()
    balancer.tell(PoolsChanged((POOL_A, POOL_B)))

    outcome = await dispatch(balancer, make_task())

    assert outcome == Succeeded("ran on worker-b")
    assert client.calls == ["worker-a", "worker-b"]
    await balancer.stop()


@pytest.mark.asyncio
async def test_all_pools_unreachable():
    client = FakePoolClient({
        "worker-a": PoolUnreachable("connection refused"),
        "worker-b": PoolUnreachable("connection refused"),
    })
    balancer = LoadBalancer("load-balancer-0", client).start()
    balancer.tell(PoolsChanged((POOL_A, POOL_B)))

    outcome = await dispatch(balancer, make_task())

    assert outcome == Failed("no worker pool reachable", FailureKind.DISPATCH_FAILURE)
    await balancer.stop()


@pytest.mark.asyncio
async def test_delivered_task_is_not_sent_again():
    client = FakePoolClient({"worker-a": DispatchError("read timeout")})
    balancer = LoadBalancer("load-balancer-0", client).start()
    balancer.tell(PoolsChanged((POOL_A, POOL_B)))

    outcome = await dispatch(balancer, make_task())

    assert outcome == Failed("dispatch failed", FailureKind.DISPATCH_FAILURE)
    assert client.calls == ["worker-a"]
    await balancer.stop()


@pytest.mark.asyncio
async def test_pool_failures_are_forwarded_unchanged():
    timeout = Failed("exceeded timeout", FailureKind.SANDBOX_TIMEOUT)
    balancer = LoadBalancer("load-balancer-0", FakePoolClient({"worker-a": timeout})).start()
    balancer.tell(PoolsChanged((POOL_A,)))

    assert await dispatch(balancer, make_task()) == timeout
    await balancer.stop()


@pytest.mark.asyncio
async def test_pool_removed_from_snapshot_is_not_used():
    client = FakePoolClient()
    balancer = LoadBalancer("load-balancer-0", client).start()
    balancer.tell(PoolsChanged((POOL_A, POOL_B)))
    balancer.tell(PoolsChanged((POOL_B,)))

    for _ in range(2):
        await dispatch(balancer, make_task())

    assert client.calls == ["worker-b", "worker-b"]
    await balancer.stop()


@pytest.mark.asyncio
async def test_http_client_posts_task_and_parses_outcome():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), request.read()))
        return httpx.Response(200, json={"status": "succeeded", "output": "hi\n"})

    client = HttpPoolClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    task = make_task('print("hi")')

    assert await client.execute(POOL_A, task) == Succeeded("hi\n")
    url, body = seen[0]
    assert url == "http://worker-a:8080/execute"
    assert task.task_id.encode() in body
    await client.aclose()


@pytest.mark.asyncio
async def test_http_client_connect_error_is_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = HttpPoolClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(PoolUnreachable):
        await client.execute(POOL_A, make_task())
    await client.aclose()


@pytest.mark.asyncio
async def test_http_client_rejects_response_without_outcome():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="Internal Server Error")

    client = HttpPoolClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(DispatchError) as exc_info:
        await client.execute(POOL_A, make_task())
    assert not isinstance(exc_info.value, PoolUnreachable)
    await client.aclose()


def test_round_robin_selector_follows_snapshot():
    selector = RoundRobinSelector()

    assert [selector.select(["a", "b", "c"]) for _ in range(4)] == ["a", "b", "c", "a"]
    assert selector.select(["x"]) == "x"
    with pytest.raises(LookupError):
        selector.select([])
