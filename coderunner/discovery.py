"""
Cluster membership and service discovery.

Nodes join with a role and keep a heartbeat key alive; a node whose heartbeat
expired is considered gone and is pruned on the next read. Worker nodes publish
a WorkerPoolHandle under a well-known service key; gateways resolve that key to
the handles of live nodes only.
"""
import asyncio
import json
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis

from .config import Settings
from .models import ClusterNode, WorkerPoolHandle

logger = logging.getLogger(__name__)


class Registry:
    """Contract shared by the registry backends."""

    async def join(self, node: ClusterNode) -> None:
        raise NotImplementedError

    async def heartbeat(self, node_id: str) -> None:
        raise NotImplementedError

    async def leave(self, node_id: str) -> None:
        raise NotImplementedError

    async def members(self) -> List[ClusterNode]:
        raise NotImplementedError

    async def register(self, service_key: str, handle: WorkerPoolHandle) -> None:
        raise NotImplementedError

    async def resolve(self, service_key: str) -> List[WorkerPoolHandle]:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryRegistry(Registry):
    """Single-process registry for development and tests."""

    def __init__(self, member_ttl: float = 6.0):
        self.member_ttl = member_ttl
        self._members: Dict[str, ClusterNode] = {}
        self._heartbeats: Dict[str, float] = {}
        self._services: Dict[str, Dict[str, WorkerPoolHandle]] = {}

    def _is_live(self, node_id: str) -> bool:
        last = self._heartbeats.get(node_id)
        return last is not None and time.monotonic() - last < self.member_ttl

    def _prune(self) -> None:
        for node_id in [n for n in self._members if not self._is_live(n)]:
            logger.info(f"Node {node_id} missed its heartbeat, removing")
            self._forget(node_id)

    def _forget(self, node_id: str) -> None:
        self._members.pop(node_id, None)
        self._heartbeats.pop(node_id, None)
        for handles in self._services.values():
            handles.pop(node_id, None)

    async def join(self, node: ClusterNode) -> None:
        self._members[node.node_id] = node
        self._heartbeats[node.node_id] = time.monotonic()

    async def heartbeat(self, node_id: str) -> None:
        if node_id in self._members:
            self._heartbeats[node_id] = time.monotonic()

    async def leave(self, node_id: str) -> None:
        self._forget(node_id)

    async def members(self) -> List[ClusterNode]:
        self._prune()
        return list(self._members.values())

    async def register(self, service_key: str, handle: WorkerPoolHandle) -> None:
        self._services.setdefault(service_key, {})[handle.node_id] = handle

    async def resolve(self, service_key: str) -> List[WorkerPoolHandle]:
        self._prune()
        handles = self._services.get(service_key, {})
        return sorted(handles.values(), key=lambda h: h.node_id)


class RedisRegistry(Registry):
    """
    Redis-backed registry.

    Keys:
    - <prefix>:members            hash node_id -> node json
    - <prefix>:heartbeat:<node>   string with TTL = member_ttl
    - <prefix>:service:<key>      hash node_id -> handle json
    """

    def __init__(self, settings: Settings, client: Optional[redis.Redis] = None):
        self.prefix = settings.REDIS_KEY_PREFIX
        self.member_ttl_ms = int(settings.MEMBER_TTL * 1000)
        self._settings = settings
        self._client = client

    async def get_client(self) -> redis.Redis:
        """Get or create Redis client"""
        if self._client is None:
            self._client = redis.Redis(
                host=self._settings.REDIS_HOST,
                port=self._settings.REDIS_PORT,
                password=self._settings.REDIS_PASSWORD,
                db=self._settings.REDIS_DB,
                decode_responses=True,
            )
        return self._client

    @property
    def members_key(self) -> str:
        return f"{self.prefix}:members"

    def heartbeat_key(self, node_id: str) -> str:
        return f"{self.prefix}:heartbeat:{node_id}"

    def service_key(self, service_key: str) -> str:
        return f"{self.prefix}:service:{service_key}"

    async def join(self, node: ClusterNode) -> None:
        client = await self.get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self.members_key, node.node_id, json.dumps(node.to_dict()))
            pipe.set(self.heartbeat_key(node.node_id), "1", px=self.member_ttl_ms)
            await pipe.execute()

    async def heartbeat(self, node_id: str) -> None:
        client = await self.get_client()
        await client.set(self.heartbeat_key(node_id), "1", px=self.member_ttl_ms)

    async def leave(self, node_id: str) -> None:
        client = await self.get_client()
        service_keys = [k async for k in client.scan_iter(match=f"{self.prefix}:service:*")]
        async with client.pipeline(transaction=True) as pipe:
            pipe.hdel(self.members_key, node_id)
            pipe.delete(self.heartbeat_key(node_id))
            for key in service_keys:
                pipe.hdel(key, node_id)
            await pipe.execute()

    async def _live_ids(self, node_ids: List[str]) -> Tuple[List[str], List[str]]:
        """Split node ids into (live, expired) by heartbeat presence."""
        if not node_ids:
            return [], []
        client = await self.get_client()
        async with client.pipeline(transaction=False) as pipe:
            for node_id in node_ids:
                pipe.exists(self.heartbeat_key(node_id))
            flags = await pipe.execute()
        live = [n for n, alive in zip(node_ids, flags) if alive]
        expired = [n for n, alive in zip(node_ids, flags) if not alive]
        return live, expired

    async def members(self) -> List[ClusterNode]:
        client = await self.get_client()
        raw = await client.hgetall(self.members_key)
        live, expired = await self._live_ids(list(raw))
        if expired:
            logger.info(f"Removing nodes with expired heartbeats: {expired}")
            await client.hdel(self.members_key, *expired)
        return [ClusterNode.from_dict(json.loads(raw[n])) for n in sorted(live)]

    async def register(self, service_key: str, handle: WorkerPoolHandle) -> None:
        client = await self.get_client()
        await client.hset(self.service_key(service_key), handle.node_id, json.dumps(handle.to_dict()))

    async def resolve(self, service_key: str) -> List[WorkerPoolHandle]:
        client = await self.get_client()
        key = self.service_key(service_key)
        raw = await client.hgetall(key)
        live, expired = await self._live_ids(list(raw))
        if expired:
            await client.hdel(key, *expired)
        return [WorkerPoolHandle.from_dict(json.loads(raw[n])) for n in sorted(live)]

    async def ping(self) -> bool:
        """Check if Redis is available"""
        try:
            client = await self.get_client()
            return await client.ping()
        except Exception:
            return False

    async def close(self) -> None:
        """Close Redis connection"""
        if self._client:
            await self._client.aclose()
            self._client = None


def create_registry(settings: Settings) -> Registry:
    if settings.REGISTRY_BACKEND == "memory":
        return InMemoryRegistry(member_ttl=settings.MEMBER_TTL)
    if settings.REGISTRY_BACKEND == "redis":
        return RedisRegistry(settings)
    raise ValueError(f"unknown registry backend: {settings.REGISTRY_BACKEND!r}")


class ClusterMember:
    """Keeps this node's membership alive while the node runs."""

    def __init__(self, registry: Registry, node: ClusterNode, heartbeat_interval: float = 2.0):
        self.registry = registry
        self.node = node
        self.heartbeat_interval = heartbeat_interval
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def join(self) -> None:
        await self.registry.join(self.node)
        self._running = True
        self._task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Node {self.node.node_id} joined the cluster as {self.node.role.value}")

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.registry.heartbeat(self.node.node_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Heartbeat for {self.node.node_id} failed: {e}")

    async def leave(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        try:
            await self.registry.leave(self.node.node_id)
            logger.info(f"Node {self.node.node_id} left the cluster")
        except Exception as e:
            logger.warning(f"Failed to leave the cluster cleanly: {e}")


class DiscoveryWatcher:
    """
    Periodically resolves a service key and notifies listeners when the set of
    live handles changes. Runs independently of any in-flight dispatch.
    """

    def __init__(self, registry: Registry, service_key: str, interval: float = 1.0):
        self.registry = registry
        self.service_key = service_key
        self.interval = interval
        self.snapshot: Tuple[WorkerPoolHandle, ...] = ()
        self._listeners: List[Callable[[Tuple[WorkerPoolHandle, ...]], None]] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def add_listener(self, listener: Callable[[Tuple[WorkerPoolHandle, ...]], None]) -> None:
        self._listeners.append(listener)

    async def refresh(self) -> Tuple[WorkerPoolHandle, ...]:
        handles = tuple(await self.registry.resolve(self.service_key))
        if handles != self.snapshot:
            logger.info(f"Worker pools changed: {[h.node_id for h in handles]}")
            self.snapshot = handles
            for listener in self._listeners:
                listener(handles)
        return handles

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._watch_loop())

    async def _watch_loop(self) -> None:
        while self._running:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Discovery refresh failed: {e}")
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
