"""
Role-specific node bootstrap: what a worker node and a gateway node start and
stop, and how they announce themselves to the cluster.
"""
import logging
from pathlib import Path
from typing import List, Optional

from .balancer import HttpPoolClient, LoadBalancer, PoolsChanged
from .config import Settings
from .discovery import ClusterMember, DiscoveryWatcher, Registry
from .gateway import Gateway
from .images import SandboxImages
from .languages import LANGUAGE_PROFILES
from .models import ClusterNode, NodeRole, WorkerPoolHandle
from .sandbox import SandboxRunner
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class WorkerNode:
    """Runs a worker pool and publishes it for discovery."""

    def __init__(self, settings: Settings, registry: Registry, sandbox: Optional[SandboxRunner] = None):
        self.settings = settings
        self.registry = registry
        self.sandbox = sandbox or SandboxRunner(settings)
        self.images = SandboxImages(LANGUAGE_PROFILES.values())
        self.pool = WorkerPool(
            pool_size=settings.WORKER_POOL_SIZE,
            sandbox=self.sandbox,
            staging_dir=Path(settings.STAGING_DIR),
            max_history=settings.HISTORY_SIZE,
        )
        self.node = ClusterNode(
            node_id=settings.node_id,
            role=NodeRole.WORKER,
            address=settings.advertised_address,
        )
        self.member = ClusterMember(registry, self.node, settings.HEARTBEAT_INTERVAL)

    async def start(self) -> None:
        logger.info(f"Starting worker node {self.node.node_id}...")
        Path(self.settings.STAGING_DIR).mkdir(parents=True, exist_ok=True)

        if self.settings.SANDBOX_PULL_IMAGES:
            await self.images.ensure_all()

        self.pool.start()
        await self.member.join()
        await self.registry.register(
            self.settings.WORKER_POOL_SERVICE_KEY,
            WorkerPoolHandle(node_id=self.node.node_id, address=self.node.address),
        )
        logger.info(f"Worker pool published under '{self.settings.WORKER_POOL_SERVICE_KEY}' at {self.node.address}")

    async def stop(self) -> None:
        logger.info(f"Stopping worker node {self.node.node_id}...")
        await self.member.leave()
        await self.pool.shutdown()
        self.images.close()


class GatewayNode:
    """Runs the load balancers and keeps them fed with live worker pools."""

    def __init__(self, settings: Settings, registry: Registry, client: Optional[HttpPoolClient] = None):
        self.settings = settings
        self.registry = registry
        self.client = client or HttpPoolClient(timeout=settings.DISPATCH_HTTP_TIMEOUT)
        self.balancers: List[LoadBalancer] = []
        self.gateway = Gateway(self.balancers, reply_timeout=settings.REPLY_TIMEOUT)
        self.watcher = DiscoveryWatcher(
            registry,
            settings.WORKER_POOL_SERVICE_KEY,
            interval=settings.DISCOVERY_REFRESH_INTERVAL,
        )
        self.watcher.add_listener(self._publish_pools)
        self.node = ClusterNode(
            node_id=settings.node_id,
            role=NodeRole.GATEWAY,
            address=settings.advertised_address,
        )
        self.member = ClusterMember(registry, self.node, settings.HEARTBEAT_INTERVAL)

    def _publish_pools(self, pools) -> None:
        for balancer in self.balancers:
            balancer.tell(PoolsChanged(pools))

    async def start(self) -> None:
        logger.info(f"Starting gateway node {self.node.node_id}...")
        for i in range(self.settings.LOAD_BALANCER_COUNT):
            self.balancers.append(LoadBalancer(f"load-balancer-{i}", self.client).start())

        await self.member.join()
        try:
            await self.watcher.refresh()
        except Exception as e:
            logger.warning(f"Initial discovery failed, will retry in background: {e}")
        await self.watcher.start()
        logger.info(f"Gateway started with {len(self.balancers)} load balancers")

    async def stop(self) -> None:
        logger.info(f"Stopping gateway node {self.node.node_id}...")
        await self.watcher.stop()
        await self.member.leave()
        for balancer in self.balancers:
            await balancer.stop()
        self.balancers.clear()
        await self.client.aclose()
