"""
HTTP surface of a coderunner node.

The same application serves both roles; NODE_ROLE decides which routes and
which node bootstrap are mounted:
- worker:  POST /execute, GET /health, /stats, /history
- gateway: POST /{language}, GET /health, /cluster (+ optional Kafka ingress)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import gateway
from .balancer import HttpPoolClient
from .config import Settings, get_settings
from .discovery import Registry, create_registry
from .kafka_consumer import KafkaIngress
from .models import Failed, FailureKind, NodeRole, Task, outcome_to_dict
from .node import GatewayNode, WorkerNode
from .sandbox import SandboxRunner

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class ExecuteRequest(BaseModel):
    language: str
    code: str
    task_id: Optional[str] = None


worker_router = APIRouter(tags=["worker"])


@worker_router.post("/execute")
async def execute(body: ExecuteRequest, request: Request):
    """Run one task on this node's worker pool and return its outcome as JSON."""
    node: WorkerNode = request.app.state.node
    settings: Settings = request.app.state.settings

    loop = asyncio.get_event_loop()
    task = Task(code=body.code, language=body.language, reply_to=loop.create_future())
    if body.task_id:
        task.task_id = body.task_id

    node.pool.dispatch(task)
    try:
        outcome = await asyncio.wait_for(task.reply_to, timeout=settings.WORKER_REPLY_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"Task {task.task_id} not finished within {settings.WORKER_REPLY_TIMEOUT}s")
        return JSONResponse(
            outcome_to_dict(Failed("worker pool timed out", FailureKind.DISPATCH_TIMEOUT)),
            status_code=504,
        )
    return outcome_to_dict(outcome)


@worker_router.get("/health")
async def worker_health(request: Request):
    """Health check endpoint with worker pool status."""
    node: WorkerNode = request.app.state.node
    pool_status = node.pool.status()
    return {
        "status": "healthy" if pool_status["total"] > 0 else "degraded",
        "role": "worker",
        "node_id": node.node.node_id,
        "container_runtime": await node.images.runtime_available(),
        "pool": pool_status,
    }


@worker_router.get("/stats")
async def worker_stats(request: Request):
    return request.app.state.node.pool.get_stats()


@worker_router.get("/history")
async def worker_history(request: Request, limit: int = Query(50, ge=1, le=1000)):
    return {"executions": request.app.state.node.pool.get_execution_history(limit)}


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[Registry] = None,
    sandbox: Optional[SandboxRunner] = None,
    pool_client: Optional[HttpPoolClient] = None,
) -> FastAPI:
    """Build the application for the configured node role."""
    settings = settings or get_settings()
    role = NodeRole(settings.NODE_ROLE.strip().lower())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the node on startup, leave the cluster on shutdown."""
        logger.info(f"Starting up {role.value} node...")
        node_registry = registry or create_registry(settings)
        if not await node_registry.ping():
            logger.warning("Cluster registry is not reachable yet")

        if role is NodeRole.WORKER:
            node = WorkerNode(settings, node_registry, sandbox=sandbox)
        else:
            node = GatewayNode(settings, node_registry, client=pool_client)

        try:
            await node.start()
        except Exception as e:
            logger.error(f"Failed to start {role.value} node: {e}")
            raise

        app.state.settings = settings
        app.state.node = node
        if isinstance(node, GatewayNode):
            app.state.gateway = node.gateway

        kafka_ingress = None
        if isinstance(node, GatewayNode) and settings.kafka_enabled:
            try:
                kafka_ingress = KafkaIngress(node.gateway, settings)
                await kafka_ingress.start()
            except Exception as e:
                logger.warning(f"Failed to start Kafka ingress (HTTP endpoint still available): {e}")
                kafka_ingress = None
        elif isinstance(node, GatewayNode):
            logger.info("Kafka not configured, using HTTP-only mode")

        yield

        if kafka_ingress:
            await kafka_ingress.stop()

        logger.info(f"Shutting down {role.value} node...")
        await node.stop()
        await node_registry.close()

    app = FastAPI(title=f"coderunner {role.value}", lifespan=lifespan)
    if role is NodeRole.WORKER:
        app.include_router(worker_router)
    else:
        app.include_router(gateway.router)
    return app
