import os
import socket
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import model_validator
from pydantic_settings import BaseSettings

# Load .env (but env vars already set take priority)
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "../.env"))


class Settings(BaseSettings):
    # Node identity
    NODE_ROLE: str = "worker"  # "worker" | "gateway"
    NODE_ID: str = ""
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    ADVERTISED_ADDRESS: str = ""

    # Pool sizing
    WORKER_POOL_SIZE: int = 5
    LOAD_BALANCER_COUNT: int = 3

    # Sandbox limits
    SANDBOX_TIMEOUT: float = 2.0
    # Extra host-side time for container start-up; the watchdog must fire before REPLY_TIMEOUT
    SANDBOX_STARTUP_GRACE: float = 0.5
    SANDBOX_MEMORY_LIMIT: str = "20m"
    SANDBOX_CPUS: float = 0.5
    SANDBOX_PIDS_LIMIT: int = 64
    SANDBOX_USER: str = "65534:65534"
    MAX_OUTPUT_SIZE: int = 409600
    MAX_CODE_SIZE: int = 50000

    # Sandbox runtime
    DOCKER_BINARY: str = "docker"
    SANDBOX_PULL_IMAGES: bool = True
    STAGING_DIR: str = "/tmp/coderunner"
    # Same directory as seen by the docker daemon (differs when running inside a container)
    STAGING_HOST_DIR: str = ""
    SANDBOX_MOUNT_PATH: str = "/sandbox"

    # Timeouts (seconds)
    REPLY_TIMEOUT: float = 3.0
    WORKER_REPLY_TIMEOUT: float = 30.0
    DISPATCH_HTTP_TIMEOUT: float = 10.0
    RETRY_AFTER_SECONDS: int = 1

    # Cluster discovery
    REGISTRY_BACKEND: str = "redis"  # "redis" | "memory"
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0
    REDIS_KEY_PREFIX: str = "coderunner"
    WORKER_POOL_SERVICE_KEY: str = "worker-pool"
    HEARTBEAT_INTERVAL: float = 2.0
    MEMBER_TTL: float = 6.0
    DISCOVERY_REFRESH_INTERVAL: float = 1.0

    # Dashboard history
    HISTORY_SIZE: int = 100

    # Kafka ingress (empty bootstrap servers = disabled)
    KAFKA_BOOTSTRAP_SERVERS: str = ""
    KAFKA_CODE_REQUEST_TOPIC: str = "code-execution-requests"
    KAFKA_CODE_RESPONSE_TOPIC: str = "code-execution-responses"
    KAFKA_CONSUMER_GROUP: str = "coderunner-gateway"
    KAFKA_REQUEST_ENCRYPTION_KEY: str = "coderunner-request-encryption-key"
    KAFKA_RESPONSE_ENCRYPTION_KEY: str = "coderunner-response-encryption-key"

    LOG_LEVEL: str = "INFO"

    @property
    def node_id(self) -> str:
        return self.NODE_ID or f"{self.NODE_ROLE}-{socket.gethostname()}-{self.PORT}"

    @property
    def advertised_address(self) -> str:
        """Base URL other nodes use to reach this node."""
        if self.ADVERTISED_ADDRESS:
            return self.ADVERTISED_ADDRESS.rstrip("/")
        return f"http://{socket.gethostname()}:{self.PORT}"

    @property
    def staging_host_dir(self) -> str:
        return self.STAGING_HOST_DIR or self.STAGING_DIR

    @property
    def kafka_enabled(self) -> bool:
        return bool(self.KAFKA_BOOTSTRAP_SERVERS.strip())

    @model_validator(mode="after")
    def check_timeouts(self) -> "Settings":
        # A sandbox timeout has to reach the gateway before it gives up waiting
        sandbox_deadline = self.SANDBOX_TIMEOUT + self.SANDBOX_STARTUP_GRACE
        if self.REPLY_TIMEOUT <= sandbox_deadline:
            raise ValueError(
                f"REPLY_TIMEOUT ({self.REPLY_TIMEOUT}s) must be greater than "
                f"SANDBOX_TIMEOUT + SANDBOX_STARTUP_GRACE ({sandbox_deadline}s)"
            )
        if self.WORKER_REPLY_TIMEOUT <= sandbox_deadline:
            raise ValueError(
                f"WORKER_REPLY_TIMEOUT ({self.WORKER_REPLY_TIMEOUT}s) must be greater than "
                f"SANDBOX_TIMEOUT + SANDBOX_STARTUP_GRACE ({sandbox_deadline}s)"
            )
        return self

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
