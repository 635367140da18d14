"""
Kafka ingress for the gateway.
Receives code execution requests, runs them through the gateway, and sends responses.

Encryption scheme:
- Kafka → Gateway (requests): Encrypted with KAFKA_REQUEST_ENCRYPTION_KEY
- Gateway → Kafka (responses): Encrypted with KAFKA_RESPONSE_ENCRYPTION_KEY
"""
import asyncio
import base64
import hashlib
import json
import logging
from typing import Any, Dict, Optional, Set

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from cryptography.fernet import Fernet, InvalidToken

from .config import Settings
from .gateway import Gateway, public_outcome
from .models import outcome_to_dict

logger = logging.getLogger(__name__)


def derive_fernet_key(key_string: str) -> bytes:
    """Generate a valid Fernet key from an encryption key string"""
    key_hash = hashlib.sha256(key_string.encode()).digest()
    return base64.urlsafe_b64encode(key_hash)


class MessageCipher:
    """Encrypts/decrypts JSON payloads, one Fernet key per direction."""

    def __init__(self, request_key: str, response_key: str):
        self._request_fernet = Fernet(derive_fernet_key(request_key))
        self._response_fernet = Fernet(derive_fernet_key(response_key))

    def decrypt_request(self, encrypted_data: bytes) -> dict:
        decrypted = self._request_fernet.decrypt(encrypted_data)
        return json.loads(decrypted.decode())

    def encrypt_request(self, data: dict) -> bytes:
        return self._request_fernet.encrypt(json.dumps(data).encode())

    def encrypt_response(self, data: dict) -> bytes:
        return self._response_fernet.encrypt(json.dumps(data).encode())

    def decrypt_response(self, encrypted_data: bytes) -> dict:
        decrypted = self._response_fernet.decrypt(encrypted_data)
        return json.loads(decrypted.decode())


class KafkaIngress:
    """Kafka consumer that receives code execution requests and sends responses"""

    def __init__(self, gateway: Gateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings
        self.cipher = MessageCipher(
            settings.KAFKA_REQUEST_ENCRYPTION_KEY,
            settings.KAFKA_RESPONSE_ENCRYPTION_KEY,
        )

        self.producer: Optional[AIOKafkaProducer] = None
        self.consumer: Optional[AIOKafkaConsumer] = None
        self._is_running = False
        self._consumer_task: Optional[asyncio.Task] = None
        self._handlers: Set[asyncio.Task] = set()
        self._initialized = False

    async def initialize(self, max_retries: int = 5, retry_delay: float = 5) -> None:
        """Initialize Kafka producer and consumer"""
        if self._initialized:
            return

        servers = self.settings.KAFKA_BOOTSTRAP_SERVERS
        for attempt in range(max_retries):
            try:
                self.producer = AIOKafkaProducer(
                    bootstrap_servers=servers,
                    value_serializer=lambda v: v,
                    max_request_size=10485760,
                    request_timeout_ms=30000,
                )
                await self.producer.start()
                logger.info(f"Kafka producer connected to {servers}")

                self.consumer = AIOKafkaConsumer(
                    self.settings.KAFKA_CODE_REQUEST_TOPIC,
                    bootstrap_servers=servers,
                    group_id=self.settings.KAFKA_CONSUMER_GROUP,
                    auto_offset_reset="earliest",
                    enable_auto_commit=True,
                )
                await self.consumer.start()
                logger.info(f"Kafka consumer started for topic: {self.settings.KAFKA_CODE_REQUEST_TOPIC}")

                self._initialized = True
                return

            except KafkaConnectionError as e:
                logger.warning(f"Kafka connection attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay)
                else:
                    raise

    async def start(self) -> None:
        await self.initialize()
        self._is_running = True
        self._consumer_task = asyncio.create_task(self._consume_requests())
        logger.info("Kafka ingress started")

    async def stop(self) -> None:
        self._is_running = False

        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass

        for handler in list(self._handlers):
            handler.cancel()
        await asyncio.gather(*self._handlers, return_exceptions=True)

        if self.consumer:
            await self.consumer.stop()

        if self.producer:
            await self.producer.stop()

        self._initialized = False
        logger.info("Kafka ingress stopped")

    async def process_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Run one decoded request through the gateway and build the response payload."""
        request_id = request.get("request_id")
        language = request.get("language")
        code = request.get("code")

        if not isinstance(language, str) or not isinstance(code, str) or not code.strip():
            return {"request_id": request_id, "status": "failed", "reason": "language and code are required"}

        outcome = await self.gateway.submit(language, code)
        return {"request_id": request_id, **outcome_to_dict(public_outcome(outcome))}

    async def _consume_requests(self) -> None:
        """Main consumer loop - processes code execution requests"""
        try:
            async for msg in self.consumer:
                if not self._is_running:
                    break
                # Each request is handled on its own so one slow program does not stall the topic
                handler = asyncio.create_task(self._handle_message(msg.value))
                self._handlers.add(handler)
                handler.add_done_callback(self._handlers.discard)
        except asyncio.CancelledError:
            logger.info("Request consumer cancelled")
        except Exception as e:
            logger.error(f"Consumer loop error: {e}")

    async def _handle_message(self, value: bytes) -> None:
        try:
            request = self.cipher.decrypt_request(value)
            if not isinstance(request, dict):
                raise ValueError(f"expected a JSON object, got {type(request).__name__}")
        except (InvalidToken, ValueError) as e:
            logger.error(f"Dropping undecodable Kafka request: {e}")
            return

        request_id = request.get("request_id")
        logger.info(f"Received code execution request: {request_id}")
        try:
            response = await self.process_request(request)
        except Exception as e:
            logger.error(f"Error processing Kafka request {request_id}: {e}")
            response = {"request_id": request_id, "status": "failed", "reason": "internal error"}

        try:
            await self.producer.send_and_wait(
                self.settings.KAFKA_CODE_RESPONSE_TOPIC,
                self.cipher.encrypt_response(response),
                key=request_id.encode() if request_id else None,
            )
            logger.info(f"Sent response for request: {request_id}")
        except Exception as send_error:
            logger.error(f"Failed to send response for {request_id}: {send_error}")
