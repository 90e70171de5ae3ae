"""
Lead Acquisition Trigger
========================
Hands an order to the out-of-process scraping pipeline through a work queue.

Features:
- Typed job messages (pydantic) carrying the order id and search parameters
- In-memory queue with an asyncio worker, for tests and single-process runs
- RabbitMQ queue (aio-pika) with persistent messages and a dead-letter exchange
- At-least-once delivery: failed jobs are redelivered with linear backoff
  until max_attempts, then dead-lettered
- Enqueue errors are logged and reported, never raised to the webhook

pip install pydantic aio-pika httpx structlog
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import aio_pika
import httpx
import structlog
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue, AbstractRobustConnection
from pydantic import BaseModel, Field

from schemas.orders import Order, utcnow


# =============================================================================
# JOB SCHEMA
# =============================================================================

class LeadAcquisitionJob(BaseModel):
    """One request to gather leads for an order"""

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    order_type: str
    subscription_id: Optional[str] = None
    tier: str
    email: Optional[str] = None
    cities: list[str]
    radius_miles: int
    lead_count: Optional[str] = None
    attempt: int = 0
    enqueued_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_order(cls, order: Order) -> "LeadAcquisitionJob":
        return cls(
            order_id=order.id,
            order_type=order.billing_type.value,
            subscription_id=order.stripe_subscription_id,
            tier=order.tier.value,
            email=order.customer_email,
            cities=order.target_cities,
            radius_miles=order.search_radius,
            lead_count=order.lead_count_range,
        )

    def scraper_payload(self) -> dict:
        return {
            "orderId": self.order_id,
            "orderType": self.order_type,
            "subscriptionId": self.subscription_id,
            "tier": self.tier,
            "email": self.email,
            "cities": self.cities,
            "radius": f"{self.radius_miles} miles",
            "leadCount": self.lead_count,
            "deliveryDate": self.enqueued_at.isoformat(),
        }

    def to_message_body(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_message_body(cls, body: bytes) -> "LeadAcquisitionJob":
        return cls.model_validate_json(body)


JobHandler = Callable[[LeadAcquisitionJob], Awaitable[Any]]


# =============================================================================
# WORK QUEUE INTERFACE
# =============================================================================

class IWorkQueue(ABC):
    """At-least-once job queue"""

    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        pass

    @abstractmethod
    async def enqueue(self, job: LeadAcquisitionJob) -> None:
        pass

    @abstractmethod
    async def start_consumer(self, handler: JobHandler) -> None:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass


# =============================================================================
# IN-MEMORY WORK QUEUE
# =============================================================================

class InMemoryWorkQueue(IWorkQueue):
    """
    asyncio.Queue with one worker task.

    A job whose handler raises is put back after `retry_delay * attempt`
    seconds; after `max_attempts` failures it moves to `dead_letters`.
    """

    def __init__(self, max_attempts: int = 3, retry_delay: float = 5.0):
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._pending_retries: set[asyncio.Task] = set()
        self._connected = False

        self.enqueued: list[LeadAcquisitionJob] = []
        self.completed: list[LeadAcquisitionJob] = []
        self.dead_letters: list[LeadAcquisitionJob] = []
        self._logger = structlog.get_logger().bind(component="inmemory_work_queue")

    async def connect(self) -> bool:
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._connected = True
        return True

    async def disconnect(self) -> bool:
        if self._worker:
            self._worker.cancel()
            self._worker = None
        for task in list(self._pending_retries):
            task.cancel()
        self._pending_retries.clear()
        self._connected = False
        self._logger.info("disconnected")
        return True

    async def health_check(self) -> bool:
        return self._connected

    async def enqueue(self, job: LeadAcquisitionJob) -> None:
        if not self._connected:
            raise ConnectionError("Work queue not connected")
        self.enqueued.append(job)
        await self._queue.put(job)

    async def start_consumer(self, handler: JobHandler) -> None:
        if not self._connected:
            await self.connect()
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(handler))
            self._logger.info("consumer_started")

    async def _run(self, handler: JobHandler):
        while True:
            job = await self._queue.get()
            try:
                await self._handle(job, handler)
            finally:
                self._queue.task_done()

    async def _handle(self, job: LeadAcquisitionJob, handler: JobHandler):
        job.attempt += 1
        try:
            await handler(job)
            self.completed.append(job)
            self._logger.info("job_completed", order_id=job.order_id, attempt=job.attempt)
        except Exception as e:
            if job.attempt >= self.max_attempts:
                self.dead_letters.append(job)
                self._logger.error("job_dead_lettered",
                                   order_id=job.order_id,
                                   attempts=job.attempt,
                                   error=str(e))
                return

            delay = self.retry_delay * job.attempt
            self._logger.warning("job_retry_scheduled",
                                 order_id=job.order_id,
                                 attempt=job.attempt,
                                 delay_seconds=delay,
                                 error=str(e))
            task = asyncio.create_task(self._requeue_later(job, delay))
            self._pending_retries.add(task)
            task.add_done_callback(self._pending_retries.discard)

    async def _requeue_later(self, job: LeadAcquisitionJob, delay: float):
        await asyncio.sleep(delay)
        await self._queue.put(job)

    async def join(self):
        """Wait until every job, including scheduled retries, has settled."""
        while True:
            await self._queue.join()
            if not self._pending_retries:
                return
            await asyncio.gather(*list(self._pending_retries))


# =============================================================================
# RABBITMQ WORK QUEUE
# =============================================================================

class RabbitMQWorkQueue(IWorkQueue):
    """
    Durable RabbitMQ queue with:
    - Persistent messages on the default exchange
    - Dead letter exchange + queue for jobs past max_attempts
    - Attempt counter carried in the message headers
    """

    def __init__(
        self,
        url: str,
        queue_name: str = "lead_acquisition",
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        prefetch_count: int = 10,
    ):
        self._url = url
        self.queue_name = queue_name
        self.dlx_name = f"{queue_name}.dlx"
        self.dead_letter_queue = f"{queue_name}.dead"
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.prefetch_count = prefetch_count

        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._dlx_exchange: Optional[AbstractExchange] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._logger = structlog.get_logger().bind(component="rabbitmq_work_queue", queue=queue_name)

    async def connect(self) -> bool:
        """Establish connection and declare the queue topology"""
        try:
            self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=self.prefetch_count)

            self._dlx_exchange = await self._channel.declare_exchange(
                self.dlx_name,
                ExchangeType.FANOUT,
                durable=True,
            )
            dlq = await self._channel.declare_queue(self.dead_letter_queue, durable=True)
            await dlq.bind(self._dlx_exchange)

            self._queue = await self._channel.declare_queue(
                self.queue_name,
                durable=True,
                arguments={"x-dead-letter-exchange": self.dlx_name},
            )

            self._logger.info("connected", dlx=self.dlx_name)
            return True

        except Exception as e:
            self._logger.error("connection_failed", error=str(e))
            raise

    async def disconnect(self) -> bool:
        """Graceful shutdown"""
        if self._queue and self._consumer_tag:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None
        if self._channel and not self._channel.is_closed:
            await self._channel.close()
        if self._connection and not self._connection.is_closed:
            await self._connection.close()
        self._logger.info("disconnected")
        return True

    async def health_check(self) -> bool:
        if not self._connection or self._connection.is_closed:
            return False
        if not self._channel or self._channel.is_closed:
            return False
        return True

    async def _publish(self, job: LeadAcquisitionJob) -> None:
        message = Message(
            body=job.to_message_body(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            message_id=job.job_id,
            correlation_id=job.order_id,
            timestamp=job.enqueued_at,
            headers={"attempt_count": job.attempt},
        )
        await self._channel.default_exchange.publish(message, routing_key=self.queue_name)

    async def enqueue(self, job: LeadAcquisitionJob) -> None:
        if not await self.health_check():
            raise ConnectionError("RabbitMQ not connected")
        await self._publish(job)
        self._logger.info("job_published", order_id=job.order_id, job_id=job.job_id)

    async def start_consumer(self, handler: JobHandler) -> None:
        if not await self.health_check():
            raise ConnectionError("RabbitMQ not connected")

        async def on_message(message: aio_pika.abc.AbstractIncomingMessage):
            async with message.process(requeue=False, ignore_processed=True):
                job = LeadAcquisitionJob.from_message_body(message.body)
                job.attempt = int((message.headers or {}).get("attempt_count", 0)) + 1

                try:
                    await handler(job)
                    self._logger.info("job_completed", order_id=job.order_id, attempt=job.attempt)
                except Exception as e:
                    if job.attempt >= self.max_attempts:
                        self._logger.error("job_dead_lettered",
                                           order_id=job.order_id,
                                           attempts=job.attempt,
                                           error=str(e))
                        await message.reject(requeue=False)
                        return

                    self._logger.warning("job_retry_scheduled",
                                         order_id=job.order_id,
                                         attempt=job.attempt,
                                         error=str(e))
                    await asyncio.sleep(self.retry_delay * job.attempt)
                    # Republish with the bumped counter; the original is acked on exit
                    await self._publish(job)

        self._consumer_tag = await self._queue.consume(on_message)
        self._logger.info("consumer_started")


def create_work_queue(
    backend: str,
    rabbitmq_url: str = "",
    queue_name: str = "lead_acquisition",
    max_attempts: int = 3,
    retry_delay: float = 5.0,
) -> IWorkQueue:
    """Factory to create appropriate work queue"""
    if backend == "rabbitmq":
        return RabbitMQWorkQueue(rabbitmq_url, queue_name, max_attempts, retry_delay)
    return InMemoryWorkQueue(max_attempts=max_attempts, retry_delay=retry_delay)


# =============================================================================
# SCRAPER CLIENT (queue consumer)
# =============================================================================

class ScraperClient:
    """Starts a scrape run for an order on the external scraping service."""

    def __init__(
        self,
        endpoint: str,
        service_role_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.service_role_key = service_role_key
        self.timeout = timeout
        self._transport = transport
        self._logger = structlog.get_logger().bind(component="scraper_client")

    async def start_scrape(self, order_id: str, context: Optional[dict] = None) -> None:
        """POST `{orderId, ...}`. Non-2xx raises httpx.HTTPStatusError so the queue retries."""
        payload = {**(context or {}), "orderId": order_id}
        headers = {"Authorization": f"Bearer {self.service_role_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.endpoint, json=payload, headers=headers)
            response.raise_for_status()

        self._logger.info("scrape_started", order_id=order_id, status_code=response.status_code)

    async def handle(self, job: LeadAcquisitionJob) -> None:
        await self.start_scrape(job.order_id, job.scraper_payload())


# =============================================================================
# TRIGGER
# =============================================================================

class LeadAcquisitionTrigger:
    """Enqueue-and-return hand-off used by the webhook and the stale sweep."""

    def __init__(self, queue: IWorkQueue):
        self.queue = queue
        self._logger = structlog.get_logger().bind(component="lead_acquisition")

    async def trigger(self, order: Order) -> bool:
        job = LeadAcquisitionJob.for_order(order)
        try:
            await self.queue.enqueue(job)
        except Exception:
            self._logger.error("lead_acquisition_enqueue_failed", order_id=order.id, exc_info=True)
            return False

        self._logger.info("lead_acquisition_enqueued", order_id=order.id, job_id=job.job_id)
        return True
