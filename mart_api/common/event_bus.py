# common/event_bus.py

import asyncio
import json
import logging
import random
from typing import Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError
from pydantic import BaseModel

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float, max_delay: float,
                  jitter: Callable[[], float] = random.random) -> float:
    """Exponential backoff for ``attempt`` (1-based), scaled by a jitter factor in [0.5, 1)."""
    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return delay * (0.5 + jitter() / 2)


def encode_event(payload: BaseModel | dict) -> bytes:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True)
    return json.dumps(payload, default=str).encode("utf-8")


class EventBus:
    """
    Owns the Kafka producer used to publish domain events.

    Publishing never raises: a failed or disconnected publish is logged and
    reported through the return value, and the message is dropped. A lost
    connection is re-established in the background with exponential
    backoff and jitter. After ``max_retries`` failed attempts the bus stays
    disconnected for ``cooldown`` seconds before the next publish starts a
    new reconnect cycle.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        cooldown: float = 60.0,
        producer_factory: Callable[..., AIOKafkaProducer] = AIOKafkaProducer,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.cooldown = cooldown
        self._producer_factory = producer_factory
        self._producer: AIOKafkaProducer | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._retry_after = 0.0
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._producer is not None

    async def connect(self) -> bool:
        """Starts the producer; on failure schedules a background reconnect."""
        self._closed = False
        try:
            await self._start_producer()
        except (KafkaError, OSError) as e:
            logger.warning(f"Event bus could not connect to {self.bootstrap_servers}: {e}")
            self._schedule_reconnect()
            return False
        logger.info(f"Event bus connected to {self.bootstrap_servers}.")
        return True

    async def _start_producer(self) -> None:
        producer = self._producer_factory(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
        )
        try:
            await producer.start()
        except BaseException:
            await producer.stop()
            raise
        self._producer = producer

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        loop = asyncio.get_running_loop()
        if loop.time() < self._retry_after:
            return
        self._reconnect_task = loop.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        for attempt in range(1, self.max_retries + 1):
            delay = backoff_delay(attempt, self.base_delay, self.max_delay)
            logger.info(f"Reconnecting event bus in {delay:.1f}s (attempt {attempt}/{self.max_retries})...")
            await asyncio.sleep(delay)
            try:
                await self._start_producer()
            except (KafkaError, OSError) as e:
                logger.warning(f"Event bus reconnect attempt {attempt} failed: {e}")
                continue
            logger.info("Event bus reconnected.")
            return

        self._retry_after = asyncio.get_running_loop().time() + self.cooldown
        logger.error(
            f"Event bus gave up after {self.max_retries} attempts; "
            f"next attempt in {self.cooldown:.0f}s."
        )

    async def _drop_producer(self) -> None:
        producer, self._producer = self._producer, None
        if producer is None:
            return
        try:
            await producer.stop()
        except KafkaError as e:
            logger.warning(f"Error while stopping Kafka producer: {e}")

    async def publish(self, topic: str, payload: BaseModel | dict, key: str | None = None) -> bool:
        """
        Publishes ``payload`` as JSON to ``topic``.

        Returns True when the broker acknowledged the message, False when it
        was dropped.
        """
        if self._producer is None:
            logger.warning(f"Event bus not connected, dropping {topic} event.")
            self._schedule_reconnect()
            return False

        try:
            await self._producer.send_and_wait(
                topic,
                value=encode_event(payload),
                key=key.encode("utf-8") if key else None,
            )
        except KafkaConnectionError as e:
            logger.error(f"Lost broker connection while publishing {topic}: {e}")
            await self._drop_producer()
            self._schedule_reconnect()
            return False
        except Exception as e:
            logger.error(f"Failed to publish {topic} event: {e}")
            return False

        logger.info(f"Published {topic} event (key={key}).")
        return True

    async def close(self) -> None:
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None
        await self._drop_producer()
        logger.info("Event bus closed.")


EventHandler = Callable[[str, dict], Awaitable[None]]


class EventConsumer:
    """
    Consumes JSON events from a set of topics with manual offset commits.

    An offset is committed only after the handler returned, so a crash
    between handling and commit redelivers the event (at-least-once).
    Handlers must therefore tolerate duplicates.
    """

    def __init__(
        self,
        topics: list[str],
        bootstrap_servers: str,
        group_id: str,
        handler: EventHandler,
        retry_interval: float = 5.0,
        consumer_factory: Callable[..., AIOKafkaConsumer] = AIOKafkaConsumer,
    ):
        self.topics = topics
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.handler = handler
        self.retry_interval = retry_interval
        self._consumer_factory = consumer_factory
        self._task: asyncio.Task | None = None

    async def _consume_once(self) -> None:
        consumer = self._consumer_factory(
            *self.topics,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        try:
            await consumer.start()
            logger.info(f"Kafka consumer started on topics: {self.topics}")
            async for msg in consumer:
                try:
                    event = json.loads(msg.value.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    logger.error(f"Skipping undecodable message on {msg.topic}: {e}")
                    await consumer.commit()
                    continue
                await self.handler(msg.topic, event)
                await consumer.commit()
        finally:
            await consumer.stop()
            logger.info("Kafka consumer stopped.")

    async def run(self) -> None:
        while True:
            try:
                await self._consume_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in Kafka consumer: {e}; restarting in {self.retry_interval}s")
                await asyncio.sleep(self.retry_interval)

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Kafka consumer task has been cancelled.")
        self._task = None
