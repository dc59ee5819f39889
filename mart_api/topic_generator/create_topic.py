# topic_generator/create_topic.py

import asyncio
import logging
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import (
    KafkaConnectionError,
    TopicAlreadyExistsError,
    NotControllerError,
    LeaderNotAvailableError,
)


logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (NotControllerError, LeaderNotAvailableError, KafkaConnectionError)


async def _create_topic(
    admin_client: AIOKafkaAdminClient,
    topic_name: str,
    num_partitions: int,
    replication_factor: int,
    max_retries: int,
    retry_interval: float,
) -> None:
    for attempt in range(1, max_retries + 1):
        try:
            await admin_client.create_topics(
                new_topics=[
                    NewTopic(name=topic_name, num_partitions=num_partitions, replication_factor=replication_factor)
                ],
                validate_only=False,
            )
            logger.info(f"Topic '{topic_name}' created successfully.")
            return
        except TopicAlreadyExistsError:
            logger.info(f"Topic '{topic_name}' already exists.")
            return
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Transient error ({e}), retrying {attempt}/{max_retries} after {retry_interval} seconds...")
            await asyncio.sleep(retry_interval)
    raise RuntimeError(f"Failed to create Kafka topic '{topic_name}' after {max_retries} retries.")


async def create_kafka_topics(
    topic_names: list[str],
    bootstrap_servers: str,
    num_partitions: int = 3,
    replication_factor: int = 1,
    max_retries: int = 5,
    retry_interval: float = 10,
    admin_factory=AIOKafkaAdminClient,
) -> None:
    """
    Ensures the durable event topics exist before the service publishes to them.

    Args:
        topic_names (list[str]): Topics to create, e.g. ``["order.created", ...]``.
        bootstrap_servers (str): Kafka broker address.
        num_partitions (int): Partitions per topic; events are keyed by order id
            so per-order ordering holds within a partition.
        replication_factor (int): Replication factor for each topic.
        max_retries (int): Maximum number of retries for transient errors.
        retry_interval (float): Seconds to wait between retries.

    Raises:
        RuntimeError: If a topic cannot be created after max_retries.
    """
    admin_client = admin_factory(bootstrap_servers=bootstrap_servers)
    try:
        await admin_client.start()
        for topic_name in topic_names:
            await _create_topic(
                admin_client, topic_name, num_partitions, replication_factor, max_retries, retry_interval
            )
    finally:
        await admin_client.close()


async def ensure_topics_in_background(topic_names: list[str], bootstrap_servers: str) -> None:
    """Startup helper: topic creation failures are logged, never fatal to the service."""
    try:
        await create_kafka_topics(topic_names, bootstrap_servers)
    except (RuntimeError, KafkaConnectionError, OSError) as e:
        logger.error(f"Could not ensure Kafka topics {topic_names}: {e}")
