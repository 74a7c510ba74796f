import json
import logging
import time

from aiokafka import AIOKafkaProducer

from . import config, schemas

logger = logging.getLogger(__name__)

_producer: AIOKafkaProducer | None = None


def _serialize(event: dict) -> bytes:
    return json.dumps(event, default=str).encode("utf-8")


async def start_producer() -> AIOKafkaProducer:
    global _producer
    if _producer is None:
        logger.info(f"Starting order event producer against {config.KAFKA_BOOTSTRAP_SERVERS}")
        producer = AIOKafkaProducer(
            bootstrap_servers=config.KAFKA_BOOTSTRAP_SERVERS,
            value_serializer=_serialize,
            acks="all",
        )
        await producer.start()
        _producer = producer
    return _producer


async def stop_producer():
    global _producer
    if _producer is not None:
        logger.info("Stopping order event producer...")
        await _producer.stop()
        _producer = None


async def send_message(topic: str, message: dict):
    """Publishes one event. Delivery is best effort: failures are logged and dropped."""
    if not config.EVENTS_ENABLED:
        logger.debug(f"Events disabled, not publishing to '{topic}'")
        return
    try:
        producer = await start_producer()
        await producer.send_and_wait(topic, value=message)
        logger.debug(f"Published to '{topic}': {message}")
    except Exception as e:
        logger.error(f"Publishing to '{topic}' failed: {e}")


async def publish_order_status(order_id: str, status: str, details: dict | None = None):
    event = schemas.OrderStatusUpdateEvent(
        order_id=order_id, status=status, timestamp=time.time(), details=details
    )
    await send_message(config.ORDER_STATUS_UPDATE_TOPIC, event.model_dump())
