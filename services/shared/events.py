import os
import json
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)

EXCHANGE = os.getenv("EVENT_EXCHANGE", "storefront.events")

# Reuse AWS client across invocations (Lambda-friendly)
_sqs_client = None


def publish(event_type: str, payload: Dict[str, Any], *, safe: bool = False) -> bool:
    """
    Publish a domain event to the configured backend.

    EVENT_BACKEND: none | rabbitmq | sqs
    safe=True: log and swallow backend failures. Used after payment state has
    already been committed, where a broker outage must not undo anything.

    Returns True when the event was handed to a broker.
    """
    backend = os.getenv("EVENT_BACKEND", "none").strip().lower()

    try:
        if backend in ("", "none"):
            logger.debug("Event backend disabled, dropping event_type=%s", event_type)
            return False

        if backend == "rabbitmq":
            _publish_rabbitmq(event_type, payload)
            return True

        if backend == "sqs":
            _publish_sqs(event_type, payload)
            return True

        raise RuntimeError(f"Unsupported EVENT_BACKEND={backend}")

    except Exception as e:
        if safe:
            logger.warning("Event publish failed event_type=%s error=%r", event_type, e)
            return False
        raise


def _encode(event_type: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "payload": payload}, default=str)


def _publish_rabbitmq(event_type: str, payload: Dict[str, Any]) -> None:
    # Import here so a Lambda zip can omit pika if only SQS is used
    import pika

    rabbitmq_url = os.getenv("RABBITMQ_URL")
    if not rabbitmq_url:
        raise RuntimeError("RABBITMQ_URL is not set")

    params = pika.URLParameters(rabbitmq_url)
    params.heartbeat = int(os.getenv("RABBITMQ_HEARTBEAT", "30"))
    params.blocked_connection_timeout = float(os.getenv("RABBITMQ_BLOCKED_TIMEOUT", "5"))
    params.socket_timeout = float(os.getenv("RABBITMQ_SOCKET_TIMEOUT", "5"))

    conn = pika.BlockingConnection(params)
    try:
        ch = conn.channel()
        ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        ch.basic_publish(
            exchange=EXCHANGE,
            routing_key=event_type,
            body=_encode(event_type, payload).encode("utf-8"),
            properties=pika.BasicProperties(
                delivery_mode=2,
                content_type="application/json",
            ),
        )
    finally:
        if conn.is_open:
            conn.close()


def _publish_sqs(event_type: str, payload: Dict[str, Any]) -> None:
    global _sqs_client
    import boto3

    queue_url = os.getenv("SQS_QUEUE_URL")
    if not queue_url:
        raise RuntimeError("SQS_QUEUE_URL is not set")

    if _sqs_client is None:
        _sqs_client = boto3.client("sqs")

    _sqs_client.send_message(
        QueueUrl=queue_url,
        MessageBody=_encode(event_type, payload),
        MessageAttributes={
            "type": {"DataType": "String", "StringValue": event_type}
        },
    )
