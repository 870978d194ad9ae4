"""Consumer-group reader for Redis streams that hands event ids to a handler."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Iterable, Mapping

logger = logging.getLogger(__name__)


def _text(value: Any) -> str | None:
    """Return ``value`` as text, or None if it is not a string or valid UTF-8."""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return None
    return None


def _event_id(payload: str) -> str:
    """Extract the ``id`` of an event payload; raise ValueError if it is malformed."""
    event = json.loads(payload)
    if not isinstance(event, dict):
        raise ValueError("event payload is not a JSON object")
    event_id = event.get("id")
    if event_id is None:
        return ""
    if not isinstance(event_id, str):
        raise ValueError("event id is not a string")
    return event_id


def _stream_entries(response: Any) -> Iterable[tuple[Any, Iterable[tuple[Any, Any]]]]:
    if not response:
        return []
    if isinstance(response, Mapping):
        return list(response.items())
    return [(entry[0], entry[1]) for entry in response]


class StreamConsumer:
    """Reads a Redis stream as part of a consumer group.

    Each message carries a JSON ``payload`` whose ``id`` is passed to the
    handler. Malformed messages are acknowledged and dropped; messages whose
    handler fails are left unacknowledged so they are delivered again.
    """

    batch_size = 10
    block_ms = 0
    retry_delay = 1.0

    def __init__(
        self,
        redis_client: Any,
        stream: str,
        group: str,
        consumer: str,
        handler: Callable[[str], Any],
    ) -> None:
        self.redis_client = redis_client
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.handler = handler

    def ensure_group(self) -> bool:
        """Create the consumer group (and stream); return False if it already existed."""
        try:
            self.redis_client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except Exception as exc:
            if "BUSYGROUP" in str(exc):
                logger.info("consumer group %r already exists", self.group)
                return False
            raise
        logger.info("consumer group %r created", self.group)
        return True

    def _ack(self, message_id: Any) -> bool:
        try:
            self.redis_client.xack(self.stream, self.group, message_id)
        except Exception as exc:
            logger.error("failed to acknowledge message %s: %s", message_id, exc)
            return False
        return True

    def process_message(self, message_id: Any, values: Mapping[Any, Any]) -> bool:
        """Handle one message; return True if it was processed and acknowledged."""
        if "payload" in values:
            raw = values["payload"]
        else:
            raw = values.get(b"payload")
        payload = _text(raw)
        if payload is None:
            logger.warning("message %s has no string 'payload' field", message_id)
            self._ack(message_id)
            return False
        try:
            event_id = _event_id(payload)
        except ValueError as exc:
            logger.warning("failed to decode payload of message %s: %s", message_id, exc)
            self._ack(message_id)
            return False
        logger.info("processing event %s from message %s", event_id, message_id)
        try:
            self.handler(event_id)
        except Exception as exc:
            logger.error("failed to handle event %s: %s", event_id, exc)
            return False
        if self._ack(message_id):
            logger.info("acknowledged message %s", message_id)
        return True

    def poll(self) -> int:
        """Read one batch of new messages and process it; return how many succeeded."""
        response = self.redis_client.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: ">"},
            count=self.batch_size,
            block=self.block_ms,
        )
        processed = 0
        for stream_name, messages in _stream_entries(response):
            for message_id, values in messages:
                logger.info("received message %s from stream %s", message_id, stream_name)
                if self.process_message(message_id, values or {}):
                    processed += 1
        return processed

    def run(self, should_stop: Callable[[], bool] | None = None) -> None:
        """Create the group, then poll until ``should_stop`` returns True."""
        self.ensure_group()
        while should_stop is None or not should_stop():
            try:
                self.poll()
            except Exception as exc:
                logger.error("error reading from stream %s: %s", self.stream, exc)
                time.sleep(self.retry_delay)