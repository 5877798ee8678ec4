"""
Inbound usage event consumer.

Decodes gateway payloads and hands them to the event buffer. A bad payload
is logged and dropped so the delivering thread keeps running.
"""

import json
from typing import Any, Mapping, Union

from usage_ledger.core.buffer import BufferClosedError, EventBuffer
from usage_ledger.core.logging import get_logger
from usage_ledger.storage.models import UsageEvent

logger = get_logger(__name__)


class UsageEventConsumer:
    def __init__(self, buffer: EventBuffer):
        self.buffer = buffer
        self.accepted = 0
        self.dropped = 0

    def consume(self, payload: Union[str, bytes, Mapping[str, Any]]) -> bool:
        """Decode one payload (JSON text or an already-decoded mapping) and buffer it.

        Returns:
            True if the event was buffered, False if it was dropped
        """
        try:
            if isinstance(payload, (str, bytes)):
                payload = json.loads(payload)
            event = UsageEvent.from_dict(payload)
        except ValueError as e:
            self.dropped += 1
            logger.warning("Dropping malformed usage event: {}", e)
            return False

        try:
            self.buffer.add_event(event)
        except BufferClosedError:
            self.dropped += 1
            logger.warning("Rejected event for user {}: buffer is shutting down", event.user_id)
            return False

        self.accepted += 1
        return True
