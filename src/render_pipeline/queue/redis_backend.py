"""Redis list implementation of JobQueue.

RPUSH appends to the tail, BLPOP pops the head. Redis hands each popped
element to exactly one client, which gives exclusive delivery across workers.
"""

import logging
import math
from typing import Optional

import redis

from ..models import JobDescriptor
from .backends import JobQueue, MalformedDescriptorError, QueueUnavailableError, decode_descriptor

logger = logging.getLogger(__name__)


class RedisJobQueue(JobQueue):
    """Descriptor queue stored in a Redis list."""

    def __init__(self, url: str, queue_name: str = "render_jobs", client=None):
        """
        Args:
            url: redis://host:port/db
            queue_name: List key
            client: Pre-built client (tests); otherwise built from url on connect()
        """
        self.url = url
        self.queue_name = queue_name
        self.client = client

    def connect(self) -> None:
        if self.client is None:
            self.client = redis.Redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=5,
                health_check_interval=30,
            )
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise QueueUnavailableError(f"Redis unreachable at {self.url}: {e}", e) from e
        logger.info("Redis queue %r connected", self.queue_name)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def _require_client(self):
        if self.client is None:
            raise QueueUnavailableError("Queue is not connected (call connect() first)")
        return self.client

    def enqueue(self, descriptor: JobDescriptor) -> None:
        client = self._require_client()
        try:
            client.rpush(self.queue_name, descriptor.model_dump_json())
        except redis.RedisError as e:
            raise QueueUnavailableError(f"Enqueue failed: {e}", e) from e
        logger.debug("Enqueued job %s (retry_count=%d)", descriptor.id, descriptor.retry_count)

    def dequeue(self, timeout: Optional[float] = None) -> Optional[JobDescriptor]:
        """BLPOP the head. Malformed payloads are logged and skipped."""
        client = self._require_client()
        # BLPOP timeout 0 blocks forever
        block_s = 0 if timeout is None else max(1, math.ceil(timeout))
        while True:
            try:
                item = client.blpop([self.queue_name], timeout=block_s)
            except redis.RedisError as e:
                raise QueueUnavailableError(f"Dequeue failed: {e}", e) from e
            if item is None:
                return None

            _, payload = item
            try:
                return decode_descriptor(payload)
            except MalformedDescriptorError as e:
                logger.error("Dropping malformed queue message: %s | payload=%.200s", e, payload)

    def size(self) -> int:
        client = self._require_client()
        try:
            return int(client.llen(self.queue_name))
        except redis.RedisError as e:
            raise QueueUnavailableError(f"LLEN failed: {e}", e) from e
