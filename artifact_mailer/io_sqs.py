"""
SQS queue operations for the mailer worker.

- SQSClient: receive one message under a visibility lease, delete (ACK),
  extend the lease, approximate depth, publish
- is_poison_pill: delivery-attempt guard
- Every remote call goes through retry_call() with the injected RetryPolicy
"""

from __future__ import annotations

import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import boto3
from botocore.exceptions import ClientError

from .constants import DEFAULT_MAX_RECEIVE_COUNT, SQS_MAX_BODY_BYTES, SQS_MAX_VISIBILITY
from .logging import get_logger
from .retry import NO_RETRY, RetryPolicy, client_config, error_code, retry_call


# ============================================================================
# TYPES
# ============================================================================

RawMessage = Dict[str, Any]


@dataclass(frozen=True)
class QueueMessage:
    """One received message. receipt_handle proves we hold the visibility lease."""
    message_id: str
    body: str
    receive_count: int
    receipt_handle: str

    @classmethod
    def from_raw(cls, raw_msg: RawMessage) -> "QueueMessage":
        if not isinstance(raw_msg, dict):
            raise ValueError("from_raw: expected dict")
        try:
            receipt_handle = raw_msg["ReceiptHandle"]
        except KeyError as e:
            raise ValueError("from_raw: missing ReceiptHandle") from e

        attributes = raw_msg.get("Attributes", {})
        return cls(
            message_id=raw_msg.get("MessageId", ""),
            body=raw_msg.get("Body", ""),
            receive_count=int(attributes.get("ApproximateReceiveCount", 1)),
            receipt_handle=receipt_handle,
        )


# ============================================================================
# POISON GUARD
# ============================================================================

def is_poison_pill(receive_count: int, max_count: int = DEFAULT_MAX_RECEIVE_COUNT) -> bool:
    """True once a message has been delivered more than max_count times."""
    return receive_count > max_count


# ============================================================================
# SQS CLIENT CLASS
# ============================================================================

class SQSClient:
    """
    Adapter over one SQS queue.

    Pass a boto3 client to reuse an existing session (tests inject moto-backed
    clients); otherwise one is created lazily with SDK retries disabled.
    """

    def __init__(
        self,
        queue_url: str,
        sqs_client=None,
        region: Optional[str] = None,
        retry_policy: RetryPolicy = NO_RETRY,
        logger=None,
    ):
        if not queue_url:
            raise ValueError("queue_url required")
        self.queue_url = queue_url
        self._sqs = sqs_client
        self._region = region
        self.retry_policy = retry_policy
        self.logger = logger or get_logger("io_sqs")

    @property
    def sqs(self):
        """Lazy-load SQS client with long-polling config."""
        if self._sqs is None:
            self._sqs = boto3.client("sqs", region_name=self._region, config=client_config())
        return self._sqs

    # ------------------------------------------------------------------------
    # RECEIVING
    # ------------------------------------------------------------------------

    def receive(self, visibility_timeout: int, wait_seconds: int = 20) -> Optional[QueueMessage]:
        """Long-poll for a single message and lease it for visibility_timeout seconds."""
        wait_s = max(0, min(int(wait_seconds), 20))
        lease = max(0, min(int(visibility_timeout), SQS_MAX_VISIBILITY))
        self.logger.debug("Receiving message", {"queue_url": self.queue_url, "lease": lease})

        resp = self._call(
            "receive_message",
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=1,
            WaitTimeSeconds=wait_s,
            VisibilityTimeout=lease,
            AttributeNames=["ApproximateReceiveCount"],
        )
        messages = resp.get("Messages", [])
        if not messages:
            return None
        return QueueMessage.from_raw(messages[0])

    # ------------------------------------------------------------------------
    # ACKNOWLEDGEMENT & VISIBILITY
    # ------------------------------------------------------------------------

    def delete(self, message: QueueMessage) -> None:
        """ACK message: permanently remove from queue."""
        if not message.receipt_handle.strip():
            raise ValueError("delete: receipt_handle required")
        self._call("delete_message", QueueUrl=self.queue_url, ReceiptHandle=message.receipt_handle)
        self.logger.debug("Deleted message", {"message_id": message.message_id})

    def change_visibility(self, message: QueueMessage, visibility_timeout: int) -> None:
        """Extend (or shorten) the lease on a received message."""
        if not isinstance(visibility_timeout, int) or visibility_timeout < 0:
            raise ValueError("change_visibility: timeout must be non-negative int")
        self._call(
            "change_message_visibility",
            QueueUrl=self.queue_url,
            ReceiptHandle=message.receipt_handle,
            VisibilityTimeout=min(visibility_timeout, SQS_MAX_VISIBILITY),
        )

    def extend_visibility_loop(
        self,
        message: QueueMessage,
        base_timeout: int,
        heartbeat_every: float,
        stop: threading.Event,
    ) -> None:
        """
        Re-extend the lease every heartbeat_every seconds until stop is set.
        Best-effort: logs instead of raising, ends if the receipt is no longer valid.
        """
        base_timeout = max(1, min(int(base_timeout), SQS_MAX_VISIBILITY))
        heartbeat_every = max(0.05, float(heartbeat_every))
        if heartbeat_every >= base_timeout:
            heartbeat_every = max(1, base_timeout // 2)

        while not stop.wait(heartbeat_every * random.uniform(0.9, 1.0)):
            try:
                self.change_visibility(message, base_timeout)
                self.logger.debug("Lease extended", {"message_id": message.message_id, "timeout": base_timeout})
            except ClientError as e:
                if error_code(e) in ("ReceiptHandleIsInvalid", "InvalidParameterValue"):
                    self.logger.warning("Lease lost, stopping heartbeat", {"message_id": message.message_id})
                    return
                self.logger.warning("Lease extension failed", {"error": str(e)})
            except Exception as e:
                self.logger.warning("Lease extension failed", {"error": str(e)})

    @contextmanager
    def visibility_heartbeat(
        self,
        message: QueueMessage,
        base_timeout: int,
        heartbeat_every: float,
    ) -> Iterator[None]:
        """
        Keep the message leased while the block runs.

        Example:
            with queue.visibility_heartbeat(msg, base_timeout=60, heartbeat_every=20):
                handle(msg)
        """
        stop = threading.Event()
        t = threading.Thread(
            target=self.extend_visibility_loop,
            args=(message, base_timeout, heartbeat_every, stop),
            name=f"lease-{message.message_id[:8]}",
            daemon=True,
        )
        t.start()
        try:
            yield
        finally:
            stop.set()
            t.join(timeout=2)

    # ------------------------------------------------------------------------
    # PUBLISHING & COUNT
    # ------------------------------------------------------------------------

    def send(self, body: str, delay_seconds: int = 0) -> str:
        """Publish one message body; returns the SQS MessageId."""
        if len(body.encode("utf-8")) > SQS_MAX_BODY_BYTES:
            raise ValueError("SQS message > 256KB")
        resp = self._call(
            "send_message",
            QueueUrl=self.queue_url,
            MessageBody=body,
            DelaySeconds=max(0, min(int(delay_seconds), 900)),
        )
        return resp.get("MessageId", "")

    def approximate_count(self) -> int:
        """Approximate number of visible messages."""
        resp = self._call(
            "get_queue_attributes",
            QueueUrl=self.queue_url,
            AttributeNames=["ApproximateNumberOfMessages"],
        )
        return int(resp.get("Attributes", {}).get("ApproximateNumberOfMessages", 0))

    # ------------------------------------------------------------------------
    # INTERNAL
    # ------------------------------------------------------------------------

    def _call(self, method: str, **params):
        return retry_call(
            self.retry_policy,
            getattr(self.sqs, method),
            operation=f"sqs.{method}",
            logger=self.logger,
            **params,
        )


__all__ = ["QueueMessage", "SQSClient", "is_poison_pill"]
