"""
Shared fixtures: moto-backed AWS clients plus in-memory fakes for the
job store, the mailer and the queue.
"""

from __future__ import annotations

import contextlib
import json
import time
from typing import Dict, List, Optional, Tuple

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from artifact_mailer.config import QueueConfig, WorkerConfig
from artifact_mailer.io_db import JobNotFoundError, JobRecord
from artifact_mailer.io_s3 import S3Storage
from artifact_mailer.io_sqs import QueueMessage, SQSClient
from artifact_mailer.retry import NO_RETRY

REGION = "us-east-1"
BUCKET = "artifact-mailer-tests"
SENDER = "noreply@example.com"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class InMemoryJobStore:
    """Job store with the same contract as PostgresDB (completion never reverts)."""

    def __init__(self):
        self.records: Dict[Tuple[str, str], JobRecord] = {}
        self.get_calls = 0
        self.update_calls = 0
        self.fail_with: Optional[Exception] = None

    def add(self, job_id: str, recipient: str, **fields) -> JobRecord:
        record = JobRecord(job_id=job_id, recipient=recipient, **fields)
        self.records[(job_id, recipient)] = record
        return record

    def get_job(self, job_id: str, recipient: str) -> JobRecord:
        self.get_calls += 1
        if self.fail_with:
            raise self.fail_with
        try:
            stored = self.records[(job_id, recipient)]
        except KeyError:
            raise JobNotFoundError(job_id, recipient) from None
        return JobRecord(stored.job_id, stored.recipient, stored.is_completed, stored.error_message)

    def update_job(self, record: JobRecord) -> None:
        self.update_calls += 1
        key = (record.job_id, record.recipient)
        if key not in self.records:
            raise JobNotFoundError(record.job_id, record.recipient)
        current = self.records[key]
        self.records[key] = JobRecord(
            job_id=record.job_id,
            recipient=record.recipient,
            is_completed=current.is_completed or record.is_completed,
            error_message=record.error_message,
        )


class RecordingMailer:
    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: List[dict] = []
        self.fail_with = fail_with

    def send(self, recipient, subject, body, attachment_name, attachment) -> str:
        if self.fail_with:
            raise self.fail_with
        self.sent.append({
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "attachment_name": attachment_name,
            "attachment": attachment,
        })
        return f"mail-{len(self.sent)}"


class FakeQueue:
    """In-memory queue: receive leases the head message, delete removes it for good."""

    def __init__(self, bodies: Optional[List[str]] = None, receive_count: int = 1):
        self.visible: List[QueueMessage] = []
        self.inflight: List[QueueMessage] = []
        self.deleted: List[QueueMessage] = []
        self.receive_calls = 0
        self.receive_errors: List[Exception] = []
        self.heartbeats: List[QueueMessage] = []
        for body in bodies or []:
            self.put(body, receive_count=receive_count)

    def put(self, body: str, receive_count: int = 1) -> QueueMessage:
        n = len(self.visible) + len(self.inflight) + len(self.deleted) + 1
        message = QueueMessage(message_id=f"m-{n}", body=body, receive_count=receive_count, receipt_handle=f"rh-{n}")
        self.visible.append(message)
        return message

    def receive(self, visibility_timeout: int, wait_seconds: int = 20) -> Optional[QueueMessage]:
        self.receive_calls += 1
        if self.receive_errors:
            raise self.receive_errors.pop(0)
        if not self.visible:
            return None
        message = self.visible.pop(0)
        self.inflight.append(message)
        return message

    def delete(self, message: QueueMessage) -> None:
        self.inflight.remove(message)
        self.deleted.append(message)

    def approximate_count(self) -> int:
        return len(self.visible)

    @contextlib.contextmanager
    def visibility_heartbeat(self, message, base_timeout, heartbeat_every):
        self.heartbeats.append(message)
        yield


def job_body(job_id="job-1", recipient="alice@example.com", artifact_key="results/job-1.txt", **extra) -> str:
    payload = {"job_id": job_id, "recipient": recipient, "artifact_key": artifact_key}
    payload.update(extra)
    return json.dumps(payload)


def queue_stats(queue: SQSClient) -> Dict[str, int]:
    """Visible / in-flight / delayed counts straight from the queue attributes."""
    attrs = queue.sqs.get_queue_attributes(
        QueueUrl=queue.queue_url,
        AttributeNames=[
            "ApproximateNumberOfMessages",
            "ApproximateNumberOfMessagesNotVisible",
            "ApproximateNumberOfMessagesDelayed",
        ],
    )["Attributes"]
    return {
        "visible": int(attrs.get("ApproximateNumberOfMessages", 0)),
        "inflight": int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        "delayed": int(attrs.get("ApproximateNumberOfMessagesDelayed", 0)),
    }


def object_exists(storage: S3Storage, key: str) -> bool:
    try:
        storage.s3.head_object(Bucket=storage.bucket, Key=key)
    except ClientError as e:
        if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
            return False
        raise
    return True


def burn_receives(sqs_client, queue_url: str, times: int) -> None:
    """Receive the head message `times` times with a zero lease, so its receive count climbs."""
    done = 0
    while done < times:
        resp = sqs_client.receive_message(QueueUrl=queue_url, VisibilityTimeout=0, WaitTimeSeconds=0)
        done += len(resp.get("Messages", []))
        # moto compares visibility in milliseconds
        time.sleep(0.01)


# ---------------------------------------------------------------------------
# AWS (moto)
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so no test can reach a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.delenv("WORKER_CONFIG", raising=False)


@pytest.fixture
def aws():
    with mock_aws():
        yield


@pytest.fixture
def sqs(aws):
    return boto3.client("sqs", region_name=REGION)


@pytest.fixture
def queue_url(sqs):
    return sqs.create_queue(QueueName="artifact-mailer-jobs")["QueueUrl"]


@pytest.fixture
def queue(sqs, queue_url):
    return SQSClient(queue_url, sqs_client=sqs, retry_policy=NO_RETRY)


@pytest.fixture
def s3(aws):
    client = boto3.client("s3", region_name=REGION)
    client.create_bucket(Bucket=BUCKET)
    return client


@pytest.fixture
def storage(s3):
    return S3Storage(BUCKET, s3_client=s3, retry_policy=NO_RETRY)


@pytest.fixture
def ses(aws):
    client = boto3.client("ses", region_name=REGION)
    client.verify_email_identity(EmailAddress=SENDER)
    return client


# ---------------------------------------------------------------------------
# Worker pieces
# ---------------------------------------------------------------------------

@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def queue_config(queue_url):
    return QueueConfig(queue_url=queue_url, visibility_timeout=60, wait_time=0, max_receive_count=10)


@pytest.fixture
def worker_config():
    return WorkerConfig(idle_poll_interval=0.01)
