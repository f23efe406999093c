from __future__ import annotations

import threading
from typing import Any, Optional

from .config import MailerConfig
from .io_db import PostgresDB
from .io_mail import SESMailer, SMTPMailer
from .io_s3 import S3Storage
from .io_sqs import SQSClient
from .logging import get_logger
from .outcome import JobOutcomeHandler, MailTemplate
from .reconcile import StatusReconciler
from .runner import StopToken, Worker


# ==========================================================
# Adapter factories
# ==========================================================

def build_queue(config: MailerConfig) -> SQSClient:
    return SQSClient(config.queue.queue_url, region=config.region, retry_policy=config.retry)


def build_storage(config: MailerConfig) -> S3Storage:
    return S3Storage(
        config.storage.bucket,
        region=config.storage.region,
        endpoint_url=config.storage.endpoint_url,
        retry_policy=config.retry,
    )


def build_job_store(config: MailerConfig) -> PostgresDB:
    return PostgresDB(
        config.database.dsn,
        table=config.database.table,
        max_size=config.database.pool_size,
        timeout=config.database.timeout,
        retry_policy=config.retry,
        application_name=config.worker.service_name,
    )


def build_mailer(config: MailerConfig):
    mail = config.mail
    if mail.transport == "smtp":
        return SMTPMailer(
            mail.smtp_host,
            mail.sender,
            port=mail.smtp_port,
            sender_name=mail.sender_name,
            username=mail.smtp_username,
            password=mail.smtp_password,
            use_tls=mail.smtp_use_tls,
            use_ssl=mail.smtp_use_ssl,
            timeout=mail.smtp_timeout,
        )
    return SESMailer(mail.sender, sender_name=mail.sender_name, region=mail.region, retry_policy=config.retry)


# ==========================================================
# Host lifecycle
# ==========================================================

class WorkerHost:
    """
    Process lifecycle around one Worker.

      - on_start(): build adapters (unless injected), bootstrap the job table
      - run(): block in the worker loop until stopped
      - on_stop(): request a stop and wait until the loop reports drained

    Adapters passed to the constructor are used as-is, which is how tests
    and embedding hosts swap in their own queue/storage/store/mailer.
    """

    def __init__(
        self,
        config: MailerConfig,
        queue: Any = None,
        storage: Any = None,
        job_store: Any = None,
        mailer: Any = None,
        migrate: bool = True,
        logger=None,
    ):
        self.config = config
        self.queue = queue
        self.storage = storage
        self.job_store = job_store
        self.mailer = mailer
        self.migrate = migrate
        self.logger = logger or get_logger("host")
        self.worker: Optional[Worker] = None
        self._stop = StopToken()
        self._running = threading.Event()

    def on_start(self) -> bool:
        self.logger.info("Starting worker host", {"service": self.config.worker.service_name})
        self.queue = self.queue or build_queue(self.config)
        self.storage = self.storage or build_storage(self.config)
        self.mailer = self.mailer or build_mailer(self.config)
        if self.job_store is None:
            self.job_store = build_job_store(self.config)
        if self.migrate and hasattr(self.job_store, "migrate"):
            self.job_store.migrate()
            self.logger.info("Job table ready")

        template = MailTemplate(
            subject=self.config.mail.subject,
            body=self.config.mail.body,
            attachment_name=self.config.mail.attachment_name,
        )
        self.worker = Worker(
            self.queue,
            JobOutcomeHandler(self.storage, self.mailer, template),
            StatusReconciler(self.job_store),
            self.config.queue,
            self.config.worker,
        )
        return True

    def run(self) -> None:
        if self.worker is None:
            self.on_start()
        self._running.set()
        self.worker.run(self._stop)

    def request_stop(self) -> None:
        """Non-blocking; safe to call from a signal handler."""
        self._stop.request_stop()

    def on_stop(self, timeout: Optional[float] = None) -> bool:
        """Request a stop and block until the loop has drained. False on timeout."""
        self.logger.info("Stop request received. Trying to stop...")
        self.request_stop()
        if not self._running.is_set():
            return True
        drained = self.worker.drained.wait(timeout)
        if drained:
            self.logger.info("Ready to stop")
        else:
            self.logger.warning("Worker did not drain in time", {"timeout": timeout})
        return drained

    def close(self) -> None:
        if self.job_store is not None and hasattr(self.job_store, "close"):
            self.job_store.close()


__all__ = ["WorkerHost", "build_queue", "build_storage", "build_job_store", "build_mailer"]
