"""
Job outcome handler: fetch the artifact, mail it, remove it.

Each step either hands its result to the next one or ends the pipeline
with a failed Outcome naming the step. Cleanup only runs after a
confirmed delivery, so a failed fetch or send never loses the artifact.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .constants import (
    DEFAULT_ATTACHMENT_NAME,
    DEFAULT_MAIL_BODY,
    DEFAULT_MAIL_SUBJECT,
    JobReference,
)
from .logging import get_logger


class Step(str, Enum):
    FETCH = "fetch"
    DELIVER = "deliver"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class Outcome:
    ok: bool
    step: Optional[Step] = None
    cause: Optional[BaseException] = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(ok=True)

    @classmethod
    def failed(cls, step: Step, cause: BaseException) -> "Outcome":
        return cls(ok=False, step=step, cause=cause)

    @property
    def error_message(self) -> Optional[str]:
        """Text stored on the job record; None for a successful outcome."""
        if self.ok:
            return None
        return f"{self.step.value} failed: {type(self.cause).__name__}: {self.cause}"


@dataclass(frozen=True)
class MailTemplate:
    subject: str = DEFAULT_MAIL_SUBJECT
    body: str = DEFAULT_MAIL_BODY
    attachment_name: str = DEFAULT_ATTACHMENT_NAME


class JobOutcomeHandler:
    """Runs the side effects for one job against a blob store and a mailer."""

    def __init__(self, storage, mailer, template: MailTemplate = MailTemplate(), logger=None):
        self.storage = storage
        self.mailer = mailer
        self.template = template
        self.logger = logger or get_logger("outcome")

    def execute(self, job: JobReference) -> Outcome:
        log = self.logger.bind(job_id=job.job_id, artifact_key=job.artifact_key)

        try:
            content = self.storage.get_bytes(job.artifact_key)
        except Exception as e:
            log.error(e, {"step": Step.FETCH.value})
            return Outcome.failed(Step.FETCH, e)

        try:
            self.mailer.send(
                job.recipient,
                self.template.subject,
                self.template.body,
                self.template.attachment_name,
                content,
            )
        except Exception as e:
            # Artifact stays in place for the redelivered attempt
            log.error(e, {"step": Step.DELIVER.value})
            return Outcome.failed(Step.DELIVER, e)

        try:
            self.storage.delete(job.artifact_key)
        except Exception as e:
            log.error(e, {"step": Step.CLEANUP.value, "delivered": True})
            return Outcome.failed(Step.CLEANUP, e)

        log.info("Artifact delivered", {"size": len(content)})
        return Outcome.success()


__all__ = ["Step", "Outcome", "MailTemplate", "JobOutcomeHandler"]
