"""
Status reconciler: writes an Outcome onto the job record.

Completion means "this consumer is done with the job", not "delivered":
both outcomes set is_completed, only the error text differs. Store
failures are logged and reported through the return value; whether the
queue message is acknowledged is decided by the runner alone.
"""

from __future__ import annotations

from .constants import JobReference
from .io_db import JobNotFoundError
from .logging import get_logger
from .outcome import Outcome


class StatusReconciler:
    def __init__(self, job_store, logger=None):
        self.job_store = job_store
        self.logger = logger or get_logger("reconcile")

    def reconcile(self, job: JobReference, outcome: Outcome) -> bool:
        """Persist the outcome. Returns False (after logging) when the record could not be updated."""
        log = self.logger.bind(job_id=job.job_id, recipient=job.recipient)
        try:
            record = self.job_store.get_job(job.job_id, job.recipient)
            self.job_store.update_job(record.finished(outcome.error_message))
        except JobNotFoundError as e:
            log.error(f"Failed to update job status: {e}", {"ok": outcome.ok})
            return False
        except Exception as e:
            log.error(e, {"context": "reconcile", "ok": outcome.ok})
            return False

        log.info("Job status updated", {"ok": outcome.ok, "error_message": outcome.error_message})
        return True


__all__ = ["StatusReconciler"]
