import argparse
import contextlib
import signal
import sys
import threading
from enum import Enum
from typing import List, Optional

from .config import QueueConfig, WorkerConfig, load_config
from .constants import JobReference
from .io_sqs import QueueMessage, is_poison_pill
from .logging import get_logger, set_global_level
from .message import MessageDecodeError, decode, encode


# ==========================================================
# Loop primitives
# ==========================================================

class StopToken:
    """Cooperative stop flag, checked before every lease acquisition."""

    def __init__(self):
        self._event = threading.Event()

    def request_stop(self) -> None:
        self._event.set()

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns early (True) once stop is requested."""
        return self._event.wait(timeout)


class ProcessResult(str, Enum):
    IDLE = "idle"
    POISON_DROPPED = "poison_dropped"
    INVALID_DROPPED = "invalid_dropped"
    DELIVERED = "delivered"
    FAILED = "failed"


# ==========================================================
# Core Worker Logic
# ==========================================================

class Worker:
    """
    Single-threaded consumer: lease one message, resolve it, acknowledge it.

    A message is deleted when it is poison, when it cannot be decoded, or
    when its job was delivered. A failed job keeps its message so the lease
    expiry redelivers it, bounded by max_receive_count.
    """

    def __init__(self, queue, handler, reconciler, queue_config: QueueConfig,
                 worker_config: Optional[WorkerConfig] = None, logger=None):
        self.queue = queue
        self.handler = handler
        self.reconciler = reconciler
        self.queue_config = queue_config
        self.worker_config = worker_config or WorkerConfig()
        self.logger = logger or get_logger("runner")
        self.drained = threading.Event()

    def run(self, stop: StopToken) -> None:
        """Run until stop is requested (or a poison drop with halt_on_poison), then set drained."""
        self.logger.info("Worker entry point called", {"queue_url": self.queue_config.queue_url})
        try:
            while not stop.stop_requested:
                self.logger.info("Worker is awake")
                self._log_queue_depth()

                if self._drain(stop):
                    return

                self.logger.info("No new messages to process. Sleeping.")
                stop.wait(self.worker_config.idle_poll_interval)
        finally:
            self.drained.set()
            self.logger.info("Worker drained")

    def _drain(self, stop: StopToken) -> bool:
        """Process messages until the queue is empty. True means leave the loop."""
        while True:
            if stop.stop_requested:
                self.logger.info("Stop request caught. Stopping all work.")
                return True

            try:
                result = self.run_once()
            except Exception as e:
                # Transport failure outside a job (receive/delete); back off one idle interval
                self.logger.error(e, {"context": "main_loop"})
                return False

            if result is ProcessResult.IDLE:
                return False
            if result is ProcessResult.POISON_DROPPED and self.queue_config.halt_on_poison:
                self.logger.warning("Halting worker after poison message (halt_on_poison)")
                return True

    def run_once(self) -> ProcessResult:
        """Lease and process at most one message."""
        message = self.queue.receive(
            visibility_timeout=self.queue_config.visibility_timeout,
            wait_seconds=self.queue_config.wait_time,
        )
        if message is None:
            return ProcessResult.IDLE
        return self.process(message)

    # ==========================================================
    # Message Processing
    # ==========================================================

    def process(self, message: QueueMessage) -> ProcessResult:
        log = self.logger.bind(message_id=message.message_id, receive_count=message.receive_count)

        # Protects against messages that keep failing forever
        if is_poison_pill(message.receive_count, self.queue_config.max_receive_count):
            log.warning("Message max receive count exceeded. Deleting it as a poison message.", {
                "max_receive_count": self.queue_config.max_receive_count,
            })
            self.queue.delete(message)
            return ProcessResult.POISON_DROPPED

        log.info("Processing queue message", {"body": message.body[:512]})
        try:
            job = decode(message.body)
        except MessageDecodeError as e:
            log.error(f"Invalid message format. Deleting: {e}")
            self.queue.delete(message)
            return ProcessResult.INVALID_DROPPED

        log = log.bind(job_id=job.job_id)
        with self._lease(message):
            outcome = self.handler.execute(job)
            self.reconciler.reconcile(job, outcome)

        if outcome.ok:
            self.queue.delete(message)
            log.info("Message successfully processed, deleted")
            return ProcessResult.DELIVERED

        log.warning("Job failed; message left for redelivery", {"error_message": outcome.error_message})
        return ProcessResult.FAILED

    def _lease(self, message: QueueMessage):
        interval = self.worker_config.heartbeat_interval
        if interval and interval > 0:
            return self.queue.visibility_heartbeat(
                message,
                base_timeout=self.queue_config.visibility_timeout,
                heartbeat_every=interval,
            )
        return contextlib.nullcontext()

    def _log_queue_depth(self) -> None:
        try:
            count = self.queue.approximate_count()
        except Exception as e:
            self.logger.warning("Could not read queue depth", {"error": str(e)})
            return
        self.logger.info(f"Queue has approximately {count} message(s)", {"approximate_count": count})


# ==========================================================
# Entrypoint
# ==========================================================

def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="artifact-mailer", description="Queue-driven artifact mailer")
    sub = parser.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Consume the queue until SIGTERM/SIGINT")
    run_p.add_argument("--config", help="Override YAML (default: $WORKER_CONFIG)")
    run_p.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")

    enq_p = sub.add_parser("enqueue", help="Send one job message to the queue")
    enq_p.add_argument("--config", help="Override YAML (default: $WORKER_CONFIG)")
    enq_p.add_argument("--job-id", required=True)
    enq_p.add_argument("--recipient", required=True)
    enq_p.add_argument("--artifact-key", required=True)
    enq_p.add_argument("--create-job", action="store_true", help="Also insert the pending job record")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    from .host import WorkerHost, build_job_store, build_queue

    args = _parser().parse_args(argv)
    command = args.command or "run"
    config = load_config(getattr(args, "config", None))
    level = getattr(args, "log_level", None) or config.logging.level
    logger = get_logger("runner", level=level)
    set_global_level(level)

    if command == "enqueue":
        job = JobReference(job_id=args.job_id, recipient=args.recipient, artifact_key=args.artifact_key)
        if args.create_job:
            store = build_job_store(config)
            try:
                store.create_job(job.job_id, job.recipient)
            finally:
                store.close()
        message_id = build_queue(config).send(encode(job))
        logger.info("Message enqueued", {"message_id": message_id, "job_id": job.job_id})
        print(message_id)
        return 0

    host = WorkerHost(config, logger=logger)

    def _on_signal(signum, _frame):
        logger.info("Stop signal received", {"signal": signal.Signals(signum).name})
        host.request_stop()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    host.on_start()
    try:
        host.run()
    finally:
        host.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
