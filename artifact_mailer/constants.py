"""
constants.py – core types and fixed values shared by the worker modules.
Runtime settings live in config.py; everything here is static.
"""

from dataclasses import dataclass


# ============================================================================
# CORE TYPES
# ============================================================================

@dataclass(frozen=True)
class JobReference:
    """Decoded queue payload: which artifact goes to which recipient for which job."""
    job_id: str
    recipient: str
    artifact_key: str


# Message validation constants
REQUIRED_MESSAGE_FIELDS = ["job_id", "recipient", "artifact_key"]

# ============================================================================
# QUEUE / RETRY DEFAULTS
# ============================================================================

DEFAULT_VISIBILITY_TIMEOUT = 60      # seconds a received message stays leased
DEFAULT_WAIT_TIME = 20               # SQS long-poll upper bound
DEFAULT_MAX_RECEIVE_COUNT = 10       # poison threshold (strictly greater than)
DEFAULT_IDLE_POLL_INTERVAL = 10.0    # sleep when the queue is empty

DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF = 60.0
DEFAULT_MAX_EXECUTION_TIME = 900.0   # 15 min cap across all retries of one call

SQS_MAX_BODY_BYTES = 256 * 1024
SQS_MAX_VISIBILITY = 43_200  # 12h hard SQS limit

# Error codes worth another attempt (SQS, S3 and SES share most of them)
RETRIABLE_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ServiceUnavailable",
    "RequestThrottled",
    "InternalError",
    "InternalFailure",
    "RequestTimeout",
    "SlowDown",
    "500",
    "502",
    "503",
    "504",
}

# ============================================================================
# MAIL TEMPLATE DEFAULTS
# ============================================================================

DEFAULT_MAIL_SUBJECT = "Your processing results"
DEFAULT_MAIL_BODY = "Please find your results attached."
DEFAULT_ATTACHMENT_NAME = "result.txt"
DEFAULT_SENDER_NAME = "Artifact Mailer"

# File extension mappings for attachments
EXTENSION_MIME_TYPES = {
    ".json": "application/json",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".zip": "application/zip",
}
