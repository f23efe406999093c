"""
Queue payload codec.

Wire format (JSON object, optionally wrapped in an SNS notification):
    {"job_id": "...", "recipient": "user@example.com", "artifact_key": "results/abc.txt"}

decode() is total: every malformed body surfaces as MessageDecodeError and
nothing else, so the runner can treat it as "unprocessable, drop it".
"""

from __future__ import annotations

import json
from typing import Any, Dict, Union

from .constants import JobReference, REQUIRED_MESSAGE_FIELDS


class MessageDecodeError(ValueError):
    """Payload is structurally unprocessable. Never retried."""


def decode(raw: Union[str, bytes]) -> JobReference:
    """Parse a raw queue body into a JobReference."""
    try:
        return _decode(raw)
    except MessageDecodeError:
        raise
    except Exception as e:
        raise MessageDecodeError(f"Unreadable message: {type(e).__name__}: {e}") from e


def _decode(raw: Union[str, bytes]) -> JobReference:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MessageDecodeError("Body is not valid UTF-8") from e
    if not isinstance(raw, str) or not raw.strip():
        raise MessageDecodeError("Body empty or not string")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MessageDecodeError(f"Invalid JSON: {e}") from e

    # Unwrap SNS envelope (Message field may itself be JSON)
    if isinstance(parsed, dict) and "Message" in parsed and "job_id" not in parsed:
        inner = parsed.get("Message")
        if isinstance(inner, str):
            try:
                parsed = json.loads(inner)
            except json.JSONDecodeError as e:
                raise MessageDecodeError(f"SNS Message invalid: {e}") from e
        else:
            parsed = inner

    if not isinstance(parsed, dict):
        raise MessageDecodeError(f"Message must be an object, got {type(parsed).__name__}")

    missing = [field for field in REQUIRED_MESSAGE_FIELDS if field not in parsed]
    if missing:
        raise MessageDecodeError(f"Missing required fields: {', '.join(missing)}")

    return JobReference(
        job_id=_job_id(parsed["job_id"]),
        recipient=_recipient(parsed["recipient"]),
        artifact_key=_text(parsed["artifact_key"], "artifact_key"),
    )


def _text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MessageDecodeError(f"{field} must be a non-empty string")
    return value.strip()


def _job_id(value: Any) -> str:
    # Upstream producers emit either string or integer ids
    if isinstance(value, bool):
        raise MessageDecodeError("job_id must be a string or integer")
    if isinstance(value, int):
        return str(value)
    return _text(value, "job_id")


def _recipient(value: Any) -> str:
    address = _text(value, "recipient")
    local, _, domain = address.rpartition("@")
    if not local or not domain or any(c.isspace() for c in address):
        raise MessageDecodeError(f"recipient is not an e-mail address: {address!r}")
    return address


def to_dict(job: JobReference) -> Dict[str, str]:
    return {
        "job_id": job.job_id,
        "recipient": job.recipient,
        "artifact_key": job.artifact_key,
    }


def encode(job: JobReference) -> str:
    """Serialize a JobReference to the queue wire format."""
    if not job.job_id or not job.recipient or not job.artifact_key:
        raise ValueError("job_id, recipient and artifact_key are required")
    return json.dumps(to_dict(job), sort_keys=True)


__all__ = ["MessageDecodeError", "decode", "encode", "to_dict"]
