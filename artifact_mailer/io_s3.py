"""
S3 artifact storage.

- S3Storage: read, check and delete artifacts by key in one bucket
- Keys may also be given as full s3://bucket/key URIs
- ClientErrors are mapped to Python exceptions (missing object -> FileNotFoundError)
"""

from __future__ import annotations

from typing import Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from .logging import get_logger
from .retry import NO_RETRY, RetryPolicy, client_config, error_code, retry_call


DEFAULT_MAX_ARTIFACT_SIZE = 25 * 1024 * 1024  # fits common mail relay limits


class S3Storage:
    """
    Encapsulates the S3 operations the worker needs.

    Easy to test: inject a moto-backed boto3 client, or subclass for a local store.
    """

    def __init__(
        self,
        bucket: str,
        s3_client=None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        retry_policy: RetryPolicy = NO_RETRY,
        max_size: int = DEFAULT_MAX_ARTIFACT_SIZE,
        logger=None,
    ):
        if not bucket:
            raise ValueError("bucket required")
        self.bucket = bucket
        self._s3 = s3_client
        self._region = region
        self._endpoint_url = endpoint_url
        self.retry_policy = retry_policy
        self.max_size = max_size
        self.logger = logger or get_logger("io_s3")

    @property
    def s3(self):
        """Lazy-load S3 client."""
        if self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                region_name=self._region,
                endpoint_url=self._endpoint_url,
                config=client_config(read_timeout=30),
            )
        return self._s3

    # ------------------------------------------------------------------------
    # READ OPERATIONS
    # ------------------------------------------------------------------------

    def get_bytes(self, key: str) -> bytes:
        """Download an artifact (must be <= max_size)."""
        bucket, key = self._locate(key)
        uri = f"s3://{bucket}/{key}"
        self.logger.debug("Downloading artifact", {"uri": uri})

        try:
            resp = retry_call(
                self.retry_policy, self.s3.get_object,
                Bucket=bucket, Key=key,
                operation="s3.get_object", logger=self.logger,
            )
        except ClientError as e:
            self._raise_mapped_error(e, uri)

        size = resp.get("ContentLength")
        body = resp["Body"]
        try:
            if size is not None and size > self.max_size:
                raise ValueError(f"Artifact exceeds {self.max_size} byte limit ({size} bytes): {uri}")
            data = body.read(self.max_size + 1)
        finally:
            body.close()
        if len(data) > self.max_size:
            raise ValueError(f"Artifact exceeds {self.max_size} byte limit while streaming: {uri}")

        self.logger.info("Downloaded artifact", {"uri": uri, "size": len(data)})
        return data

    # ------------------------------------------------------------------------
    # WRITE OPERATIONS
    # ------------------------------------------------------------------------

    def delete(self, key: str) -> None:
        """Delete an artifact (idempotent)."""
        bucket, key = self._locate(key)
        uri = f"s3://{bucket}/{key}"
        try:
            retry_call(
                self.retry_policy, self.s3.delete_object,
                Bucket=bucket, Key=key,
                operation="s3.delete_object", logger=self.logger,
            )
        except ClientError as e:
            if error_code(e) in ("404", "NoSuchKey", "NotFound"):
                return
            self._raise_mapped_error(e, uri)
        self.logger.info("Deleted artifact", {"uri": uri})

    # ------------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------------

    def _locate(self, key: str) -> Tuple[str, str]:
        """Resolve a key or s3:// URI to (bucket, key)."""
        if not isinstance(key, str) or not key.strip():
            raise ValueError("artifact key required")
        key = key.strip()
        if key.startswith("s3://"):
            return self._parse_s3_uri(key)
        key = key.lstrip("/")
        if ".." in key.split("/"):
            raise ValueError(f"Path traversal not allowed: {key}")
        return self.bucket, key

    @staticmethod
    def _parse_s3_uri(uri: str) -> Tuple[str, str]:
        """Parse s3://bucket/key into (bucket, key)."""
        without = uri[len("s3://"):]
        if "/" not in without:
            raise ValueError(f"Invalid S3 URI (no key): {uri}")
        bucket, key = without.split("/", 1)
        if not bucket or not key:
            raise ValueError(f"Invalid S3 URI: {uri}")
        if ".." in key.split("/"):
            raise ValueError(f"Path traversal not allowed: {uri}")
        return bucket, key

    @staticmethod
    def _raise_mapped_error(error: ClientError, uri: str) -> None:
        """Map ClientError to Python exceptions."""
        code = error_code(error)

        if code in ("404", "NotFound", "NoSuchKey"):
            raise FileNotFoundError(f"Artifact not found: {uri}") from error
        if code == "NoSuchBucket":
            raise FileNotFoundError(f"Bucket not found: {uri}") from error
        if code in ("AccessDenied", "403"):
            raise PermissionError(f"Access denied: {uri}") from error

        raise error


__all__ = ["S3Storage", "DEFAULT_MAX_ARTIFACT_SIZE"]
