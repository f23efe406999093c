"""
Configuration loader.
Merges packaged defaults + YAML override + environment variables into a typed config object.
Everything else reads from this - single source of truth.
"""

from typing import Dict, Any, Optional
from dataclasses import dataclass, field
import os

import yaml

from .constants import (
    DEFAULT_ATTACHMENT_NAME,
    DEFAULT_IDLE_POLL_INTERVAL,
    DEFAULT_MAIL_BODY,
    DEFAULT_MAIL_SUBJECT,
    DEFAULT_MAX_EXECUTION_TIME,
    DEFAULT_MAX_RECEIVE_COUNT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_SENDER_NAME,
    DEFAULT_VISIBILITY_TIMEOUT,
    DEFAULT_WAIT_TIME,
    SQS_MAX_VISIBILITY,
)
from .logging import LEVELS
from .retry import RetryPolicy


DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config", "default.yaml")


# ============================================================================
# CONFIG SCHEMA
# ============================================================================

@dataclass
class QueueConfig:
    """Queue URL and lease settings"""
    queue_url: str
    visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT  # seconds
    wait_time: int = DEFAULT_WAIT_TIME  # long-poll seconds
    max_receive_count: int = DEFAULT_MAX_RECEIVE_COUNT
    halt_on_poison: bool = False  # stop the whole loop after a poison drop


@dataclass
class StorageConfig:
    """S3 settings"""
    bucket: str
    region: Optional[str] = None
    endpoint_url: Optional[str] = None  # for MinIO/localstack


@dataclass
class DatabaseConfig:
    """Job status DB connection"""
    dsn: str
    table: str = "jobs"
    pool_size: int = 5
    timeout: int = 30


@dataclass
class MailConfig:
    """Outbound mail channel and message template"""
    sender: str
    transport: str = "ses"  # ses or smtp
    sender_name: str = DEFAULT_SENDER_NAME
    subject: str = DEFAULT_MAIL_SUBJECT
    body: str = DEFAULT_MAIL_BODY
    attachment_name: str = DEFAULT_ATTACHMENT_NAME
    region: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    smtp_use_ssl: bool = False
    smtp_timeout: int = 30


@dataclass
class WorkerConfig:
    """Worker loop behavior"""
    service_name: str = "artifact-mailer"
    idle_poll_interval: float = DEFAULT_IDLE_POLL_INTERVAL
    heartbeat_interval: float = 0.0  # seconds between lease renewals, 0 = off


@dataclass
class LoggingConfig:
    """Logging settings"""
    level: str = "INFO"


@dataclass
class MailerConfig:
    """
    Complete worker configuration.
    All modules read from this object.
    """
    queue: QueueConfig
    storage: StorageConfig
    database: DatabaseConfig
    mail: MailConfig
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    region: Optional[str] = None


# ============================================================================
# ENVIRONMENT VARIABLE NAMES
# ============================================================================

# env var -> dotted config key
ENV_OVERRIDES = {
    "QUEUE_URL": "queue.queue_url",
    "BUCKET": "storage.bucket",
    "DB_DSN": "database.dsn",
    "AWS_REGION": "region",
    "MAIL_SENDER": "mail.sender",
    "MAIL_TRANSPORT": "mail.transport",
    "SMTP_HOST": "mail.smtp_host",
    "SMTP_PORT": "mail.smtp_port",
    "SMTP_USERNAME": "mail.smtp_username",
    "SMTP_PASSWORD": "mail.smtp_password",
    "LOG_LEVEL": "logging.level",
}


# ============================================================================
# LOADING FUNCTIONS
# ============================================================================

def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> MailerConfig:
    """
    Main entry point.

    Priority (highest to lowest):
    1. Environment variables
    2. Override YAML (explicit path, else WORKER_CONFIG env var)
    3. Packaged config/default.yaml

    Raises:
        FileNotFoundError if an explicit override file is missing
        ValueError if required settings are missing or invalid
    """
    env = os.environ if environ is None else environ
    override_path = path or env.get("WORKER_CONFIG")
    if override_path and not os.path.exists(override_path):
        raise FileNotFoundError(f"Missing config file at {override_path}")

    raw = merge_configs(
        load_yaml_file(DEFAULT_CONFIG_PATH),
        load_yaml_file(override_path) if override_path else {},
        load_env_vars(env),
    )
    return parse_config(raw)


def load_env_vars(environ: Dict[str, str]) -> Dict[str, Any]:
    """Collect known env vars into a nested dict shaped like the YAML file."""
    out: Dict[str, Any] = {}
    for var, key in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        node = out
        parts = key.split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return out


def load_yaml_file(filepath: str) -> Dict[str, Any]:
    """
    Parse single YAML file.
    Return empty dict if file doesn't exist (not an error).

    Raises:
        yaml.YAMLError if file exists but invalid YAML
        ValueError if the top level is not a mapping
    """
    if not filepath or not os.path.exists(filepath):
        return {}
    with open(filepath, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {filepath}")
    return data


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge multiple config dicts.
    Later configs override earlier ones.

    Example:
        merge_configs({"queue": {"wait_time": 20}}, {"queue": {"wait_time": 0}})
        # {"queue": {"wait_time": 0}}
    """
    result: Dict[str, Any] = {}
    for config in configs:
        for key, value in (config or {}).items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value
    return result


def parse_config(raw: Dict[str, Any]) -> MailerConfig:
    region = raw.get("region") or None
    return MailerConfig(
        queue=parse_queue_config(raw.get("queue") or {}),
        storage=parse_storage_config(raw.get("storage") or {}, region),
        database=parse_database_config(raw.get("database") or {}),
        mail=parse_mail_config(raw.get("mail") or {}, region),
        worker=parse_worker_config(raw.get("worker") or {}),
        retry=parse_retry_policy(raw.get("retry") or {}),
        logging=parse_logging_config(raw.get("logging") or {}),
        region=region,
    )


def parse_queue_config(raw: Dict[str, Any]) -> QueueConfig:
    """Convert raw dict to typed QueueConfig."""
    url = raw.get("queue_url")
    if not url or not validate_queue_url(url):
        raise ValueError(f"Invalid or missing queue.queue_url: {url!r}")
    visibility = _int(raw, "visibility_timeout", DEFAULT_VISIBILITY_TIMEOUT, minimum=1)
    if visibility > SQS_MAX_VISIBILITY:
        raise ValueError(f"queue.visibility_timeout must be <= {SQS_MAX_VISIBILITY}")
    wait_time = _int(raw, "wait_time", DEFAULT_WAIT_TIME, minimum=0)
    if wait_time > 20:
        raise ValueError("queue.wait_time must be <= 20")
    return QueueConfig(
        queue_url=url,
        visibility_timeout=visibility,
        wait_time=wait_time,
        max_receive_count=_int(raw, "max_receive_count", DEFAULT_MAX_RECEIVE_COUNT, minimum=1),
        halt_on_poison=_bool(raw.get("halt_on_poison", False)),
    )


def parse_storage_config(raw: Dict[str, Any], region: Optional[str] = None) -> StorageConfig:
    bucket = raw.get("bucket")
    if not bucket:
        raise ValueError("storage.bucket required")
    return StorageConfig(
        bucket=bucket,
        region=raw.get("region") or region,
        endpoint_url=raw.get("endpoint_url") or None,
    )


def parse_database_config(raw: Dict[str, Any]) -> DatabaseConfig:
    dsn = raw.get("dsn")
    if not dsn or not validate_dsn(dsn):
        raise ValueError("database.dsn required (postgresql://... or key=value form)")
    return DatabaseConfig(
        dsn=dsn,
        table=raw.get("table") or "jobs",
        pool_size=_int(raw, "pool_size", 5, minimum=1),
        timeout=_int(raw, "timeout", 30, minimum=1),
    )


def parse_mail_config(raw: Dict[str, Any], region: Optional[str] = None) -> MailConfig:
    sender = raw.get("sender")
    if not sender or "@" not in sender:
        raise ValueError(f"mail.sender must be an e-mail address: {sender!r}")
    transport = str(raw.get("transport", "ses")).lower()
    if transport not in ("ses", "smtp"):
        raise ValueError(f"mail.transport must be 'ses' or 'smtp', got {transport!r}")
    if transport == "smtp" and not raw.get("smtp_host"):
        raise ValueError("mail.smtp_host required for smtp transport")
    return MailConfig(
        sender=sender,
        transport=transport,
        sender_name=raw.get("sender_name", DEFAULT_SENDER_NAME),
        subject=raw.get("subject", DEFAULT_MAIL_SUBJECT),
        body=raw.get("body", DEFAULT_MAIL_BODY),
        attachment_name=raw.get("attachment_name", DEFAULT_ATTACHMENT_NAME),
        region=raw.get("region") or region,
        smtp_host=raw.get("smtp_host"),
        smtp_port=_int(raw, "smtp_port", 587, minimum=1),
        smtp_username=raw.get("smtp_username"),
        smtp_password=raw.get("smtp_password"),
        smtp_use_tls=_bool(raw.get("smtp_use_tls", True)),
        smtp_use_ssl=_bool(raw.get("smtp_use_ssl", False)),
        smtp_timeout=_int(raw, "smtp_timeout", 30, minimum=1),
    )


def parse_worker_config(raw: Dict[str, Any]) -> WorkerConfig:
    """Intervals must be non-negative numbers."""
    return WorkerConfig(
        service_name=raw.get("service_name", "artifact-mailer"),
        idle_poll_interval=_float(raw, "idle_poll_interval", DEFAULT_IDLE_POLL_INTERVAL),
        heartbeat_interval=_float(raw, "heartbeat_interval", 0.0),
    )


def parse_retry_policy(raw: Dict[str, Any]) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=_int(raw, "max_attempts", DEFAULT_RETRY_ATTEMPTS, minimum=1),
        backoff_seconds=_float(raw, "backoff_seconds", DEFAULT_RETRY_BACKOFF),
        max_execution_time=_float(raw, "max_execution_time", DEFAULT_MAX_EXECUTION_TIME),
    )


def parse_logging_config(raw: Dict[str, Any]) -> LoggingConfig:
    """Log level must be DEBUG/INFO/WARNING/ERROR."""
    level = str(raw.get("level", "INFO")).upper()
    if level not in LEVELS:
        raise ValueError(f"Invalid log level: {level}")
    return LoggingConfig(level=level)


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_queue_url(url: str) -> bool:
    """SQS queue URLs are http(s) URLs with an account id and queue name path."""
    if not isinstance(url, str) or not url.startswith(("https://", "http://")):
        return False
    path = url.split("://", 1)[1].split("/", 1)
    return len(path) == 2 and bool(path[1].strip("/"))


def validate_dsn(dsn: str) -> bool:
    """Accept postgresql:// URLs and libpq key=value strings."""
    if not isinstance(dsn, str) or not dsn.strip():
        return False
    return dsn.startswith(("postgresql://", "postgres://")) or "=" in dsn


# ============================================================================
# HELPERS
# ============================================================================

def _int(raw: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = raw.get(key, default)
    try:
        value = int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be an integer, got {value!r}") from e
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(raw: Dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be a number, got {value!r}") from e
    if value < 0:
        raise ValueError(f"{key} must be >= 0, got {value}")
    return value


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
