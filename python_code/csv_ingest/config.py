"""
Configuration for the CSV Ingestion Pipeline, loaded from environment variables.

Both deployment variants (the Lambda handler and the container worker) read the
same variables; the infrastructure layer injects QUEUE_URL, TABLE_NAME and
AWS_REGION into the runtime environment.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

# SQS API limits for ReceiveMessage.
MAX_BATCH_SIZE = 10
MAX_WAIT_TIME_SECONDS = 20


def get_env_var(name: str, default: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.
        environ: The mapping to read from. Defaults to os.environ.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    source = os.environ if environ is None else environ
    value = source.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def _int_in_range(name: str, raw: str, low: int, high: int) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"FATAL: Environment variable '{name}' must be an integer, got '{raw}'.") from None
    if not low <= value <= high:
        raise ValueError(f"FATAL: Environment variable '{name}' must be between {low} and {high}, got {value}.")
    return value


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings shared by the Lambda handler and the container worker.

    Attributes:
        queue_url: The URL of the SQS queue fed by the upload topic.
        table_name: The DynamoDB table receiving one item per CSV row.
        aws_region: Region for every client. None lets boto3 resolve it.
        id_field: The CSV column used as the table's partition key.
        environment: Deployment environment, used as the metrics dimension.
        log_level: Logger level name.
        batch_size: Messages requested per ReceiveMessage call.
        wait_time_seconds: Long-poll wait for ReceiveMessage.
        worker_threads: Independent consumer loops per container.
        error_backoff_seconds: Sleep after a failed loop iteration.
    """

    queue_url: str
    table_name: str
    aws_region: Optional[str] = None
    id_field: str = "id"
    environment: str = "dev"
    log_level: str = "INFO"
    batch_size: int = MAX_BATCH_SIZE
    wait_time_seconds: int = MAX_WAIT_TIME_SECONDS
    worker_threads: int = 1
    error_backoff_seconds: int = 5

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        id_field = get_env_var("ID_FIELD", "id", env).strip()
        if not id_field:
            raise ValueError("FATAL: Environment variable 'ID_FIELD' must not be blank.")

        return cls(
            queue_url=get_env_var("QUEUE_URL", environ=env),
            table_name=get_env_var("TABLE_NAME", environ=env),
            aws_region=env.get("AWS_REGION") or None,
            id_field=id_field,
            environment=get_env_var("ENVIRONMENT", "dev", env),
            log_level=get_env_var("LOG_LEVEL", "INFO", env).upper(),
            batch_size=_int_in_range("BATCH_SIZE", get_env_var("BATCH_SIZE", str(MAX_BATCH_SIZE), env), 1, MAX_BATCH_SIZE),
            wait_time_seconds=_int_in_range(
                "WAIT_TIME_SECONDS", get_env_var("WAIT_TIME_SECONDS", str(MAX_WAIT_TIME_SECONDS), env), 0, MAX_WAIT_TIME_SECONDS
            ),
            worker_threads=_int_in_range("WORKER_THREADS", get_env_var("WORKER_THREADS", "1", env), 1, 64),
            error_backoff_seconds=_int_in_range("ERROR_BACKOFF_SECONDS", get_env_var("ERROR_BACKOFF_SECONDS", "5", env), 0, 300),
        )
