"""
AWS Lambda handler for the CSV Ingestion Pipeline.

This module is the function-as-a-service entry point. Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Initializing and caching the AWS clients for the execution environment.
  - Receiving batches of messages from the SQS trigger.
  - Calling pure, testable business logic functions from the 'core' module.
  - Deleting every message that must not be redelivered, and raising so the
    event source returns the rest to the queue.
  - Emitting the final metrics.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aws_lambda_powertools import Logger
from mypy_boto3_dynamodb.service_resource import Table
from mypy_boto3_s3 import S3Client
from mypy_boto3_sqs import SQSClient

from . import clients, core
from .config import Settings
from .errors import RetriableBatchError
from .model import QueueMessage

logger = Logger(service="csv-ingest")

# Initialised once per execution environment by _get_runtime().
SETTINGS: Optional[Settings] = None
S3: Optional[S3Client] = None
SQS: Optional[SQSClient] = None
TABLE: Optional[Table] = None


def _get_runtime(force_refresh: bool = False):
    """
    Returns the cached settings and clients, creating them on first use.

    Settings are read lazily rather than at import so that a misconfigured
    environment fails the invocation with a clear error, and so tests can set
    the environment before the first call.
    """
    global SETTINGS, S3, SQS, TABLE
    if SETTINGS is None or force_refresh:
        SETTINGS = Settings.from_env()
        logger.setLevel(SETTINGS.log_level)
        S3, SQS, ddb = clients.get_boto_clients(SETTINGS.aws_region)
        TABLE = ddb.Table(SETTINGS.table_name)
    return SETTINGS, S3, SQS, TABLE


def _build_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """Centralized helper to build the final Lambda response."""
    return {"statusCode": status_code, "body": json.dumps(body)}


@logger.inject_lambda_context
def handler(event: Dict, context: Any):
    """
    Main Lambda entry point. Orchestrates ingestion of one SQS batch.

    This function follows these steps:
    1. Normalises the SQS event records into QueueMessages.
    2. Calls `core.process_batch` to fetch, parse and upsert each object.
    3. Deletes messages that were fully written or failed non-retriably.
    4. Emits success or failure metrics.
    5. Raises RetriableBatchError if any message must be redelivered, so the
       event source makes the undeleted messages visible again after their
       visibility timeout.
    """
    start_time = datetime.now(timezone.utc)
    records = event.get("Records", [])
    if not records:
        return _build_response(200, {"message": "No messages to process."})

    settings, s3_client, sqs_client, table = _get_runtime()
    logger.info(f"Received {len(records)} messages to process.")

    try:
        messages = [QueueMessage.from_event_record(r) for r in records]
        batch = core.process_batch(messages, s3_client, table, settings.id_field, logger)

        delete_failures = core.delete_sqs_messages(sqs_client, settings.queue_url, batch.messages_to_delete, logger)
        if delete_failures > 0:
            logger.error(f"{delete_failures} messages could not be deleted after processing.")

        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        log_payload = {**batch.summary(), "delete_failures": delete_failures, "latency_ms": latency_ms}

        retry_ids = [m.message_id for m in batch.messages_to_retry]
        if retry_ids:
            core.emit_metrics(settings.environment, "PartialFailure", log_payload)
            raise RetriableBatchError(retry_ids)

        core.emit_metrics(settings.environment, "Success", log_payload)
        logger.info("Successfully processed batch.", extra=log_payload)
        return _build_response(200, log_payload)

    except RetriableBatchError:
        logger.warning("Leaving messages for redelivery.", exc_info=True)
        raise
    except Exception as e:
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        error_payload = {"error_type": type(e).__name__, "error_message": str(e), "latency_ms": latency_ms}
        core.emit_metrics(settings.environment, "Failure", error_payload)
        logger.error(f"Processing failed: {json.dumps(error_payload)}", exc_info=True)
        raise
