"""
Core business logic for the CSV Ingestion Pipeline.

These functions are designed to be "pure" and testable, containing no
direct AWS SDK calls (unless passed in as arguments) and no global state.
They receive all dependencies, including the Powertools logger, from the
Lambda handler in app.py or the container worker in worker.py, allowing them
to be unit-tested in isolation.
"""

import csv
import io
import json
import random
import time
import uuid
from typing import Any, Dict, Iterator, List, Optional, cast
from urllib.parse import unquote_plus

from aws_lambda_powertools import Logger
from aws_lambda_powertools.metrics import EphemeralMetrics, MetricUnit
from botocore.exceptions import BotoCoreError, ClientError

# Import boto3 stubs for full type-safety in function signatures
from mypy_boto3_dynamodb.service_resource import Table
from mypy_boto3_s3 import S3Client
from mypy_boto3_sqs.client import SQSClient

# Import the specific TypeDef required by the delete_message_batch API call.
from mypy_boto3_sqs.type_defs import DeleteMessageBatchRequestEntryTypeDef

from .errors import (
    MalformedCsvError,
    MalformedNotificationError,
    NonRetriableError,
    ObjectFetchError,
    ObjectUnavailableError,
    RetriableError,
    RowRejectedError,
    RowWriteError,
)
from .model import (
    BatchResult,
    FileResult,
    MessageResult,
    ObjectRef,
    Outcome,
    ParsedCsv,
    QueueMessage,
)

# S3 error codes for which a retry can never succeed.
NON_RETRIABLE_S3_CODES = frozenset(
    {
        "NoSuchKey",
        "NoSuchBucket",
        "404",
        "NotFound",
        "AccessDenied",
        "403",
        "Forbidden",
        "AllAccessDisabled",
        "InvalidObjectState",
    }
)

METRICS_NAMESPACE = "CsvIngestPipeline"

# DynamoDB item limits; rows over them are rejected on every attempt.
MAX_KEY_BYTES = 2048
MAX_ITEM_BYTES = 400 * 1024

# SQS DeleteMessageBatch accepts at most 10 entries.
DELETE_BATCH_LIMIT = 10
DELETE_ATTEMPTS = 3

# Generated identifiers are derived from the object URI and the row ordinal, so a
# redelivered file overwrites the same items instead of creating new ones.
ROW_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "csv-ingest/row-id")


# --- Notification decoding ---


def _object_refs_from_s3_event(event: Dict[str, Any]) -> List[ObjectRef]:
    refs = []
    for record in event["Records"]:
        event_name = record.get("eventName", "")
        if not event_name.startswith("ObjectCreated"):
            continue
        s3 = record["s3"]
        obj = s3["object"]
        refs.append(
            ObjectRef(
                bucket=s3["bucket"]["name"],
                key=unquote_plus(obj["key"]),
                size=obj.get("size"),
                event_name=event_name,
                etag=obj.get("eTag"),
            )
        )
    return refs


def decode_notification(body: str) -> List[ObjectRef]:
    """
    Extracts object references from a queue message body.

    The queue is fed through a topic, so the store notification usually arrives
    wrapped in an SNS envelope whose `Message` field holds the serialized S3
    event. The decoder tries the direct S3 event shape first and falls back to
    the SNS envelope, so raw-message delivery and direct bucket-to-queue wiring
    decode to the same references.

    Args:
        body: The raw SQS message body.

    Returns:
        One ObjectRef per ObjectCreated record. Empty for S3 test events.

    Raises:
        MalformedNotificationError: If the body matches neither shape.
    """
    try:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise MalformedNotificationError(f"Notification is not a JSON object: {type(payload).__name__}")

        if payload.get("Type") == "Notification" and isinstance(payload.get("Message"), str):
            payload = json.loads(payload["Message"])
            if not isinstance(payload, dict):
                raise MalformedNotificationError("SNS Message does not contain a JSON object.")

        if payload.get("Event") == "s3:TestEvent":
            return []

        if "Records" in payload:
            return _object_refs_from_s3_event(payload)
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        raise MalformedNotificationError(f"Could not decode notification: {e!r}") from e

    raise MalformedNotificationError("Body is neither an S3 event nor an SNS notification.")


# --- Object fetch ---


def fetch_object(s3_client: S3Client, ref: ObjectRef) -> bytes:
    """
    Reads the full content of the referenced object.

    Raises:
        ObjectFetchError: The object is missing or forbidden (non-retriable).
        ObjectUnavailableError: Any other store failure (retriable).
    """
    try:
        response = s3_client.get_object(Bucket=ref.bucket, Key=ref.key)
        return response["Body"].read()
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in NON_RETRIABLE_S3_CODES:
            raise ObjectFetchError(f"Cannot fetch {ref.uri}: {code}") from e
        raise ObjectUnavailableError(f"Transient error fetching {ref.uri}: {code}") from e
    except BotoCoreError as e:
        raise ObjectUnavailableError(f"Transient error fetching {ref.uri}: {e}") from e


# --- CSV parsing ---


def generate_row_id(ref: ObjectRef, ordinal: int) -> str:
    """Returns a unique, redelivery-stable identifier for a data row."""
    return str(uuid.uuid5(ROW_ID_NAMESPACE, f"{ref.uri}#{ordinal}"))


def item_size(row: Dict[str, str]) -> int:
    """Approximate DynamoDB item size: UTF-8 bytes of every attribute name and string value."""
    return sum(len(name.encode("utf-8")) + len(value.encode("utf-8")) for name, value in row.items())


def _read_header(reader) -> List[str]:
    for raw in reader:
        if not any(cell.strip() for cell in raw):
            continue
        header = [name.strip() for name in raw]
        if any(not name for name in header):
            raise MalformedCsvError(f"Header contains a blank column name: {raw}")
        if len(set(header)) != len(header):
            raise MalformedCsvError(f"Header contains duplicate column names: {raw}")
        return header
    raise MalformedCsvError("File has no header row.")


def parse_csv(content: bytes, ref: ObjectRef, id_field: str, logger: Optional[Logger] = None) -> ParsedCsv:
    """
    Parses CSV bytes into row records ready for upsert.

    The first non-blank line is the header. Every later line is one record;
    records with the wrong field count, broken quoting, NUL bytes, or a key or
    item size the table would always reject are skipped and counted. Rows with
    an empty or missing identifier receive a generated one.

    Args:
        content: The raw object bytes (UTF-8, optional BOM).
        ref: The object the bytes came from, used to derive generated identifiers.
        id_field: The header name used as the table key.
        logger: Optional logger for per-row diagnostics.

    Returns:
        A ParsedCsv with the valid rows and the skipped-row count.

    Raises:
        MalformedCsvError: If the bytes are not UTF-8, the header is unusable,
                           or no row is valid.
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedCsvError(f"{ref.uri} is not valid UTF-8: {e}") from e

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    try:
        header = _read_header(reader)
    except csv.Error as e:
        raise MalformedCsvError(f"{ref.uri} header could not be parsed: {e}") from e

    parsed = ParsedCsv(header=header)
    ordinal = 0
    while True:
        try:
            raw = next(reader)
        except StopIteration:
            break
        except csv.Error as e:
            parsed.skipped_rows += 1
            if logger:
                logger.warning("Skipping unparseable CSV line.", extra={"uri": ref.uri, "line": reader.line_num, "error": str(e)})
            continue

        if not any(cell.strip() for cell in raw):
            continue

        ordinal += 1
        if len(raw) != len(header):
            parsed.skipped_rows += 1
            if logger:
                logger.warning(
                    "Skipping CSV row with wrong field count.",
                    extra={"uri": ref.uri, "line": reader.line_num, "expected": len(header), "actual": len(raw)},
                )
            continue

        if any("\x00" in cell for cell in raw):
            parsed.skipped_rows += 1
            if logger:
                logger.warning("Skipping CSV row containing NUL bytes.", extra={"uri": ref.uri, "line": reader.line_num})
            continue

        row = dict(zip(header, raw))
        identifier = row.get(id_field, "").strip()
        generated = not identifier
        if generated:
            identifier = generate_row_id(ref, ordinal)
        row[id_field] = identifier

        if len(identifier.encode("utf-8")) > MAX_KEY_BYTES or item_size(row) > MAX_ITEM_BYTES:
            parsed.skipped_rows += 1
            if logger:
                logger.warning(
                    "Skipping CSV row over the table's key or item size limit.",
                    extra={"uri": ref.uri, "line": reader.line_num, "item_bytes": item_size(row)},
                )
            continue

        parsed.generated_ids += generated
        parsed.rows.append(row)

    if not parsed.rows:
        raise MalformedCsvError(f"{ref.uri} contains no valid rows ({parsed.skipped_rows} skipped).")

    return parsed


# --- Table writes ---


def write_rows(table: Table, rows: List[Dict[str, str]], id_field: str) -> int:
    """
    Upserts rows into the table as pure overwrites keyed by identifier.

    The batch writer buffers PutItem requests into BatchWriteItem calls and
    resends unprocessed items. `overwrite_by_pkeys` de-duplicates the buffer so
    the last row for an identifier wins, which also keeps BatchWriteItem from
    rejecting a batch that contains the same key twice.

    Raises:
        RowRejectedError: The table refused the request as invalid (non-retriable).
        RowWriteError: Any other write failure after the client's own retries.
    """
    try:
        with table.batch_writer(overwrite_by_pkeys=[id_field]) as writer:
            for row in rows:
                writer.put_item(Item=row)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ValidationException":
            raise RowRejectedError(f"Table {table.name} rejected the rows: {e}") from e
        raise RowWriteError(f"Write to table {table.name} failed: {e}") from e
    except BotoCoreError as e:
        raise RowWriteError(f"Write to table {table.name} failed: {e}") from e
    return len(rows)


# --- Message processing ---


def _ingest_object(
    ref: ObjectRef, s3_client: S3Client, table: Table, id_field: str, logger: Logger
) -> FileResult:
    result = FileResult(ref=ref)
    try:
        content = fetch_object(s3_client, ref)
        parsed = parse_csv(content, ref, id_field, logger)
        result.rows_skipped = parsed.skipped_rows
        result.rows_written = write_rows(table, parsed.rows, id_field)
    except NonRetriableError as e:
        logger.error("Non-retriable failure ingesting object.", extra={"uri": ref.uri, "error": str(e)})
        result.error = str(e)
    except RetriableError as e:
        logger.warning("Retriable failure ingesting object.", extra={"uri": ref.uri, "error": str(e)})
        result.error = str(e)
        result.retriable = True
    else:
        logger.info(
            "Object ingested.",
            extra={
                "uri": ref.uri,
                "rows_written": result.rows_written,
                "rows_skipped": result.rows_skipped,
                "generated_ids": parsed.generated_ids,
            },
        )
    return result


def process_message(
    message: QueueMessage, s3_client: S3Client, table: Table, id_field: str, logger: Logger
) -> MessageResult:
    """
    Runs decode, fetch, parse and upsert for every object a message references.

    Steps for each object run strictly in sequence. The returned outcome decides
    the message's fate: RETRY if any object hit a retriable failure, FAILED if
    the envelope or any object hit a non-retriable failure, PROCESSED otherwise.

    Args:
        message: The queue message to process.
        s3_client: The boto3 S3 client used to fetch objects.
        table: The DynamoDB Table receiving the rows.
        id_field: The CSV column used as the table key.
        logger: The Powertools Logger instance for structured logging.

    Returns:
        A MessageResult describing the outcome and per-file counts.
    """
    context = {"messageId": message.message_id, "receiveCount": message.receive_count}
    if message.receive_count > 1:
        logger.warning("Processing redelivered message.", extra=context)

    try:
        refs = decode_notification(message.body)
    except MalformedNotificationError as e:
        logger.error("Malformed notification, message will be deleted.", extra={**context, "error": str(e)})
        return MessageResult(message=message, outcome=Outcome.FAILED, error=str(e))

    if not refs:
        logger.info("Notification references no created objects.", extra=context)
        return MessageResult(message=message, outcome=Outcome.PROCESSED)

    files = [_ingest_object(ref, s3_client, table, id_field, logger) for ref in refs]

    if any(f.retriable for f in files):
        outcome = Outcome.RETRY
    elif any(not f.ok for f in files):
        outcome = Outcome.FAILED
    else:
        outcome = Outcome.PROCESSED

    return MessageResult(message=message, outcome=outcome, files=files)


def process_batch(
    messages: List[QueueMessage], s3_client: S3Client, table: Table, id_field: str, logger: Logger
) -> BatchResult:
    """
    Processes messages independently, so one failure never affects the others.

    An unexpected exception for a message is logged and classified as RETRY;
    the visibility timeout then decides when it is attempted again.
    """
    batch = BatchResult()
    for message in messages:
        try:
            result = process_message(message, s3_client, table, id_field, logger)
        except Exception as e:
            logger.exception("Unexpected error processing message.", extra={"messageId": message.message_id})
            result = MessageResult(message=message, outcome=Outcome.RETRY, error=f"{type(e).__name__}: {e}")
        batch.results.append(result)
    return batch


# --- Acknowledgement ---


def _chunks(items: List[QueueMessage], size: int) -> Iterator[List[QueueMessage]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def delete_sqs_messages(
    sqs_client: SQSClient,
    queue_url: str,
    messages: List[QueueMessage],
    logger: Logger,
) -> int:
    """
    Acknowledges messages by deleting them in batches of up to 10.

    Entries the service fails server-side are resent, up to three attempts per
    batch, with exponential backoff and jitter between attempts. Entries failed
    as a sender fault (typically a receipt handle that expired because the
    visibility timeout ran out) are given up on immediately, since resending
    the same handle cannot succeed; those messages will simply be redelivered.

    Args:
        sqs_client: The boto3 SQS client.
        queue_url: The URL of the SQS queue.
        messages: The messages to delete.
        logger: The Powertools Logger instance for structured logging.

    Returns:
        The number of messages still undeleted once every batch is settled.
    """
    undeleted = 0
    for chunk in _chunks(messages, DELETE_BATCH_LIMIT):
        pending = {m.message_id: m.receipt_handle for m in chunk}

        for attempt in range(1, DELETE_ATTEMPTS + 1):
            entries = cast(
                List[DeleteMessageBatchRequestEntryTypeDef],
                [{"Id": msg_id, "ReceiptHandle": handle} for msg_id, handle in pending.items()],
            )
            try:
                response = sqs_client.delete_message_batch(QueueUrl=queue_url, Entries=entries)
            except ClientError as e:
                logger.error("DeleteMessageBatch call failed.", extra={"error": str(e), "attempt": attempt})
            else:
                failed = response.get("Failed", [])
                hopeless = [f for f in failed if f.get("SenderFault")]
                if hopeless:
                    logger.error("Messages could not be deleted; they will be redelivered.", extra={"failed": hopeless})
                    undeleted += len(hopeless)
                retry_ids = {f["Id"] for f in failed if not f.get("SenderFault")}
                pending = {msg_id: h for msg_id, h in pending.items() if msg_id in retry_ids}
                logger.info(f"Deleted {len(entries) - len(failed)} of {len(entries)} SQS messages in batch.")

            if not pending or attempt == DELETE_ATTEMPTS:
                break
            wait_time = 0.2 * (2 ** (attempt - 1)) + random.uniform(0.0, 0.1)
            logger.info(f"Waiting {wait_time:.2f}s before retrying {len(pending)} SQS deletes.")
            time.sleep(wait_time)

        if pending:
            logger.critical(
                f"{len(pending)} messages failed to be deleted after all retries.",
                extra={"failed_ids": list(pending)},
            )
            undeleted += len(pending)

    return undeleted


# --- Metrics ---

_COUNT_METRICS = {
    "FilesProcessed": "files_processed",
    "FilesFailed": "files_failed",
    "RowsWritten": "rows_written",
    "RowsSkipped": "rows_skipped",
    "MessagesRetried": "messages_retried",
    "DeleteFailures": "delete_failures",
}


def emit_metrics(environment: str, status: str, payload: Dict[str, Any]) -> None:
    """
    Publishes one CloudWatch Embedded Metric Format document to stdout.

    An EphemeralMetrics instance is used per call rather than the shared
    Metrics singleton, because the container worker flushes from several
    consumer threads at once. Payload keys that are not metrics (status,
    error details) are attached as metadata so they stay searchable in the logs.
    Dashboards and alarms should filter/group by the 'Environment' dimension.
    """
    metrics = EphemeralMetrics(namespace=METRICS_NAMESPACE)
    metrics.add_dimension(name="Environment", value=environment)
    metrics.add_metadata(key="Status", value=status)

    for name, key in _COUNT_METRICS.items():
        metrics.add_metric(name=name, unit=MetricUnit.Count, value=payload.get(key, 0))
    if "latency_ms" in payload:
        metrics.add_metric(name="ProcessingLatencyMs", unit=MetricUnit.Milliseconds, value=payload["latency_ms"])

    metric_keys = set(_COUNT_METRICS.values()) | {"latency_ms"}
    for key, value in payload.items():
        if key not in metric_keys:
            metrics.add_metadata(key=key, value=value)

    metrics.flush_metrics()
