"""
Data models for the CSV Ingestion Pipeline.

This module defines the core data structures used to pass information between
different parts of the application. Using dataclasses and TypedDicts ensures
data contracts are explicit, statically checked by mypy, and self-documenting.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict


class SQSEventRecordAttributes(TypedDict, total=False):
    ApproximateReceiveCount: str
    SentTimestamp: str


class SQSEventRecord(TypedDict):
    """
    Represents the structure of a single SQS message record from a Lambda event.

    This provides static type checking for message attributes, ensuring that any
    access to keys like 'messageId' or 'receiptHandle' is validated by mypy.
    """

    messageId: str
    receiptHandle: str
    body: str
    attributes: SQSEventRecordAttributes
    # Other SQS attributes are available but are not used by this application.


@dataclass(frozen=True)
class ObjectRef:
    """A reference to one uploaded object, extracted from a store notification."""

    bucket: str
    key: str
    size: Optional[int] = None
    event_name: str = "ObjectCreated:Put"
    etag: Optional[str] = None

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


@dataclass
class QueueMessage:
    """
    A single unit of work taken from the queue, independent of how it was received.

    Lambda event records and ReceiveMessage responses use different key casing;
    both are normalised into this shape before any processing happens.

    Attributes:
        message_id: The SQS message ID.
        receipt_handle: The handle required to delete (acknowledge) the message.
        body: The raw message body, a single- or double-wrapped notification.
        receive_count: The approximate number of times the message has been received.
    """

    message_id: str
    receipt_handle: str
    body: str
    receive_count: int = 1

    @classmethod
    def from_event_record(cls, record: SQSEventRecord) -> "QueueMessage":
        attributes = record.get("attributes") or {}
        return cls(
            message_id=record["messageId"],
            receipt_handle=record["receiptHandle"],
            body=record["body"],
            receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
        )

    @classmethod
    def from_sqs_message(cls, message: Dict[str, Any]) -> "QueueMessage":
        attributes = message.get("Attributes") or {}
        return cls(
            message_id=message["MessageId"],
            receipt_handle=message["ReceiptHandle"],
            body=message["Body"],
            receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
        )


class Outcome(str, Enum):
    """What should happen to a message once processing has finished."""

    PROCESSED = "processed"  # all rows written; delete
    FAILED = "failed"  # non-retriable failure; delete and report
    RETRY = "retry"  # retriable failure; leave for the visibility timeout


@dataclass
class ParsedCsv:
    """
    The result of parsing one CSV object.

    Attributes:
        header: The field names from the header row, in file order.
        rows: Valid rows, each already carrying a non-empty identifier.
        skipped_rows: Count of rows dropped because they were malformed.
        generated_ids: Count of rows that received a generated identifier.
    """

    header: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)
    skipped_rows: int = 0
    generated_ids: int = 0


@dataclass
class FileResult:
    """Outcome of ingesting one object referenced by a message."""

    ref: ObjectRef
    rows_written: int = 0
    rows_skipped: int = 0
    error: Optional[str] = None
    retriable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class MessageResult:
    """Outcome of processing one queue message."""

    message: QueueMessage
    outcome: Outcome
    files: List[FileResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def should_delete(self) -> bool:
        return self.outcome is not Outcome.RETRY


@dataclass
class BatchResult:
    """
    Aggregated outcome of a batch of messages.

    This structure is critical for data loss prevention. It explicitly separates
    messages that can be safely deleted (fully written, or failed in a way a retry
    cannot fix) from messages that must stay on the queue for redelivery.

    Attributes:
        results: Per-message results, in the order the messages were received.
    """

    results: List[MessageResult] = field(default_factory=list)

    @property
    def messages_to_delete(self) -> List[QueueMessage]:
        return [r.message for r in self.results if r.should_delete]

    @property
    def messages_to_retry(self) -> List[QueueMessage]:
        return [r.message for r in self.results if not r.should_delete]

    @property
    def files_processed(self) -> int:
        return sum(1 for r in self.results for f in r.files if f.ok)

    @property
    def files_failed(self) -> int:
        return sum(1 for r in self.results for f in r.files if not f.ok)

    @property
    def rows_written(self) -> int:
        return sum(f.rows_written for r in self.results for f in r.files)

    @property
    def rows_skipped(self) -> int:
        return sum(f.rows_skipped for r in self.results for f in r.files)

    def summary(self) -> Dict[str, int]:
        return {
            "messages": len(self.results),
            "files_processed": self.files_processed,
            "files_failed": self.files_failed,
            "rows_written": self.rows_written,
            "rows_skipped": self.rows_skipped,
            "messages_retried": len(self.messages_to_retry),
        }
