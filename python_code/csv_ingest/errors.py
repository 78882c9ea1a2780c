"""
Exception taxonomy for the CSV Ingestion Pipeline.

Every failure raised by the core logic is either non-retriable (the message is
deleted and the failure reported, because processing the same bytes again can
only fail the same way) or retriable (the message is left on the queue so the
visibility timeout triggers another attempt).
"""

from typing import Iterable


class IngestError(Exception):
    """Base class for all pipeline errors."""


class NonRetriableError(IngestError):
    """Processing cannot succeed on redelivery; delete the message."""


class RetriableError(IngestError):
    """A downstream dependency failed transiently; leave the message for redelivery."""


class MalformedNotificationError(NonRetriableError):
    """The message body is not a recognisable store notification."""


class ObjectFetchError(NonRetriableError):
    """The referenced object does not exist or cannot be read with our credentials."""


class MalformedCsvError(NonRetriableError):
    """The object is not a usable CSV file (undecodable, bad header, or no valid rows)."""


class RowRejectedError(NonRetriableError):
    """The table refused the rows as invalid; resending them cannot succeed."""


class ObjectUnavailableError(RetriableError):
    """The object store failed transiently (throttling, 5xx, network)."""


class RowWriteError(RetriableError):
    """A durable write to the table failed."""


class RetriableBatchError(RetriableError):
    """Raised by the Lambda handler so the event source returns undeleted messages."""

    def __init__(self, message_ids: Iterable[str]) -> None:
        self.message_ids = list(message_ids)
        super().__init__(f"{len(self.message_ids)} message(s) left for redelivery: {self.message_ids}")
