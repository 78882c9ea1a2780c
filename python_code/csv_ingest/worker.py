"""
Containerized SQS consumer for the CSV Ingestion Pipeline.

Each container runs one or more independent receive-process-acknowledge loops.
There is no coordination between loops or between containers: the queue's
visibility timeout is the only mutual exclusion, so a message abandoned by a
crashed or slow worker simply becomes visible to another one.

Lifecycle of one loop iteration: ReceiveMessage (long poll) -> process_batch ->
DeleteMessageBatch for everything that must not be redelivered -> metrics.

Usage:
    csv-ingest-worker            # reads QUEUE_URL, TABLE_NAME, AWS_REGION, ...
"""

import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import Table
from mypy_boto3_s3 import S3Client
from mypy_boto3_sqs import SQSClient

from . import clients, core
from .config import Settings
from .model import BatchResult, QueueMessage

logger = Logger(service="csv-ingest")


class ShutdownSignal:
    """
    Handles SIGTERM/SIGINT for graceful shutdown.

    Sets an event that every consumer loop checks between polls, so in-flight
    batches finish (and are acknowledged) before the process exits. ECS sends
    SIGTERM when a task is stopped.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._original_sigterm: Any = None
        self._original_sigint: Any = None

    def install(self) -> None:
        self._original_sigterm = signal.signal(signal.SIGTERM, self._handle_signal)
        self._original_sigint = signal.signal(signal.SIGINT, self._handle_signal)
        logger.debug("Signal handlers installed (SIGTERM, SIGINT)")

    def uninstall(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, initiating graceful shutdown...")
        self._event.set()

    def request(self) -> None:
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class QueueWorker:
    """
    One receive-process-acknowledge loop.

    Args:
        settings: Runtime settings (queue, table, batching).
        s3_client: The boto3 S3 client; shared across loops, clients are thread-safe.
        sqs_client: The boto3 SQS client; shared across loops.
        table: The DynamoDB Table for this loop only.
        shutdown: The shared shutdown signal.
        worker_id: Label used in log context.
    """

    def __init__(
        self,
        settings: Settings,
        s3_client: S3Client,
        sqs_client: SQSClient,
        table: Table,
        shutdown: Optional[ShutdownSignal] = None,
        worker_id: str = "worker-0",
    ) -> None:
        self.settings = settings
        self.s3_client = s3_client
        self.sqs_client = sqs_client
        self.table = table
        self.shutdown = shutdown or ShutdownSignal()
        self.worker_id = worker_id

    def receive(self) -> List[QueueMessage]:
        response = self.sqs_client.receive_message(
            QueueUrl=self.settings.queue_url,
            MaxNumberOfMessages=self.settings.batch_size,
            WaitTimeSeconds=self.settings.wait_time_seconds,
            AttributeNames=["ApproximateReceiveCount"],
        )
        return [QueueMessage.from_sqs_message(m) for m in response.get("Messages", [])]

    def poll_once(self) -> int:
        """
        Receives and fully handles one batch.

        Returns:
            The number of messages received (0 when the long poll timed out).
        """
        messages = self.receive()
        if not messages:
            return 0

        start_time = datetime.now(timezone.utc)
        logger.info(f"Received {len(messages)} messages to process.", extra={"worker_id": self.worker_id})

        batch: BatchResult = core.process_batch(
            messages, self.s3_client, self.table, self.settings.id_field, logger
        )
        delete_failures = core.delete_sqs_messages(
            self.sqs_client, self.settings.queue_url, batch.messages_to_delete, logger
        )

        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        payload = {**batch.summary(), "delete_failures": delete_failures, "latency_ms": latency_ms}
        status = "PartialFailure" if batch.messages_to_retry else "Success"
        core.emit_metrics(self.settings.environment, status, payload)
        return len(messages)

    def run(self) -> None:
        """
        Polls until shutdown is requested.

        A failed iteration is logged and followed by a back-off; it never stops
        the loop. Messages it could not acknowledge reappear after their
        visibility timeout.
        """
        logger.info("Starting worker loop.", extra={"worker_id": self.worker_id, "queue_url": self.settings.queue_url})
        while not self.shutdown.requested:
            try:
                self.poll_once()
            except (ClientError, BotoCoreError) as e:
                logger.error(f"AWS error in worker loop, will retry: {e}", extra={"worker_id": self.worker_id})
                self.shutdown.wait(self.settings.error_backoff_seconds)
            except Exception:
                logger.exception("Unexpected error in worker loop.", extra={"worker_id": self.worker_id})
                self.shutdown.wait(self.settings.error_backoff_seconds)
        logger.info("Worker loop stopped.", extra={"worker_id": self.worker_id})


def run_pool(
    settings: Settings,
    s3_client: S3Client,
    sqs_client: SQSClient,
    shutdown: ShutdownSignal,
    table_factory: Optional[Callable[[], Table]] = None,
) -> None:
    """
    Runs `settings.worker_threads` independent loops and blocks until they all stop.

    Each loop gets its own Table because boto3 resources are not thread-safe.
    """
    table_factory = table_factory or (lambda: clients.get_table(settings.aws_region, settings.table_name))
    workers = [
        QueueWorker(settings, s3_client, sqs_client, table_factory(), shutdown, worker_id=f"worker-{i}")
        for i in range(settings.worker_threads)
    ]
    with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="csv-ingest") as executor:
        futures = [executor.submit(w.run) for w in workers]
        for future in futures:
            future.result()


def main() -> int:
    """Console entry point for the container image. Returns the process exit code."""
    try:
        settings = Settings.from_env()
    except ValueError as e:
        logger.critical(str(e))
        return 2

    logger.setLevel(settings.log_level)
    s3_client, sqs_client, _ = clients.get_boto_clients(settings.aws_region)

    shutdown = ShutdownSignal()
    shutdown.install()
    try:
        run_pool(settings, s3_client, sqs_client, shutdown)
    except Exception as e:
        logger.critical(f"Fatal error in worker pool: {e}", exc_info=True)
        return 1
    finally:
        shutdown.uninstall()

    logger.info("Worker shut down cleanly.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
