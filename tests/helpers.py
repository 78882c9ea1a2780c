"""Payload builders shared by the test modules."""

import json
from dataclasses import dataclass

BUCKET = "csv-uploads"
TABLE_NAME = "Personas"
QUEUE_NAME = "csv-process-queue"
REGION = "us-east-1"

PEOPLE_CSV = b"id,name\n1,Alice\n,Bob\n3,Carol\n"


def s3_event(key, bucket=BUCKET, event_name="ObjectCreated:Put", size=42):
    """A direct S3 notification, as delivered straight to a queue."""
    return {
        "Records": [
            {
                "eventVersion": "2.1",
                "eventSource": "aws:s3",
                "awsRegion": REGION,
                "eventName": event_name,
                "s3": {
                    "s3SchemaVersion": "1.0",
                    "bucket": {"name": bucket, "arn": f"arn:aws:s3:::{bucket}"},
                    "object": {"key": key, "size": size, "eTag": "0123456789abcdef"},
                },
            }
        ]
    }


def sns_wrap(payload):
    """Wraps a payload the way an SNS topic delivers it to an SQS subscription."""
    return {
        "Type": "Notification",
        "MessageId": "7a1b0b4e-0000-0000-0000-000000000000",
        "TopicArn": f"arn:aws:sns:{REGION}:123456789012:CsvUploadTopic",
        "Subject": "Amazon S3 Notification",
        "Message": json.dumps(payload),
        "Timestamp": "2026-10-19T09:00:00.000Z",
    }


def sns_body(key, bucket=BUCKET):
    return json.dumps(sns_wrap(s3_event(key, bucket)))


def queue_counts(sqs, queue_url):
    """Returns (visible, in_flight) message counts for a queue."""
    attrs = sqs.get_queue_attributes(
        QueueUrl=queue_url,
        AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
    )["Attributes"]
    return int(attrs["ApproximateNumberOfMessages"]), int(attrs["ApproximateNumberOfMessagesNotVisible"])


def table_state(table):
    """All items in the table, sorted by id, for before/after comparisons."""
    return sorted(table.scan()["Items"], key=lambda item: item["id"])


@dataclass
class LambdaContext:
    function_name: str = "csv-ingest"
    memory_limit_in_mb: int = 512
    invoked_function_arn: str = f"arn:aws:lambda:{REGION}:123456789012:function:csv-ingest"
    aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"
