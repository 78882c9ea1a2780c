"""
A factory module for creating and providing boto3 clients.

This module is the core of the Dependency Injection (DI) pattern for the
application. It allows the Lambda handler and the container worker to receive
either real AWS clients or mocked clients during testing, based on the presence
of an environment variable. This makes the application's business logic fully
testable without making real AWS calls.
"""

import logging
import os
from typing import Optional, Tuple

import boto3
import botocore.config

from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table
from mypy_boto3_s3 import S3Client
from mypy_boto3_sqs import SQSClient

logger = logging.getLogger(__name__)

# A shared, robust retry configuration for boto3 clients that need to be
# resilient to transient network or server-side errors. Throttled table writes
# are retried here before they surface as a retriable failure.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)


def get_boto_clients(
    aws_region: Optional[str] = None,
) -> Tuple[S3Client, SQSClient, DynamoDBServiceResource]:
    """
    Returns a tuple of essential AWS service clients.

    This factory provides the core mechanism for dependency injection. It inspects
    the environment for a `USE_MOTO` flag. If present, it's assumed that `moto`
    is active and will intercept the `boto3` calls to return mocked clients.
    Otherwise, it creates real AWS clients.

    Args:
        aws_region: The region to bind every client to. Falls back to the
                    AWS_REGION environment variable.

    Returns:
        A tuple containing initialized boto3 clients in the following order:
        (s3_client, sqs_client, dynamodb_resource)
    """
    aws_region = aws_region or os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    s3_client: S3Client = boto3.client(
        "s3", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    sqs_client: SQSClient = boto3.client(
        "sqs", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    dynamodb_resource: DynamoDBServiceResource = boto3.resource(
        "dynamodb", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )

    return s3_client, sqs_client, dynamodb_resource


def get_table(aws_region: Optional[str], table_name: str) -> Table:
    """
    Returns a DynamoDB Table bound to a fresh resource.

    boto3 resources are not thread-safe, so each consumer thread in the worker
    pool calls this for its own Table instead of sharing one.
    """
    dynamodb_resource: DynamoDBServiceResource = boto3.resource(
        "dynamodb", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    return dynamodb_resource.Table(table_name)
