import boto3
import pytest
from aws_lambda_powertools import Logger
from moto import mock_aws

from tests.helpers import BUCKET, QUEUE_NAME, REGION, TABLE_NAME


@pytest.fixture(scope="function", autouse=True)
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto - applied automatically to all tests."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("USE_MOTO", "1")


@pytest.fixture(autouse=True)
def moto_aws(aws_credentials):
    with mock_aws():
        yield


@pytest.fixture
def logger():
    return Logger(service="csv-ingest-test")


@pytest.fixture
def s3():
    client = boto3.client("s3", region_name=REGION)
    client.create_bucket(Bucket=BUCKET)
    return client


@pytest.fixture
def table():
    ddb = boto3.resource("dynamodb", region_name=REGION)
    return ddb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def missing_table():
    """A Table handle whose table was never created; every write fails."""
    return boto3.resource("dynamodb", region_name=REGION).Table("DoesNotExist")


@pytest.fixture
def sqs():
    return boto3.client("sqs", region_name=REGION)


@pytest.fixture
def queue_url(sqs):
    return sqs.create_queue(QueueName=QUEUE_NAME, Attributes={"VisibilityTimeout": "60"})["QueueUrl"]


@pytest.fixture
def env_vars(monkeypatch, queue_url):
    """Set up the environment the infrastructure injects into the worker."""
    monkeypatch.setenv("QUEUE_URL", queue_url)
    monkeypatch.setenv("TABLE_NAME", TABLE_NAME)
    monkeypatch.setenv("ENVIRONMENT", "test")
