"""Worker for the CSV ingestion pipeline: S3 upload -> SNS -> SQS -> DynamoDB rows."""
