"""State-store primitives: versioned blob store plus locking key-value table.

``AwsBackendStore`` implements them on S3 and DynamoDB with boto3. Every
call runs in a worker thread. Creation calls are compare-and-create: they
report whether this call created the resource, and "already owned by you"
responses count as existing rather than as failures. Bucket hardening reads
each setting first and applies only what is missing, so an interrupted
creation is completed by the next call.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from deploy_orchestrator.domain.models import Credential
from deploy_orchestrator.errors import OrchestratorError, TransientInfraError
from deploy_orchestrator.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "ProvisionedThroughputExceededException",
        "ServiceUnavailable",
        "InternalError",
        "InternalServerError",
        "OperationAborted",
    }
)

_MISSING_BUCKET = frozenset({"404", "NoSuchBucket", "NotFound"})

_PUBLIC_ACCESS_BLOCK = {
    "BlockPublicAcls": True,
    "IgnorePublicAcls": True,
    "BlockPublicPolicy": True,
    "RestrictPublicBuckets": True,
}

_ENCRYPTION = {
    "Rules": [
        {
            "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"},
            "BucketKeyEnabled": True,
        }
    ]
}


class BackendStore(Protocol):
    async def bucket_tags(self, name: str) -> dict[str, str] | None:
        """Tags of the bucket, or None when it does not exist."""

    async def create_bucket(self, name: str, tags: dict[str, str]) -> bool:
        """Create a versioned, encrypted, private bucket. False if it existed."""

    async def harden_bucket(self, name: str, tags: dict[str, str]) -> list[str]:
        """Apply only the bucket settings that are missing.

        Returns the names of the settings applied, empty when the bucket was
        already versioned, private, encrypted and tagged.
        """

    async def delete_bucket(self, name: str) -> bool: ...

    async def table_exists(self, name: str) -> bool: ...

    async def create_table(self, name: str, tags: dict[str, str]) -> bool:
        """Create the lock table. False if it existed."""

    async def delete_table(self, name: str) -> bool: ...

    async def acquire_lock(self, table: str, key: str, owner: str) -> str | None:
        """Conditionally write the lock record.

        Returns None on success, otherwise the current holder.
        """

    async def release_lock(self, table: str, key: str, owner: str) -> None: ...


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


def _translate(exc: Exception, action: str) -> OrchestratorError:
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        if code in _TRANSIENT_CODES:
            return TransientInfraError(f"{action} throttled or unavailable: {code}")
        return OrchestratorError(f"{action} failed: {code}", "backend_error")
    return TransientInfraError(f"{action} failed: {exc}")


class AwsBackendStore:
    """S3 and DynamoDB backed state store for one account and region."""

    def __init__(
        self,
        region: str,
        credential: Credential | None = None,
        timeout_seconds: int = 30,
    ) -> None:
        self._region = region
        self._credential = credential
        self._timeout = timeout_seconds
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _client(self, service: str) -> Any:
        with self._lock:
            client = self._clients.get(service)
            if client is not None:
                return client
            if self._credential is not None:
                session = boto3.Session(
                    aws_access_key_id=self._credential.access_key_id,
                    aws_secret_access_key=self._credential.secret_access_key,
                    aws_session_token=self._credential.session_token,
                    region_name=self._region,
                )
            else:
                session = boto3.Session(region_name=self._region)
            client = session.client(
                service,
                config=Config(
                    read_timeout=self._timeout,
                    connect_timeout=self._timeout,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
            self._clients[service] = client
            return client

    async def _run(self, action: str, fn: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, action) from exc

    # Blob store

    async def bucket_tags(self, name: str) -> dict[str, str] | None:
        return await self._run(f"Describe bucket {name}", self._bucket_tags_sync, name)

    def _bucket_tags_sync(self, name: str) -> dict[str, str] | None:
        s3 = self._client("s3")
        if not self._bucket_exists_sync(s3, name):
            return None
        return self._current_tags_sync(s3, name)

    def _bucket_exists_sync(self, s3: Any, name: str) -> bool:
        try:
            s3.head_bucket(Bucket=name)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_BUCKET:
                return False
            raise
        return True

    def _current_tags_sync(self, s3: Any, name: str) -> dict[str, str]:
        try:
            response = s3.get_bucket_tagging(Bucket=name)
        except ClientError as exc:
            if _error_code(exc) == "NoSuchTagSet":
                return {}
            raise
        return {tag["Key"]: tag["Value"] for tag in response.get("TagSet", [])}

    async def create_bucket(self, name: str, tags: dict[str, str]) -> bool:
        return await self._run(f"Create bucket {name}", self._create_bucket_sync, name, tags)

    def _create_bucket_sync(self, name: str, tags: dict[str, str]) -> bool:
        s3 = self._client("s3")
        params: dict[str, Any] = {"Bucket": name}
        if self._region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        elif self._bucket_exists_sync(s3, name):
            # us-east-1 answers 200 to CreateBucket on a bucket this account owns.
            logger.info("Bucket already owned by this account: %s", name)
            return False
        try:
            s3.create_bucket(**params)
        except ClientError as exc:
            if _error_code(exc) == "BucketAlreadyOwnedByYou":
                logger.info("Bucket already owned by this account: %s", name)
                return False
            raise

        self._harden_bucket_sync(name, tags)
        logger.info("Created state bucket %s (%s)", name, self._region)
        return True

    async def harden_bucket(self, name: str, tags: dict[str, str]) -> list[str]:
        return await self._run(f"Harden bucket {name}", self._harden_bucket_sync, name, tags)

    def _harden_bucket_sync(self, name: str, tags: dict[str, str]) -> list[str]:
        s3 = self._client("s3")
        applied: list[str] = []

        if s3.get_bucket_versioning(Bucket=name).get("Status") != "Enabled":
            s3.put_bucket_versioning(
                Bucket=name, VersioningConfiguration={"Status": "Enabled"}
            )
            applied.append("versioning")

        try:
            block = s3.get_public_access_block(Bucket=name)["PublicAccessBlockConfiguration"]
        except ClientError as exc:
            if _error_code(exc) != "NoSuchPublicAccessBlockConfiguration":
                raise
            block = {}
        if any(not block.get(flag) for flag in _PUBLIC_ACCESS_BLOCK):
            s3.put_public_access_block(
                Bucket=name, PublicAccessBlockConfiguration=_PUBLIC_ACCESS_BLOCK
            )
            applied.append("public_access_block")

        try:
            s3.get_bucket_encryption(Bucket=name)
        except ClientError as exc:
            if _error_code(exc) != "ServerSideEncryptionConfigurationNotFoundError":
                raise
            s3.put_bucket_encryption(
                Bucket=name, ServerSideEncryptionConfiguration=_ENCRYPTION
            )
            applied.append("encryption")

        current = self._current_tags_sync(s3, name)
        if any(current.get(key) != value for key, value in tags.items()):
            merged = {**current, **tags}
            s3.put_bucket_tagging(
                Bucket=name,
                Tagging={"TagSet": [{"Key": k, "Value": v} for k, v in sorted(merged.items())]},
            )
            applied.append("tags")
        return applied

    async def delete_bucket(self, name: str) -> bool:
        return await self._run(f"Delete bucket {name}", self._delete_bucket_sync, name)

    def _delete_bucket_sync(self, name: str) -> bool:
        s3 = self._client("s3")
        paginator = s3.get_paginator("list_object_versions")
        try:
            for page in paginator.paginate(Bucket=name):
                objects = [
                    {"Key": item["Key"], "VersionId": item["VersionId"]}
                    for item in page.get("Versions", []) + page.get("DeleteMarkers", [])
                ]
                if objects:
                    s3.delete_objects(Bucket=name, Delete={"Objects": objects, "Quiet": True})
            s3.delete_bucket(Bucket=name)
        except ClientError as exc:
            if _error_code(exc) == "NoSuchBucket":
                return False
            raise
        logger.info("Deleted state bucket %s", name)
        return True

    # Lock table

    async def table_exists(self, name: str) -> bool:
        return await self._run(f"Describe table {name}", self._table_exists_sync, name)

    def _table_exists_sync(self, name: str) -> bool:
        dynamodb = self._client("dynamodb")
        try:
            dynamodb.describe_table(TableName=name)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return False
            raise
        return True

    async def create_table(self, name: str, tags: dict[str, str]) -> bool:
        return await self._run(f"Create table {name}", self._create_table_sync, name, tags)

    def _create_table_sync(self, name: str, tags: dict[str, str]) -> bool:
        dynamodb = self._client("dynamodb")
        try:
            dynamodb.create_table(
                TableName=name,
                AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
                KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
                BillingMode="PAY_PER_REQUEST",
                Tags=[{"Key": k, "Value": v} for k, v in sorted(tags.items())],
            )
        except ClientError as exc:
            if _error_code(exc) == "ResourceInUseException":
                logger.info("Lock table already exists: %s", name)
                return False
            raise
        dynamodb.get_waiter("table_exists").wait(TableName=name)
        logger.info("Created lock table %s (%s)", name, self._region)
        return True

    async def delete_table(self, name: str) -> bool:
        return await self._run(f"Delete table {name}", self._delete_table_sync, name)

    def _delete_table_sync(self, name: str) -> bool:
        dynamodb = self._client("dynamodb")
        try:
            dynamodb.delete_table(TableName=name)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return False
            raise
        logger.info("Deleted lock table %s", name)
        return True

    async def acquire_lock(self, table: str, key: str, owner: str) -> str | None:
        return await self._run(
            f"Acquire lock {table}/{key}", self._acquire_lock_sync, table, key, owner
        )

    def _acquire_lock_sync(self, table: str, key: str, owner: str) -> str | None:
        dynamodb = self._client("dynamodb")
        try:
            dynamodb.put_item(
                TableName=table,
                Item={
                    "LockID": {"S": key},
                    "Owner": {"S": owner},
                    "AcquiredAt": {"S": utc_now_iso()},
                },
                ConditionExpression="attribute_not_exists(LockID) OR #owner = :owner",
                ExpressionAttributeNames={"#owner": "Owner"},
                ExpressionAttributeValues={":owner": {"S": owner}},
            )
        except ClientError as exc:
            if _error_code(exc) != "ConditionalCheckFailedException":
                raise
            current = dynamodb.get_item(
                TableName=table, Key={"LockID": {"S": key}}, ConsistentRead=True
            ).get("Item", {})
            return current.get("Owner", {}).get("S", "unknown")
        return None

    async def release_lock(self, table: str, key: str, owner: str) -> None:
        await self._run(
            f"Release lock {table}/{key}", self._release_lock_sync, table, key, owner
        )

    def _release_lock_sync(self, table: str, key: str, owner: str) -> None:
        dynamodb = self._client("dynamodb")
        try:
            dynamodb.delete_item(
                TableName=table,
                Key={"LockID": {"S": key}},
                ConditionExpression="#owner = :owner",
                ExpressionAttributeNames={"#owner": "Owner"},
                ExpressionAttributeValues={":owner": {"S": owner}},
            )
        except ClientError as exc:
            if _error_code(exc) != "ConditionalCheckFailedException":
                raise
            logger.warning("Lock %s/%s was not held by %s at release", table, key, owner)
