"""Durable blob storage backends (S3 and Supabase Storage)."""
from dataclasses import dataclass
from typing import List, Optional, Protocol

import boto3
from botocore.exceptions import ClientError

from relay.config import settings
from relay.exceptions import StorageException, VersionConflict
from relay.utils.logger import log

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_CONFLICT_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412", "409"}


@dataclass
class StoredObject:
    data: bytes
    version: Optional[str] = None


class BlobStore(Protocol):
    """Key-value blob storage bound to one bucket.

    ``version`` tags enable optimistic concurrency where the backend
    supports conditional writes; backends without it return None.
    """

    bucket: str

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        if_version: Optional[str] = None,
        must_not_exist: bool = False,
    ) -> Optional[str]:
        ...

    def get(self, key: str) -> Optional[StoredObject]:
        ...

    def list(self, prefix: str) -> List[str]:
        ...

    def delete(self, key: str) -> None:
        ...

    def uri(self, key: str) -> str:
        ...


class S3BlobStore:
    """S3-backed blob store with ETag conditional writes."""

    def __init__(self, bucket: str, region: Optional[str] = None, client=None):
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region or settings.aws_region)

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get("Error", {}).get("Code", ""))

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        if_version: Optional[str] = None,
        must_not_exist: bool = False,
    ) -> Optional[str]:
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if if_version:
            params["IfMatch"] = if_version
        elif must_not_exist:
            params["IfNoneMatch"] = "*"

        try:
            response = self.client.put_object(**params)
        except ClientError as e:
            if self._error_code(e) in _CONFLICT_CODES:
                raise VersionConflict(key, original_exception=e) from e
            raise StorageException("put", key, original_exception=e) from e

        log.debug(f"[S3][PUT] s3://{self.bucket}/{key} ({len(data)} bytes)")
        return response.get("ETag")

    def get(self, key: str) -> Optional[StoredObject]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self._error_code(e) in _MISSING_CODES:
                return None
            raise StorageException("get", key, original_exception=e) from e

        return StoredObject(data=response["Body"].read(), version=response.get("ETag"))

    def list(self, prefix: str) -> List[str]:
        keys: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except ClientError as e:
            raise StorageException("list", prefix, original_exception=e) from e
        return keys

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise StorageException("delete", key, original_exception=e) from e

    def uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"


class SupabaseBlobStore:
    """Supabase Storage backend. No conditional writes: version is always None."""

    def __init__(self, bucket: str, client=None):
        self.bucket = bucket
        if client is None:
            from supabase import create_client

            client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        self.client = client
        log.info(f"Supabase blob store initialized (bucket: {bucket})")

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        if_version: Optional[str] = None,
        must_not_exist: bool = False,
    ) -> Optional[str]:
        try:
            self._bucket().upload(
                key,
                data,
                {"content-type": content_type, "upsert": "false" if must_not_exist else "true"},
            )
        except Exception as e:
            if must_not_exist and "exists" in str(e).lower():
                raise VersionConflict(key, original_exception=e) from e
            raise StorageException("put", key, original_exception=e) from e
        return None

    def get(self, key: str) -> Optional[StoredObject]:
        try:
            data = self._bucket().download(key)
        except Exception as e:
            message = str(e).lower()
            if "not found" in message or "404" in message:
                return None
            raise StorageException("get", key, original_exception=e) from e
        return StoredObject(data=data)

    def list(self, prefix: str) -> List[str]:
        folder = prefix.rstrip("/")
        try:
            items = self._bucket().list(folder)
        except Exception as e:
            raise StorageException("list", prefix, original_exception=e) from e
        return [f"{folder}/{item['name']}" for item in items or [] if item.get("name")]

    def delete(self, key: str) -> None:
        try:
            self._bucket().remove([key])
        except Exception as e:
            raise StorageException("delete", key, original_exception=e) from e

    def uri(self, key: str) -> str:
        return self._bucket().get_public_url(key)


def build_history_blob_store() -> BlobStore:
    """Blob store holding history documents and backups, per configuration."""
    backend = settings.history_store_backend.lower()
    if backend == "supabase":
        return SupabaseBlobStore(settings.supabase_history_bucket)
    if backend != "s3":
        log.warning(f"Unknown history_store_backend '{backend}', falling back to s3")
    return S3BlobStore(settings.history_bucket)


# Global instances
media_store: BlobStore = S3BlobStore(settings.media_bucket)
