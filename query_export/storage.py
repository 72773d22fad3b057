from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import StorageError
from .logging_utils import get_logger, log_json

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def _error_code(e: ClientError) -> str:
    return str((e.response or {}).get("Error", {}).get("Code", ""))


class ObjectStorage:
    """Narrow S3 wrapper: put, exists, delete, list."""

    def __init__(self, region_name: Optional[str] = None, client: Any = None):
        if client is None:
            session = boto3.session.Session(region_name=region_name) if region_name else boto3.session.Session()
            client = session.client("s3")
        self.client = client
        self.logger = get_logger(__name__)

    @staticmethod
    def public_url(bucket: str, key: str) -> str:
        return f"https://{bucket}.s3.amazonaws.com/{key}"

    def upload(
        self,
        bucket: str,
        local_path: str | Path,
        remote_path: str,
        make_public: bool = False,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        local = Path(local_path)
        if not local.is_file():
            raise StorageError(f"Local file not found: {local}")

        key = remote_path.lstrip("/")
        extra_args: Dict[str, Any] = {"ContentType": "text/csv"}
        if metadata:
            extra_args["Metadata"] = {str(k): str(v) for k, v in metadata.items()}
        if make_public:
            extra_args["ACL"] = "public-read"

        log_json(self.logger, logging.INFO, "upload_started", bucket=bucket, local_path=str(local), key=key)
        try:
            self.client.upload_file(str(local), bucket, key, ExtraArgs=extra_args)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload to s3://{bucket}/{key} failed: {e}") from e

        url = self.public_url(bucket, key)
        log_json(
            self.logger,
            logging.INFO,
            "upload_complete",
            uri=f"s3://{bucket}/{key}",
            url=url,
            public=make_public,
            bytes=local.stat().st_size,
        )
        return url

    def exists(self, bucket: str, path: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=path.lstrip("/"))
            return True
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise StorageError(f"Cannot check s3://{bucket}/{path}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Cannot check s3://{bucket}/{path}: {e}") from e

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise StorageError(f"Cannot check bucket {bucket}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Cannot check bucket {bucket}: {e}") from e

    def delete(self, bucket: str, path: str) -> None:
        key = path.lstrip("/")
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete of s3://{bucket}/{key} failed: {e}") from e
        log_json(self.logger, logging.INFO, "object_deleted", bucket=bucket, key=key)

    def list_files(self, bucket: str, prefix: Optional[str] = None) -> List[str]:
        keys: List[str] = []
        kwargs: Dict[str, Any] = {"Bucket": bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**kwargs):
                keys.extend(obj["Key"] for obj in page.get("Contents") or [])
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Listing s3://{bucket}/{prefix or ''} failed: {e}") from e
        return keys
