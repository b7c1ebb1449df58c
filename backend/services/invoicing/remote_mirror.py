"""
Remote object-store mirror of the mileage cache database.

The mirror holds two objects in one bucket: the raw SQLite file and a JSON
metadata object ``{version, lastSync, lastModified, fileSize}``.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional, Protocol

import boto3
import structlog
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from backend.core.config import RemoteMirrorConfig
from .exceptions import RemoteMirrorError
from .models import CacheSyncMetadata

logger = structlog.get_logger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class RemoteMirror(Protocol):
    async def fetch_metadata(self) -> Optional[CacheSyncMetadata]:
        """Remote metadata, or None when no snapshot has been uploaded yet"""
        ...

    async def download_database(self, destination: Path) -> None:
        ...

    async def upload_database(self, source: Path) -> None:
        ...

    async def upload_metadata(self, metadata: CacheSyncMetadata) -> None:
        ...


class S3RemoteMirror:
    """RemoteMirror over an S3-compatible bucket using boto3"""

    def __init__(
        self,
        bucket: str,
        db_key: str = "mileage_cache.db",
        metadata_key: str = "mileage_cache.meta.json",
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        s3_client: Optional[Any] = None,
    ):
        self.bucket = bucket
        self.db_key = db_key
        self.metadata_key = metadata_key
        self._s3 = s3_client or boto3.client("s3", region_name=region_name, endpoint_url=endpoint_url)
        self._logger = logger.bind(component="s3_mirror", bucket=bucket)

    @classmethod
    def from_config(cls, config: RemoteMirrorConfig) -> "S3RemoteMirror":
        return cls(
            bucket=config.remote_mirror_bucket,
            db_key=config.remote_mirror_db_key,
            metadata_key=config.remote_mirror_metadata_key,
            region_name=config.remote_mirror_region,
            endpoint_url=config.remote_mirror_endpoint_url,
        )

    async def fetch_metadata(self) -> Optional[CacheSyncMetadata]:
        try:
            response = await asyncio.to_thread(
                self._s3.get_object, Bucket=self.bucket, Key=self.metadata_key
            )
            body = await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                self._logger.info("remote_metadata_absent", key=self.metadata_key)
                return None
            raise RemoteMirrorError(f"Failed to fetch {self.metadata_key}: {e}") from e
        except BotoCoreError as e:
            raise RemoteMirrorError(f"Failed to fetch {self.metadata_key}: {e}") from e

        try:
            return CacheSyncMetadata.from_dict(json.loads(body))
        except (ValueError, TypeError) as e:
            raise RemoteMirrorError(f"Remote metadata is not valid JSON: {e}") from e

    # download_file/upload_file go through s3transfer, which re-raises client
    # failures as boto3 errors (S3UploadFailedError, RetriesExceededError)
    async def download_database(self, destination: Path) -> None:
        try:
            await asyncio.to_thread(
                self._s3.download_file, self.bucket, self.db_key, str(destination)
            )
        except (ClientError, BotoCoreError, Boto3Error) as e:
            raise RemoteMirrorError(f"Failed to download {self.db_key}: {e}") from e
        self._logger.info("remote_database_downloaded", key=self.db_key, destination=str(destination))

    async def upload_database(self, source: Path) -> None:
        try:
            await asyncio.to_thread(
                self._s3.upload_file, str(source), self.bucket, self.db_key
            )
        except (ClientError, BotoCoreError, Boto3Error) as e:
            raise RemoteMirrorError(f"Failed to upload {self.db_key}: {e}") from e
        self._logger.info("remote_database_uploaded", key=self.db_key)

    async def upload_metadata(self, metadata: CacheSyncMetadata) -> None:
        body = json.dumps(metadata.to_dict(), indent=2).encode("utf-8")
        try:
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=self.bucket,
                Key=self.metadata_key,
                Body=body,
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError, Boto3Error) as e:
            raise RemoteMirrorError(f"Failed to upload {self.metadata_key}: {e}") from e
        self._logger.info("remote_metadata_uploaded", key=self.metadata_key, version=metadata.version)
