"""Artifact publishers: upload a finished render and return a stable URL.

Publishing is not idempotent; a retried job may upload a second object.
The Job Store only ever records the last successful URL.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .models import StorageSettings

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
}


class PublishError(Exception):
    """Transport or storage failure while publishing an artifact."""


class ArtifactPublisher(ABC):
    """publish(local_artifact, key) -> stable_url"""

    @abstractmethod
    def publish(self, local_path: Path, key: str) -> str:
        """Upload local_path under key.

        Raises:
            PublishError: On any transport/storage failure
        """


class LocalPublisher(ArtifactPublisher):
    """Copies artifacts into a directory served at base_url."""

    def __init__(self, output_dir: str, base_url: str):
        self.output_dir = Path(output_dir)
        self.base_url = base_url.rstrip("/")

    def publish(self, local_path: Path, key: str) -> str:
        dest = self.output_dir / key
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, dest)
        except OSError as e:
            raise PublishError(f"Copy to {dest} failed: {e}") from e
        url = f"{self.base_url}/{key}"
        logger.info("Published %s -> %s", local_path.name, url)
        return url


class S3Publisher(ArtifactPublisher):
    """Uploads artifacts to S3 or an S3-compatible store (MinIO, R2)."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ):
        """
        Credentials come from the environment (AWS_ACCESS_KEY_ID, profiles,
        instance roles) through boto3's default chain.
        """
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.client = client or boto3.session.Session(region_name=region).client(
            "s3",
            endpoint_url=endpoint_url,
            config=BotoConfig(
                s3={"addressing_style": "path"} if endpoint_url else {},
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )

    def object_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def object_url(self, object_key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{object_key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{object_key}"
        region = self.region or "us-east-1"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{object_key}"

    def publish(self, local_path: Path, key: str) -> str:
        object_key = self.object_key(key)
        extra = {}
        content_type = CONTENT_TYPES.get(Path(local_path).suffix.lower())
        if content_type:
            extra["ContentType"] = content_type
        try:
            self.client.upload_file(str(local_path), self.bucket, object_key, ExtraArgs=extra or None)
        except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
            raise PublishError(f"Upload to s3://{self.bucket}/{object_key} failed: {e}") from e
        url = self.object_url(object_key)
        logger.info("Published %s -> %s", Path(local_path).name, url)
        return url


def build_publisher(settings: StorageSettings) -> ArtifactPublisher:
    if settings.backend == "s3":
        return S3Publisher(
            bucket=settings.bucket,
            prefix=settings.prefix,
            region=settings.region,
            endpoint_url=settings.endpoint_url,
            public_base_url=settings.public_base_url,
        )
    return LocalPublisher(settings.output_dir, settings.base_url)
