"""
Object storage backends for uploaded recordings.

Uploads overwrite an existing object with the same key, so re-running an
upload for the same track never duplicates data.
"""

import logging
import os
import shutil
from pathlib import Path

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import ConfigManager
from ..errors import TransportError

logger = logging.getLogger(__name__)


class S3ObjectStore:
    """S3-compatible bucket (AWS S3, OSS or MinIO through ``endpoint``)."""

    def __init__(
        self,
        bucket: str,
        endpoint: str = None,
        region: str = None,
        access_key: str = None,
        secret_key: str = None,
        public_base_url: str = None,
        url_expires: int = 604800,
    ):
        if not bucket:
            raise ValueError("S3 bucket is not configured")
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.url_expires = url_expires

        # endpoint_url may be empty on AWS-managed S3
        s3_kwargs = {}
        if endpoint:
            s3_kwargs["endpoint_url"] = endpoint
        if region:
            s3_kwargs["region_name"] = region

        self.client = boto3.client(
            "s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version="s3v4", s3={"addressing_style": "virtual"}),
            **s3_kwargs,
        )

    def upload(self, local_path: str, key: str) -> str:
        """
        Upload a local file to ``key``.

        Returns:
            URL the speech backend can download the object from

        Raises:
            TransportError: On any I/O, auth or service error
        """
        try:
            self.client.upload_file(local_path, self.bucket, key)
            if self.public_base_url:
                return f"{self.public_base_url}/{key}"
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_expires,
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise TransportError(f"Upload of {os.path.basename(local_path)} to {key} failed: {e}") from e


class LocalObjectStore:
    """Directory-backed store for development; returns ``file://`` URLs."""

    def __init__(self, root: str):
        self.root = Path(root)

    def upload(self, local_path: str, key: str) -> str:
        target = self.root / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, target)
        except OSError as e:
            raise TransportError(f"Upload of {os.path.basename(local_path)} to {key} failed: {e}") from e
        return target.resolve().as_uri()


def build_object_store():
    """Create the object store selected by ``STORAGE_BACKEND``."""
    backend = ConfigManager.get("STORAGE_BACKEND").lower()
    if backend == "s3":
        logger.info(f"Using S3 object store (bucket={ConfigManager.get('S3_BUCKET')})")
        return S3ObjectStore(
            bucket=ConfigManager.get("S3_BUCKET"),
            endpoint=ConfigManager.get("S3_ENDPOINT") or None,
            region=ConfigManager.get("S3_REGION") or None,
            access_key=ConfigManager.get("S3_ACCESS_KEY") or None,
            secret_key=ConfigManager.get("S3_SECRET_KEY") or None,
            public_base_url=ConfigManager.get("S3_PUBLIC_BASE_URL") or None,
            url_expires=ConfigManager.get_int("S3_URL_EXPIRES"),
        )
    if backend != "local":
        raise ValueError(f"Unknown storage backend: {backend}")
    logger.info(f"Using local object store at {ConfigManager.get('LOCAL_STORAGE_DIR')}")
    return LocalObjectStore(ConfigManager.get("LOCAL_STORAGE_DIR"))
