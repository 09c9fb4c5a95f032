"""
Optional S3 mirror for uploaded documents.

When ``storage.s3_bucket`` is set, every upload is copied to
``s3://<bucket>/<prefix>/<user>/<file>`` and downloads are served through
presigned URLs. Without a bucket (or without credentials) the service reports
itself unavailable and documents are served from local disk only.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

logger = logging.getLogger(__name__)


class S3Service:
    def __init__(self, bucket: str, prefix: str = "documents", client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client

    def _get_client(self):
        """
        Get or create the S3 client.

        Returns:
            boto3 S3 client or None if the bucket is not configured

        Note:
            Credentials are not probed here; credential errors surface on the
            first upload.
        """
        if self._client is None:
            if not self.bucket:
                return None
            try:
                self._client = boto3.client("s3")
            except BotoCoreError as e:
                logger.warning(f"Failed to create S3 client: {e}")
                self._client = None
        return self._client

    @property
    def enabled(self) -> bool:
        return bool(self.bucket) and self._get_client() is not None

    def key_for(self, user_id: str, filename: str) -> str:
        return f"{self.prefix}/{user_id}/{filename}" if self.prefix else f"{user_id}/{filename}"

    def upload(self, path: Path, key: str) -> bool:
        """
        Upload a stored document.

        Returns:
            True if the upload succeeded; False when S3 is unavailable or rejects it
        """
        client = self._get_client()
        if client is None:
            return False

        try:
            logger.info(f"Uploading {path} to s3://{self.bucket}/{key}")
            client.upload_file(str(path), self.bucket, key)
            return True
        except (ClientError, NoCredentialsError) as e:
            logger.error(f"S3 upload failed: {e}")
            return False

    def delete(self, key: str) -> None:
        client = self._get_client()
        if client is None:
            return
        try:
            client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, NoCredentialsError) as e:
            logger.warning(f"S3 delete failed for {key}: {e}")

    def presigned_url(self, key: str, expiration: int = 3600) -> Optional[str]:
        """
        Generate a time-limited download URL.

        Returns:
            Presigned URL string, or None if generation fails
        """
        client = self._get_client()
        if client is None:
            return None

        try:
            return client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expiration,
            )
        except (ClientError, NoCredentialsError) as e:
            logger.error(f"Failed to generate presigned URL: {e}")
            return None
