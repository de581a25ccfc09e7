"""
Amazon S3 wrapper for content-addressed image storage.
"""

import hashlib
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .logging_config import get_logger

logger = get_logger(__name__)


class S3Error(Exception):
    """Custom exception for S3 errors."""
    pass


def content_key(data: bytes, extension: str, prefix: str = 'images/') -> str:
    """Object key derived from the SHA-256 of the bytes, so identical uploads share one key."""
    digest = hashlib.sha256(data).hexdigest()
    return f'{prefix}{digest}.{extension.lstrip(".").lower()}'


class S3ObjectStore:
    """Content-addressed object store. Uploading identical bytes twice is a no-op in effect."""

    def __init__(self, config: S3Config, client: Optional[Any] = None):
        self.config = config
        self.client = client or boto3.client('s3', region_name=config.region)

        logger.info(f'Initialized S3 object store for bucket: {config.bucket}')

    def put(self, data: bytes, content_type: str, extension: str) -> str:
        """
        Upload bytes and return the content reference.

        Args:
            data: Raw object bytes
            content_type: MIME type stored with the object
            extension: File extension without the dot

        Returns:
            HTTPS URL of the object, which embeds the content hash

        Raises:
            S3Error: If the bucket is not configured or the upload fails
        """
        if not self.config.bucket:
            raise S3Error('S3_BUCKET is not configured')

        key = content_key(data, extension, self.config.image_prefix)
        try:
            self.client.put_object(Bucket=self.config.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            raise S3Error(f'Failed to upload {key}: {e}')

        url = f'https://{self.config.bucket}.s3.{self.config.region}.amazonaws.com/{key}'
        logger.debug(f'Stored object {key} ({len(data)} bytes)')
        return url
