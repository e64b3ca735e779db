"""
MinIO Object Store
==================

Connector for writing batch artifacts to MinIO object storage (S3-compatible).
"""

import io
import logging
from typing import Dict, List

from minio import Minio
from minio.error import S3Error

from .base import ObjectStore

logger = logging.getLogger(__name__)


class MinIOConnector(ObjectStore):
    """
    MinIO object storage connector for batch artifacts.
    """

    def __init__(self, config: Dict, client: Minio = None):
        """
        Initialize MinIO connector.

        Args:
            config: Connection configuration dict with endpoint, access_key, secret_key, bucket
            client: Pre-built client (skips connect())
        """
        self.config = config
        self.client = client
        self.bucket = config.get("bucket", "raw-data")

    def connect(self):
        """Establish connection to MinIO."""
        if self.client is None:
            self.client = Minio(
                endpoint=self.config["endpoint"],
                access_key=self.config["access_key"],
                secret_key=self.config["secret_key"],
                secure=self.config.get("secure", False)
            )

        # Test connection and ensure bucket exists
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")

        logger.info(f"Connected to MinIO: {self.config.get('endpoint')}, bucket: {self.bucket}")

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        buffer = io.BytesIO(data)
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=path,
            data=buffer,
            length=len(data),
            content_type=content_type
        )
        logger.debug(f"Written {len(data)} bytes to s3://{self.bucket}/{path}")
        return f"s3://{self.bucket}/{path}"

    def get(self, path: str) -> bytes:
        response = self.client.get_object(self.bucket, path)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def list(self, prefix: str = "") -> List[str]:
        objects = self.client.list_objects(self.bucket, prefix=prefix, recursive=True)
        return [obj.object_name for obj in objects]

    def delete(self, path: str):
        self.client.remove_object(self.bucket, path)
        logger.info(f"Deleted: s3://{self.bucket}/{path}")

    def exists(self, path: str) -> bool:
        try:
            self.client.stat_object(self.bucket, path)
            return True
        except S3Error:
            return False
