"""Object store access (GCS). The sync SDK runs in a worker thread."""
from datetime import timedelta
import asyncio
import logging

from google.cloud import storage

from docmind.config import GCS_BUCKET, SIGNED_URL_EXPIRY_SECONDS

logger = logging.getLogger(__name__)


class StorageDownloadError(RuntimeError):
    """Raised when a document's bytes cannot be fetched from the object store."""


def blob_path_for(file_path: str, bucket_name: str = GCS_BUCKET) -> str:
    """Accept gs://bucket/path, /path or path; return the object name inside the bucket."""
    prefix = f"gs://{bucket_name}/"
    if file_path.startswith(prefix):
        return file_path[len(prefix):].lstrip("/")
    if file_path.startswith("gs://"):
        # Different bucket in the pointer: keep everything after the bucket segment
        return file_path[len("gs://"):].split("/", 1)[-1]
    return file_path.lstrip("/")


class ObjectStore:
    def __init__(self, bucket_name: str = GCS_BUCKET, client: storage.Client | None = None):
        self.bucket_name = bucket_name
        self._client = client

    def _bucket(self):
        if self._client is None:
            self._client = storage.Client()
        return self._client.bucket(self.bucket_name)

    def _download_sync(self, file_path: str) -> bytes:
        return self._bucket().blob(blob_path_for(file_path, self.bucket_name)).download_as_bytes()

    def _upload_sync(self, file_path: str, data: bytes, content_type: str) -> str:
        name = blob_path_for(file_path, self.bucket_name)
        self._bucket().blob(name).upload_from_string(data, content_type=content_type)
        return f"gs://{self.bucket_name}/{name}"

    def _signed_url_sync(self, file_path: str, expires_in: int) -> str:
        blob = self._bucket().blob(blob_path_for(file_path, self.bucket_name))
        return blob.generate_signed_url(version="v4", expiration=timedelta(seconds=expires_in), method="GET")

    async def download(self, file_path: str) -> bytes:
        try:
            data = await asyncio.to_thread(self._download_sync, file_path)
        except Exception as e:
            raise StorageDownloadError(f"Storage download failed for {file_path}: {e}") from e
        logger.debug("Downloaded %s (%d bytes)", file_path, len(data))
        return data

    async def upload(self, file_path: str, data: bytes, content_type: str = "application/pdf") -> str:
        """Upload bytes; returns the gs:// pointer stored on the Document."""
        return await asyncio.to_thread(self._upload_sync, file_path, data, content_type)

    async def signed_url(self, file_path: str, expires_in: int = SIGNED_URL_EXPIRY_SECONDS) -> str:
        """Time-limited read URL for the object."""
        return await asyncio.to_thread(self._signed_url_sync, file_path, expires_in)
