"""
Media storage - local disk for development, a Cloud Storage bucket in production.

Objects are keyed `media/<item_id>/<item_id>_<index>.<ext>` in both backends.
"""
import logging
import os
from typing import Optional

from radar.config_manager import get_worker_config

logger = logging.getLogger(__name__)


class StorageService:
    def __init__(self, storage_provider: Optional[str] = None, storage_dir: Optional[str] = None):
        config = get_worker_config()
        self.provider = (storage_provider or config.storage_provider).lower()
        self.storage_dir = storage_dir or config.storage_dir
        self.base_url = config.storage_base_url.rstrip("/")
        self.bucket = None

        if self.provider == "gcs":
            from google.cloud import storage

            self.bucket_name = config.gcs_bucket_name
            self.bucket = storage.Client().bucket(self.bucket_name)
            logger.info(f"☁️ Media bucket: gs://{self.bucket_name}")
        else:
            os.makedirs(os.path.join(self.storage_dir, "media"), exist_ok=True)
            logger.info(f"💾 Media directory: {self.storage_dir}")

    @staticmethod
    def media_path(item_id: int, extension: str, index: int = 0) -> str:
        return f"media/{item_id}/{item_id}_{index}.{extension}"

    def upload_media(self, item_id: int, data: bytes, extension: str, content_type: str,
                     index: int = 0) -> str:
        """Store a media blob for an item and return its public URL"""
        key = self.media_path(item_id, extension, index)
        try:
            if self.bucket is not None:
                url = self._put_bucket(key, data, content_type)
            else:
                url = self._put_local(key, data)
        except Exception as e:
            logger.error(f"Failed to store media for item {item_id}: {e}")
            raise

        logger.info(f"Stored {len(data)} bytes for item {item_id}: {url}")
        return url

    def _put_local(self, key: str, data: bytes) -> str:
        target = os.path.join(self.storage_dir, *key.split("/"))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as f:
            f.write(data)
        return f"{self.base_url}/{key}"

    def _put_bucket(self, key: str, data: bytes, content_type: str) -> str:
        self.bucket.blob(key).upload_from_string(data, content_type=content_type)
        return f"https://storage.googleapis.com/{self.bucket_name}/{key}"
