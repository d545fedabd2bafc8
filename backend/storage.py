import json
import logging
import os
import re
import threading
import time
from typing import Callable, Dict, Optional

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from .dimensions import parse_flag
from .errors import StorageOperationFailed, StorageUnavailable

DEFAULT_PUBLIC_HOST = "storage.googleapis.com"

_whitespace_run = re.compile(r"\s+")


def current_millis() -> int:
    return int(time.time() * 1000)


class StorageGateway:
    """Puts image bytes into a bucket and deletes them again by public URL."""

    def __init__(
        self,
        bucket=None,
        bucket_name: Optional[str] = None,
        *,
        public_host: str = DEFAULT_PUBLIC_HOST,
        public_read: bool = True,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], int] = current_millis,
    ):
        self.bucket = bucket
        self.bucket_name = (bucket_name or "").strip()
        self.public_host = (public_host or DEFAULT_PUBLIC_HOST).strip().strip("/")
        self.public_read = public_read
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._last_millis = 0
        self._key_lock = threading.Lock()

    def is_available(self) -> bool:
        return self.bucket is not None and bool(self.bucket_name)

    @property
    def url_prefix(self) -> str:
        return f"https://{self.public_host}/{self.bucket_name}/"

    def public_url(self, key: str) -> str:
        return f"{self.url_prefix}{key}"

    def _next_millis(self) -> int:
        with self._key_lock:
            millis = max(self._clock(), self._last_millis + 1)
            self._last_millis = millis
            return millis

    def build_key(self, original_filename: str, destination_folder: str) -> str:
        base_name, extension = os.path.splitext(os.path.basename(original_filename or ""))
        sanitized = _whitespace_run.sub("_", base_name)
        return f"{destination_folder or ''}{sanitized}-{self._next_millis()}{extension}"

    def put(
        self,
        data: bytes,
        original_filename: str,
        destination_folder: str,
        content_type: Optional[str] = None,
    ) -> str:
        if not self.is_available():
            self.logger.error("Storage bucket not initialized. Cannot upload %s.", original_filename)
            raise StorageUnavailable(
                "Image Storage Service is not properly initialized on the server. "
                "Please check backend logs and configuration."
            )

        key = self.build_key(original_filename, destination_folder)
        blob = self.bucket.blob(key)
        try:
            blob.upload_from_string(
                data,
                content_type=content_type or "application/octet-stream",
                predefined_acl="publicRead" if self.public_read else None,
                retry=None,
            )
        except Exception as exc:
            self.logger.error("Error uploading %s to storage path %s: %s", original_filename, key, exc)
            raise StorageOperationFailed(
                f"Could not upload {original_filename or 'image'}: {exc}"
            ) from exc

        url = self.public_url(key)
        self.logger.info("%s uploaded to storage. Public URL: %s", original_filename, url)
        return url

    def delete(self, url: Optional[str]) -> None:
        if not url or not isinstance(url, str):
            return

        if not self.is_available():
            raise StorageUnavailable("Image Storage Service is not properly initialized.")

        prefix = self.url_prefix
        if not url.startswith(prefix):
            self.logger.warning("URL %s does not belong to bucket %s; skipping delete.", url, self.bucket_name)
            return

        key = url[len(prefix):]
        if not key:
            return

        try:
            self.bucket.delete_blob(key, retry=None)
        except gcs_exceptions.NotFound:
            self.logger.warning("Storage object already absent: %s", key)
            return
        except Exception as exc:
            raise StorageOperationFailed(f"Could not delete {url}: {exc}") from exc

        self.logger.info("Deleted storage object %s", key)


def build_storage_gateway(config: Dict, logger: Optional[logging.Logger] = None) -> StorageGateway:
    logger = logger or logging.getLogger(__name__)
    bucket_name = (config.get("GCS_BUCKET_NAME") or "").strip()
    options = {
        "public_host": config.get("GCS_PUBLIC_HOST") or DEFAULT_PUBLIC_HOST,
        "public_read": parse_flag(config.get("GCS_PUBLIC_READ", True)),
        "logger": logger,
    }

    if not bucket_name:
        logger.error("GCS_BUCKET_NAME is not set. Image uploads and deletions are disabled.")
        return StorageGateway(None, None, **options)

    credentials_json = (config.get("GOOGLE_APPLICATION_CREDENTIALS_JSON") or "").strip()
    key_file = (config.get("GOOGLE_APPLICATION_CREDENTIALS") or "").strip()
    try:
        if credentials_json:
            client = storage.Client.from_service_account_info(json.loads(credentials_json))
        elif key_file:
            client = storage.Client.from_service_account_json(key_file)
        else:
            logger.warning("Storage client falling back to default application credentials.")
            client = storage.Client()
        bucket = client.bucket(bucket_name)
    except Exception as exc:
        logger.error("Storage initialization failed: %s", exc)
        return StorageGateway(None, bucket_name, **options)

    logger.info("Storage gateway connected to bucket %s", bucket_name)
    return StorageGateway(bucket, bucket_name, **options)
