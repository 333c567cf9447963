from __future__ import annotations

import logging
from typing import Dict, Optional, Union

from google.cloud import storage

from ..core.config import get_settings

logger = logging.getLogger(__name__)


class AssetStorage:
    """Handles Cloud Storage persistence for article artifacts and banner images."""

    def __init__(self, *, use_storage: Optional[bool] = None) -> None:
        settings = get_settings()
        self._bucket_name = settings.assets_bucket
        self._project_id = settings.project_id
        enabled = settings.storage_enabled if use_storage is None else use_storage
        self._client = storage.Client(project=settings.project_id) if enabled else None
        self._local_store: Dict[str, Dict[str, bytes]] = {}

    def _bucket(self):  # pragma: no cover - requires GCP
        return self._client.bucket(self._bucket_name)

    def _path(self, article_id: str, filename: str) -> str:
        return f"projects/{self._project_id}/articles/{article_id}/{filename}"

    def save_text(self, article_id: str, filename: str, data: str, content_type: str = "text/markdown") -> str:
        return self.save_bytes(article_id, filename, data.encode("utf-8"), content_type=content_type)

    def save_bytes(self, article_id: str, filename: str, data: Union[bytes, bytearray], content_type: str = "image/png") -> str:
        path = self._path(article_id, filename)
        if self._client:
            blob = self._bucket().blob(path)
            blob.upload_from_string(bytes(data), content_type=content_type)
            logger.info("Uploaded %s (%d bytes) to gs://%s", path, len(data), self._bucket_name)
        else:
            self._local_store.setdefault(article_id, {})[path] = bytes(data)
        return path

    def read(self, path: str) -> Optional[bytes]:
        if self._client:
            blob = self._bucket().blob(path)
            if blob.exists():
                return blob.download_as_bytes()
            return None
        for entries in self._local_store.values():
            if path in entries:
                return entries[path]
        return None

    def list_local(self, article_id: str) -> Dict[str, bytes]:
        return dict(self._local_store.get(article_id, {}))
