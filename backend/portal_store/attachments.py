from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

import httpx

from .errors import StoreError


class StorageError(StoreError):
    pass


@dataclass(frozen=True)
class Attachment:
    url: str
    kind: str


def attachment_kind(content_type: str | None) -> str:
    return "image" if (content_type or "").lower().startswith("image/") else "file"


def _storage_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "error"):
            msg = payload.get(key)
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
    return response.text.strip() or f"HTTP {response.status_code}"


class StorageClient:
    """Uploads chat attachments to an object storage REST endpoint.

    Objects land at ``<bucket>/<owner_id>/<millis>.<ext>`` and are served back
    from the bucket's public path.
    """

    def __init__(
        self,
        *,
        base_url: str,
        bucket: str = "chat-attachments",
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_seconds, connect=8.0)
        self._transport = transport

    def object_path(self, owner_id: str, filename: str) -> str:
        suffix = Path(filename).suffix.lower() or ".bin"
        return f"{owner_id}/{int(time.time() * 1000)}{suffix}"

    def public_url(self, object_path: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{object_path}"

    def upload(self, *, owner_id: str, filename: str, content: bytes, content_type: str | None) -> Attachment:
        if not content:
            raise StorageError("Attachment is empty.")
        object_path = self.object_path(owner_id, filename)
        headers = {"Content-Type": content_type or "application/octet-stream"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self.base_url}/object/{self.bucket}/{object_path}",
                    headers=headers,
                    content=content,
                )
        except httpx.TimeoutException as exc:
            raise StorageError("Attachment storage timed out.") from exc
        except httpx.HTTPError as exc:
            raise StorageError("Failed to reach attachment storage.") from exc

        if response.status_code >= 400:
            raise StorageError(f"Attachment upload failed: {_storage_error_message(response)}")
        return Attachment(url=self.public_url(object_path), kind=attachment_kind(content_type))
