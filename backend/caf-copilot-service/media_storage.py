"""
CAF Copilot Service - Media upload backends

- local: writes files under `<CAF_LOCAL_DATA_DIR>/media`, served by GET /media/{name}
- vercel_blob: PUTs files to Vercel Blob storage with BLOB_READ_WRITE_TOKEN
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel

from env_loader import env_float, env_str

logger = logging.getLogger(__name__)

VERCEL_BLOB_API = "https://blob.vercel-storage.com"
MEDIA_ROUTE = "/media"

_MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "application/pdf": ".pdf",
}
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class StoredMedia(BaseModel):
    url: str
    content_type: Optional[str] = None
    pathname: str


def guess_upload_extension(filename: str, content_type: str) -> str:
    ext = Path(filename or "").suffix.lower().strip()
    if ext:
        return ext
    return _MIME_EXTENSIONS.get((content_type or "").lower(), ".bin")


def build_pathname(filename: str, content_type: str, prefix: str = "cases") -> str:
    stem = _SAFE_NAME_RE.sub("-", Path(filename or "upload").stem).strip("-") or "upload"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    ext = guess_upload_extension(filename, content_type)
    return f"{prefix}/{timestamp}-{uuid4().hex[:8]}-{stem[:40]}{ext}"


def resolve_local_media_dir() -> Path:
    base = Path(env_str("CAF_LOCAL_DATA_DIR", "./local_data") or "./local_data").expanduser().resolve()
    target = base / "media"
    target.mkdir(parents=True, exist_ok=True)
    return target


def resolve_local_media_file(name: str) -> Optional[Path]:
    """
    Maps a served media name back to a file, refusing anything outside the media dir.
    """
    if not name or "/" in name or "\\" in name or name.startswith("."):
        return None
    media_dir = resolve_local_media_dir()
    candidate = (media_dir / name).resolve()
    if candidate.parent != media_dir or not candidate.is_file():
        return None
    return candidate


class MediaStorage:
    backend_name = "abstract"

    def store(self, file_bytes: bytes, filename: str, content_type: str) -> StoredMedia:
        raise NotImplementedError


class LocalMediaStorage(MediaStorage):
    backend_name = "local"

    def __init__(self, public_base_url: str = "") -> None:
        self.public_base_url = public_base_url.rstrip("/")

    def store(self, file_bytes: bytes, filename: str, content_type: str) -> StoredMedia:
        pathname = build_pathname(filename, content_type)
        name = pathname.split("/")[-1]
        file_path = resolve_local_media_dir() / name
        file_path.write_bytes(file_bytes)
        return StoredMedia(
            url=f"{self.public_base_url}{MEDIA_ROUTE}/{name}",
            content_type=content_type,
            pathname=pathname,
        )


class VercelBlobMediaStorage(MediaStorage):
    backend_name = "vercel_blob"

    def __init__(
        self,
        token: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not token:
            raise RuntimeError("CAF_MEDIA_UPLOAD_BACKEND=vercel_blob requires BLOB_READ_WRITE_TOKEN.")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def store(self, file_bytes: bytes, filename: str, content_type: str) -> StoredMedia:
        pathname = build_pathname(filename, content_type)
        headers = {
            "Authorization": f"Bearer {self.token}",
            "x-content-type": content_type,
            "x-add-random-suffix": "1",
        }
        with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
            resp = client.put(f"{VERCEL_BLOB_API}/{pathname}", headers=headers, content=file_bytes)
            resp.raise_for_status()
            data = resp.json()
        url = str(data.get("url") or "").strip()
        if not url:
            raise RuntimeError("Blob upload response did not include a URL.")
        logger.info("Uploaded %d bytes to blob storage as %s", len(file_bytes), data.get("pathname") or pathname)
        return StoredMedia(
            url=url,
            content_type=data.get("contentType") or content_type,
            pathname=str(data.get("pathname") or pathname),
        )


def build_media_storage(backend: Optional[str] = None) -> MediaStorage:
    selected = (backend or env_str("CAF_MEDIA_UPLOAD_BACKEND", "local") or "local").lower()
    if selected == "local":
        return LocalMediaStorage(public_base_url=env_str("CAF_PUBLIC_BASE_URL"))
    if selected == "vercel_blob":
        return VercelBlobMediaStorage(
            token=env_str("BLOB_READ_WRITE_TOKEN"),
            timeout_seconds=max(1.0, env_float("CAF_MEDIA_UPLOAD_TIMEOUT_SECONDS", 30.0)),
        )
    raise ValueError(
        f"Unsupported CAF_MEDIA_UPLOAD_BACKEND='{selected}'. "
        "Allowed values: local, vercel_blob."
    )
