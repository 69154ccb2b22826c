"""Evidence blob storage for delivery photos and signatures."""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote, urlencode

from app.core.config import get_settings
from app.core.errors import MissingEvidenceError, NotFoundError, UploadError
from app.core.logging import logger


class LocalBlobStore:
    """Filesystem-backed blob store returning signed, expiring retrieval URLs.

    References are storage paths relative to ``blob_dir``. References that
    are already absolute ``http(s)`` URLs are passed through by ``resolve``.
    """

    def __init__(self, root: str | None = None, secret: str | None = None) -> None:
        settings = get_settings()
        self.settings = settings
        self._root = Path(root or settings.blob_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._secret = (secret or settings.blob_signing_secret).encode("utf-8")

    def _safe_path(self, reference: str) -> Path:
        relative = PurePosixPath(reference.strip().lstrip("/"))
        if not relative.parts or any(part in {"..", ""} for part in relative.parts):
            raise UploadError(f"Invalid storage path '{reference}'")
        return self._root.joinpath(*relative.parts)

    def _write(self, data: bytes, path: str) -> str:
        target = self._safe_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return str(PurePosixPath(path.strip().lstrip("/")))

    def upload(self, data: bytes, path: str) -> str:
        if not data:
            raise MissingEvidenceError(f"Evidence file for '{path}' is empty")
        try:
            reference = self._write(data, path)
        except OSError as exc:
            raise UploadError(f"Failed to store evidence: {exc}") from exc
        logger.info("Evidence stored", reference=reference, size=len(data))
        return reference

    async def upload_async(self, data: bytes, path: str, timeout: Optional[float] = None) -> str:
        """Upload in a worker thread, bounded by ``timeout`` seconds."""
        limit = timeout if timeout is not None else self.settings.upload_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.upload, data, path), timeout=limit)
        except asyncio.TimeoutError as exc:
            raise UploadError(f"Evidence upload timed out after {limit:g}s") from exc

    def read(self, reference: str) -> bytes:
        target = self._safe_path(reference)
        if not target.is_file():
            raise NotFoundError(f"Evidence '{reference}' not found")
        return target.read_bytes()

    def _signature(self, reference: str, expires: int) -> str:
        message = f"{reference}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def resolve(self, reference: Optional[str], expires_in: Optional[int] = None) -> Optional[str]:
        if not reference:
            return None
        if reference.startswith(("http://", "https://")):
            return reference
        ttl = expires_in if expires_in is not None else self.settings.signed_url_ttl_seconds
        expires = int(time.time()) + int(ttl)
        query = urlencode({"expires": expires, "signature": self._signature(reference, expires)})
        base = self.settings.public_base_url.rstrip("/")
        return f"{base}/delivery/blobs/{quote(reference)}?{query}"

    def verify(self, reference: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(reference, expires), signature)


blob_store = LocalBlobStore()
