import hashlib
import hmac
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple
from urllib.parse import quote

from oob import config

logger = logging.getLogger("oob.files")


class LocalFileStore:
    """Object store backed by a directory; keys look like ``tenant/operation``."""

    def __init__(self, root: str, link_secret: str, api_host: str):
        self.root = Path(root)
        self._link_secret = link_secret.encode("utf-8")
        self.api_host = api_host.rstrip("/")

    def path_for(self, key: str) -> Path:
        base = self.root.resolve()
        candidate = (base / key).resolve()
        if base == candidate or base not in candidate.parents:
            raise ValueError(f"Invalid file key: {key!r}")
        return candidate

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    async def upload_stream(self, key: str, chunks: AsyncIterator[bytes]) -> int:
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        written = 0
        try:
            with tmp.open("wb") as fh:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    fh.write(chunk)
                    written += len(chunk)
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("Stored %s (%d bytes)", key, written)
        return written

    def delete_file(self, key: str) -> None:
        """Delete a stored file; raises FileNotFoundError if it is not there."""
        path = self.path_for(key)
        path.unlink()
        parent = path.parent
        try:
            if parent != self.root.resolve() and not any(parent.iterdir()):
                parent.rmdir()
        except OSError:
            pass

    def _sign(self, key: str, expires: int) -> str:
        message = f"{key}\n{expires}".encode("utf-8")
        return hmac.new(self._link_secret, message, hashlib.sha256).hexdigest()

    def get_download_link(self, key: str, ttl_seconds: Optional[int] = None) -> Tuple[str, str]:
        ttl = ttl_seconds if ttl_seconds is not None else config.FILE_LINK_TTL_SECONDS
        expires = int(time.time()) + ttl
        signature = self._sign(key, expires)
        url = f"{self.api_host}/v1/api/oob/files/{quote(key)}?expires={expires}&signature={signature}"
        expires_at = datetime.fromtimestamp(expires, tz=timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
        return url, expires_at

    def verify_link(self, key: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(key, expires), signature)


def create_file_store() -> LocalFileStore:
    root = os.getenv("FILES_DIR", config.FILES_DIR)
    os.makedirs(root, exist_ok=True)
    return LocalFileStore(root, config.FILE_LINK_SECRET, config.API_HOST)
