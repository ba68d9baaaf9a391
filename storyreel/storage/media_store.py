"""
Media Store

Blob storage on the local filesystem. Every write gets a fresh uuid file
name, so writes never collide and deletes are independent.
"""

import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from storyreel.core.exceptions import MediaDownloadError
from storyreel.core.logging_config import get_logger
from storyreel.core.retry import DOWNLOAD_RETRY_CONFIG, retry_async_call

logger = get_logger("storage.media_store")

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp", "gif")
VIDEO_EXTENSIONS = ("mp4", "webm", "mov")
DOWNLOAD_TIMEOUT = 120.0


@dataclass
class StoredMedia:
    """Location of a stored file."""
    path: str
    url: str


def guess_extension(url: str) -> str:
    """Extension from a URL path, defaulting to jpg for provider image output."""
    suffix = Path(urlparse(url).path).suffix.lower().lstrip(".")
    if suffix in IMAGE_EXTENSIONS or suffix in VIDEO_EXTENSIONS:
        return suffix
    return "jpg"


class LocalMediaStore:
    """
    Stores media under ``root`` and serves it from ``base_url``.

    Paths handed out are relative to ``root`` (e.g. ``stories/3/videos/<uuid>.mp4``).
    """

    def __init__(self, root: Path, base_url: str = "/media", timeout: float = DOWNLOAD_TIMEOUT):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _new_path(self, directory: str, extension: str) -> str:
        return f"{directory.strip('/')}/{uuid.uuid4()}.{extension.lstrip('.')}"

    def absolute_path(self, path: str) -> Path:
        return self.root / path

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def _write(self, relative_path: str, content: bytes) -> StoredMedia:
        target = self.absolute_path(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return StoredMedia(path=relative_path, url=self.url(relative_path))

    async def download(self, remote_url: str, directory: str, extension: Optional[str] = None) -> StoredMedia:
        """Fetch a remote file and store it."""
        extension = extension or guess_extension(remote_url)
        relative_path = self._new_path(directory, extension)

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            try:
                response = await retry_async_call(client.get, remote_url, config=DOWNLOAD_RETRY_CONFIG)
            except httpx.HTTPError as e:
                raise MediaDownloadError(remote_url, str(e)) from e

        if response.status_code >= 400:
            logger.error(f"Failed to download media file {remote_url}: HTTP {response.status_code}")
            raise MediaDownloadError(remote_url, f"HTTP {response.status_code}")

        stored = self._write(relative_path, response.content)
        logger.debug(f"Downloaded {remote_url} -> {stored.path}")
        return stored

    def store(self, content: bytes, directory: str, extension: str) -> StoredMedia:
        """Store raw bytes."""
        return self._write(self._new_path(directory, extension), content)

    def store_file(self, local_path: Path, directory: str, extension: Optional[str] = None) -> StoredMedia:
        """Copy a local file into the store."""
        local_path = Path(local_path)
        extension = extension or local_path.suffix.lstrip(".") or "bin"
        relative_path = self._new_path(directory, extension)
        target = self.absolute_path(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, target)
        return StoredMedia(path=relative_path, url=self.url(relative_path))

    def delete(self, path: Optional[str]) -> bool:
        if not path:
            return False
        target = self.absolute_path(path)
        if not target.exists():
            return False
        target.unlink()
        return True

    def fetch(self, path: Optional[str], url: Optional[str], destination: Path) -> Path:
        """
        Materialize a stored or remote file at ``destination``.

        Prefers the local copy; falls back to downloading ``url``. Blocking,
        meant for worker threads.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        if path and self.absolute_path(path).exists():
            shutil.copyfile(self.absolute_path(path), destination)
            return destination

        if not url:
            raise MediaDownloadError(str(path), "no stored file and no URL")

        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                response = client.get(url)
        except httpx.HTTPError as e:
            raise MediaDownloadError(url, str(e)) from e

        if response.status_code >= 400:
            raise MediaDownloadError(url, f"HTTP {response.status_code}")

        destination.write_bytes(response.content)
        return destination
