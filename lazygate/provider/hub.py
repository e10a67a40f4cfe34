"""
Model-hub access used by local quantized discovery.

Listing and downloads go through huggingface_hub, whose API is
synchronous; every blocking call runs in a worker thread so the event
loop keeps serving other requests. Paginated listings are consumed
lazily, one page fetch per worker hop.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TypeVar

import httpx
from huggingface_hub import HfApi, hf_hub_download, hf_hub_url
from huggingface_hub.hf_api import RepoFile

from lazygate.logging_config import logger


T = TypeVar("T")
_EXHAUSTED = object()


@dataclass(frozen=True)
class HubRepo:
    repo_id: str
    downloads: int = 0
    likes: int = 0


@dataclass(frozen=True)
class HubFile:
    path: str
    size: int


async def _aiter_in_thread(iterator: Iterator[T]) -> AsyncIterator[T]:
    while True:
        item = await asyncio.to_thread(next, iterator, _EXHAUSTED)
        if item is _EXHAUSTED:
            return
        yield item  # type: ignore[misc]


class HubClient:
    """
    Thin async facade over the Hugging Face hub.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        token: Optional[str] = None,
        endpoint: str = "https://huggingface.co",
        header_bytes: int = 1024 * 1024,
    ) -> None:
        self._http = http_client
        self.token = token or None
        self.endpoint = endpoint.rstrip("/")
        self.header_bytes = header_bytes
        self._api = HfApi(endpoint=self.endpoint, token=self.token)

    async def list_quantized_repos(self, base_model: str) -> AsyncIterator[HubRepo]:
        """
        Repositories tagged as a quantized variant of `base_model`.
        """
        models = self._api.list_models(filter=f"base_model:quantized:{base_model}")
        async for info in _aiter_in_thread(iter(models)):
            yield HubRepo(
                repo_id=info.id,
                downloads=int(getattr(info, "downloads", None) or 0),
                likes=int(getattr(info, "likes", None) or 0),
            )

    async def list_files(self, repo_id: str) -> AsyncIterator[HubFile]:
        """
        Every file in a repository with its size in bytes.
        """
        entries = self._api.list_repo_tree(repo_id, recursive=True)
        async for entry in _aiter_in_thread(iter(entries)):
            if isinstance(entry, RepoFile):
                yield HubFile(path=entry.path, size=int(entry.size or 0))

    async def read_header(self, repo_id: str, file_path: str) -> bytes:
        """
        Fetch the leading bytes of a repository file with a ranged GET.
        """
        url = hf_hub_url(repo_id, file_path, endpoint=self.endpoint)
        headers = {"Range": f"bytes=0-{self.header_bytes - 1}"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        buffer = bytearray()
        async with self._http.stream(
            "GET", url, headers=headers, follow_redirects=True
        ) as resp:
            resp.raise_for_status()
            # Servers that ignore Range send the whole file; stop early.
            async for chunk in resp.aiter_bytes():
                buffer.extend(chunk)
                if len(buffer) >= self.header_bytes:
                    break
        return bytes(buffer[: self.header_bytes])

    async def download(self, repo_id: str, file_path: str, dest: Path) -> Path:
        """
        Download a repository file to `dest`.

        The file is fetched into a staging directory next to `dest` and
        moved into place only once complete, so an interrupted download
        never leaves a file at `dest`.
        """

        def _download() -> Path:
            dest.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=".download-", dir=str(dest.parent)))
            try:
                local = hf_hub_download(
                    repo_id=repo_id,
                    filename=file_path,
                    local_dir=staging,
                    token=self.token,
                    endpoint=self.endpoint,
                )
                os.replace(local, dest)
            finally:
                shutil.rmtree(staging, ignore_errors=True)
            return dest

        logger.info("hub: downloading %s from %s to %s", file_path, repo_id, dest)
        path = await asyncio.to_thread(_download)
        logger.info("hub: download of %s/%s finished", repo_id, file_path)
        return path


__all__ = ["HubClient", "HubFile", "HubRepo"]
