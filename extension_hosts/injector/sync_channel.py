"""Side channel between the host and the in-page agent.

The agent never sees the options store. When a page is whitelisted the host
serializes the page options into a blob, registers it under a random handle and
writes only that handle into a cookie scoped to the page path. The agent treats
"cookie present" as "injection allowed" and fetches ``/blobs/<handle>`` from the
gateway to read its configuration. A new handle (cookie value change) means the
configuration changed.

At most one handle is live per canonical URL: publishing revokes the previous
blob once the new cookie value is written (a failed write keeps the old cookie
and its blob), and retracting revokes it before the cookie is removed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from .config import DEFAULT_COOKIE_NAME
from .page_status import PageStatus

if TYPE_CHECKING:
    from .browser_api import BrowserApi
    from .options import Options
    from .urls import CanonicalUrl

_LOGGER = logging.getLogger("injector.sync_channel")


class BlobRegistry:
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    def register(self, data: bytes) -> str:
        handle = str(uuid.uuid4())
        self._blobs[handle] = bytes(data)
        return handle

    def revoke(self, handle: str) -> bool:
        return self._blobs.pop(handle, None) is not None

    def get(self, handle: str) -> bytes | None:
        return self._blobs.get(handle)

    def __len__(self) -> int:
        return len(self._blobs)


class SyncChannel:
    def __init__(
        self,
        browser: BrowserApi,
        *,
        cookie_name: str = DEFAULT_COOKIE_NAME,
        blobs: BlobRegistry | None = None,
    ) -> None:
        self._browser = browser
        self.cookie_name = cookie_name
        self.blobs = blobs if blobs is not None else BlobRegistry()
        self._published: dict[str, str] = {}
        # url -> (lock, number of syncs holding or waiting for it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def published_handle(self, url: str) -> str | None:
        return self._published.get(url)

    def read_blob(self, handle: str) -> bytes | None:
        return self.blobs.get(handle)

    async def publish(self, page: CanonicalUrl, config: dict[str, Any]) -> str:
        data = json.dumps(config, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")
        handle = self.blobs.register(data)

        try:
            await self._browser.set_cookie(url=page.url, name=self.cookie_name, value=handle, path=page.path)
        except Exception:
            self.blobs.revoke(handle)
            raise

        previous = self._published.get(page.url)
        self._published[page.url] = handle
        if previous is not None:
            self.blobs.revoke(previous)
        _LOGGER.debug("published url=%s handle=%s", page.url, handle)
        return handle

    async def retract(self, page: CanonicalUrl) -> None:
        previous = self._published.pop(page.url, None)
        if previous is not None:
            self.blobs.revoke(previous)
        await self._browser.remove_cookie(url=page.url, name=self.cookie_name)

    def lock_count(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _url_lock(self, url: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(url) or (asyncio.Lock(), 0)
        self._locks[url] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[url]
            if users <= 1:
                del self._locks[url]
            else:
                self._locks[url] = (lock, users - 1)

    async def sync(self, page: CanonicalUrl, options: Options) -> PageStatus:
        """Bring the cookie for ``page`` in line with the store.

        Status and options are read inside the per-URL lock, so the last sync to
        finish always reflects the latest stored state.
        """
        async with self._url_lock(page.url):
            status = options.get_page_status(page.url)
            if status is PageStatus.WHITELISTED:
                await self.publish(page, options.get_page_options(page.url))
            else:
                await self.retract(page)
            return status
