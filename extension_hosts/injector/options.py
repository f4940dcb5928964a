from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .options_persist import OptionsBackend
from .page_status import PageStatus

_LOGGER = logging.getLogger("injector.options")


def _bool(raw: Any, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass(frozen=True, slots=True)
class GlobalSettings:
    show_page_action: bool = True
    show_context_menu: bool = False
    show_dev_panel: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "showPageAction": self.show_page_action,
            "showContextMenu": self.show_context_menu,
            "showDevPanel": self.show_dev_panel,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> GlobalSettings:
        if not isinstance(raw, dict):
            return cls()
        defaults = cls()
        return cls(
            show_page_action=_bool(raw.get("showPageAction"), defaults.show_page_action),
            show_context_menu=_bool(raw.get("showContextMenu"), defaults.show_context_menu),
            show_dev_panel=_bool(raw.get("showDevPanel"), defaults.show_dev_panel),
        )


@dataclass(slots=True)
class PageEntry:
    status: PageStatus = PageStatus.NONE
    options: dict[str, Any] = field(default_factory=dict)


class Options:
    """Authorization store: per-page status and options plus global settings.

    Reads are plain lookups. Every mutation is persisted and then applied under
    one lock, so two tabs toggling the same page never lose an update.
    """

    def __init__(self, backend: OptionsBackend | None = None) -> None:
        self._backend = backend
        self._settings = GlobalSettings()
        self._pages: dict[str, PageEntry] = {}
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> GlobalSettings:
        return self._settings

    def get_page_status(self, url: str) -> PageStatus:
        entry = self._pages.get(url)
        return entry.status if entry is not None else PageStatus.NONE

    def get_page_options(self, url: str) -> dict[str, Any]:
        entry = self._pages.get(url)
        return copy.deepcopy(entry.options) if entry is not None else {}

    def page_count(self) -> int:
        return len(self._pages)

    # ─────────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────────

    # The new state is built on a copy and only swapped in once the backend has
    # saved it; a failed save leaves the store as it was.

    def _with_entry(self, url: str, **changes: Any) -> dict[str, PageEntry]:
        current = self._pages.get(url) or PageEntry()
        entry = PageEntry(
            status=changes.get("status", current.status),
            options=copy.deepcopy(changes.get("options", current.options)),
        )
        return {**self._pages, url: entry}

    async def toggle_page(self, url: str, transition: Callable[[PageStatus], PageStatus]) -> PageStatus:
        async with self._lock:
            pages = self._with_entry(url, status=transition(self.get_page_status(url)))
            await self._persist(self._settings, pages)
            self._pages = pages
            status = pages[url].status
            _LOGGER.info("page status url=%s status=%s", url, status.value)
            return status

    async def set_page_options(self, url: str, options: dict[str, Any]) -> None:
        if not isinstance(options, dict):
            raise TypeError("page options must be a JSON object")
        async with self._lock:
            pages = self._with_entry(url, options=options)
            await self._persist(self._settings, pages)
            self._pages = pages

    async def set_settings(self, settings: GlobalSettings) -> None:
        async with self._lock:
            await self._persist(settings, self._pages)
            self._settings = settings

    # ─────────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _snapshot(settings: GlobalSettings, pages: dict[str, PageEntry]) -> dict[str, Any]:
        return {
            "settings": settings.to_dict(),
            "pages": {
                url: {"status": entry.status.value, "options": copy.deepcopy(entry.options)}
                for url, entry in pages.items()
            },
        }

    def to_snapshot(self) -> dict[str, Any]:
        return self._snapshot(self._settings, self._pages)

    def apply_snapshot(self, snapshot: dict[str, Any] | None) -> None:
        if not isinstance(snapshot, dict):
            return
        self._settings = GlobalSettings.from_dict(snapshot.get("settings"))
        pages: dict[str, PageEntry] = {}
        raw_pages = snapshot.get("pages")
        if isinstance(raw_pages, dict):
            for url, raw in raw_pages.items():
                if not (isinstance(url, str) and url.strip()) or not isinstance(raw, dict):
                    continue
                opts = raw.get("options")
                pages[url] = PageEntry(
                    status=PageStatus.parse(raw.get("status")),
                    options=dict(opts) if isinstance(opts, dict) else {},
                )
        self._pages = pages

    def load(self) -> None:
        """Full load at startup, before any event is processed."""
        if self._backend is None:
            return
        self.apply_snapshot(self._backend.load())
        _LOGGER.info("options loaded pages=%d", len(self._pages))

    async def _persist(self, settings: GlobalSettings, pages: dict[str, PageEntry]) -> None:
        if self._backend is None:
            return
        await asyncio.to_thread(self._backend.save, self._snapshot(settings, pages))
