"""Tab event controller.

Turns browser events (tab activated/updated/removed, page-action clicks,
context-menu clicks, agent port traffic, settings changes) into store updates,
cookie publication and page-action updates.

Per-tab ordering: every run bumps the tab's sequence number before its first
await. A run that resumes after an await and finds a newer sequence number
drops its tab-scoped writes (TabContext.url, page action). The cookie is
URL-scoped and is always synced from fresh store state, so it never needs to be
dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .browser_api import BrowserApi, TabInfo
from .config import InjectorConfig
from .errors import IgnorableUrl, MalformedMessage, MissingTabContext
from .options import GlobalSettings, Options
from .page_action import PageActionReflector
from .page_status import PageStatus, toggle
from .sync_channel import SyncChannel
from .urls import CanonicalUrl, canonicalize

_LOGGER = logging.getLogger("injector.controller")

INJECTOR_PORT_NAME = "injector"
TOGGLE_MENU_ITEM_ID = "injector-toggle-page"


@dataclass(slots=True)
class TabContext:
    tab_id: int
    seq: int = 0
    url: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass(frozen=True, slots=True)
class AgentPort:
    port_id: str
    name: str
    tab: TabInfo | None


def _tab_id(raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"invalid tabId: {raw!r}") from exc


def _tab(raw: Any) -> TabInfo:
    tab = TabInfo.from_payload(raw)
    if tab is None:
        raise MissingTabContext("event carries no tab")
    return tab


class TabEventController:
    def __init__(
        self,
        options: Options,
        browser: BrowserApi,
        *,
        config: InjectorConfig | None = None,
        sync: SyncChannel | None = None,
        reflector: PageActionReflector | None = None,
    ) -> None:
        cfg = config or InjectorConfig(options_path="")
        self._options = options
        self._browser = browser
        self._config = cfg
        self.sync = sync or SyncChannel(browser, cookie_name=cfg.cookie_name)
        self.reflector = reflector or PageActionReflector(
            browser, icon_dir=cfg.icon_dir, product_name=cfg.product_name
        )
        self._tabs: dict[int, TabContext] = {}
        self._ports: dict[str, AgentPort] = {}
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            "tabActivated": lambda ev: self.tab_activated(_tab_id(ev.get("tabId"))),
            "tabUpdated": lambda ev: self.tab_updated(
                _tab_id(ev.get("tabId")), ev.get("changeInfo") or {}, _tab(ev.get("tab"))
            ),
            "tabRemoved": self._on_tab_removed,
            "actionClicked": lambda ev: self.action_clicked(_tab(ev.get("tab"))),
            "contextMenuClicked": lambda ev: self.context_menu_clicked(
                str(ev.get("menuItemId") or ""), _tab(ev.get("tab"))
            ),
            "portConnected": self._on_port_connected,
            "portMessage": lambda ev: self.port_message(str(ev.get("portId") or ""), ev.get("message")),
            "portDisconnected": self._on_port_disconnected,
            "settingsChanged": lambda ev: self.update_settings(GlobalSettings.from_dict(ev.get("settings"))),
        }

    @property
    def options(self) -> Options:
        return self._options

    def tab_context(self, tab_id: int) -> TabContext | None:
        return self._tabs.get(tab_id)

    def status(self) -> dict[str, Any]:
        return {
            "tabs": len(self._tabs),
            "ports": len(self._ports),
            "pages": self._options.page_count(),
            "liveHandles": len(self.sync.blobs),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def dispatch(self, event: Any) -> None:
        """Run one inbound browser event. Never raises."""
        name = event.get("event") if isinstance(event, dict) else None
        handler = self._handlers.get(name) if isinstance(name, str) else None
        if handler is None:
            _LOGGER.debug("unknown event ignored: %r", name)
            return
        try:
            await handler(event)
        except IgnorableUrl as exc:
            _LOGGER.debug("event=%s skipped: %s", name, exc)
        except (MalformedMessage, MissingTabContext) as exc:
            _LOGGER.info("event=%s dropped: %s", name, exc)
        except Exception:
            _LOGGER.exception("event=%s handler failed", name)

    async def browser_connected(self) -> None:
        await self.cleanup()
        await self.setup()

    # ─────────────────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────────────────

    def _canonical(self, raw_url: str) -> CanonicalUrl:
        page = canonicalize(
            raw_url,
            ignored_schemes=self._config.ignored_schemes,
            internal_prefix=self._config.internal_prefix,
        )
        if page is None:
            raise IgnorableUrl(str(raw_url))
        return page

    def _begin(self, tab_id: int) -> tuple[TabContext, int]:
        ctx = self._tabs.get(tab_id)
        if ctx is None:
            ctx = TabContext(tab_id=tab_id)
            self._tabs[tab_id] = ctx
        ctx.seq += 1
        return ctx, ctx.seq

    def _is_current(self, ctx: TabContext, seq: int) -> bool:
        return self._tabs.get(ctx.tab_id) is ctx and ctx.seq == seq

    async def _update_page_state(self, ctx: TabContext, seq: int, raw_url: str) -> PageStatus | None:
        page = self._canonical(raw_url)
        status = await self.sync.sync(page, self._options)

        async with ctx.lock:
            if not self._is_current(ctx, seq):
                _LOGGER.debug("stale run dropped tab=%s url=%s", ctx.tab_id, page.url)
                return None
            ctx.url = page.url
            await self.reflector.reflect(ctx.tab_id, status, visible=self._options.settings.show_page_action)
        return status

    async def update_page_state(self, tab_id: int, raw_url: str) -> PageStatus | None:
        ctx, seq = self._begin(tab_id)
        return await self._update_page_state(ctx, seq, raw_url)

    # ─────────────────────────────────────────────────────────────────────────
    # Tab events
    # ─────────────────────────────────────────────────────────────────────────

    async def tab_activated(self, tab_id: int) -> PageStatus | None:
        ctx, seq = self._begin(tab_id)
        tab = await self._browser.get_tab(tab_id)
        if tab is None:
            raise MissingTabContext(f"tab {tab_id} not found")
        if not self._is_current(ctx, seq):
            return None
        return await self._update_page_state(ctx, seq, tab.url)

    async def tab_updated(self, tab_id: int, change_info: dict[str, Any], tab: TabInfo) -> PageStatus | None:
        ctx, seq = self._begin(tab_id)
        return await self._update_page_state(ctx, seq, tab.url)

    def tab_removed(self, tab_id: int) -> None:
        self._tabs.pop(tab_id, None)
        for port_id in [pid for pid, port in self._ports.items() if port.tab is not None and port.tab.id == tab_id]:
            self._ports.pop(port_id, None)

    async def _on_tab_removed(self, event: dict[str, Any]) -> None:
        self.tab_removed(_tab_id(event.get("tabId")))

    async def action_clicked(self, tab: TabInfo) -> PageStatus:
        page = self._canonical(tab.url)
        ctx, seq = self._begin(tab.id)
        status = await toggle(self._options, page.url)
        # Refresh the page action right away; the reload below re-runs the pipeline anyway.
        await self._update_page_state(ctx, seq, tab.url)
        await self._browser.reload_tab(tab.id, bypass_cache=True)
        return status

    async def context_menu_clicked(self, item_id: str, tab: TabInfo) -> PageStatus | None:
        if item_id != TOGGLE_MENU_ITEM_ID:
            return None
        return await self.action_clicked(tab)

    # ─────────────────────────────────────────────────────────────────────────
    # Agent ports
    # ─────────────────────────────────────────────────────────────────────────

    def port_connected(self, port_id: str, name: str, tab: TabInfo | None) -> bool:
        if name != INJECTOR_PORT_NAME or not port_id:
            return False
        self._ports[port_id] = AgentPort(port_id=port_id, name=name, tab=tab)
        return True

    def port_disconnected(self, port_id: str) -> None:
        self._ports.pop(port_id, None)

    async def _on_port_connected(self, event: dict[str, Any]) -> None:
        sender = event.get("sender") if isinstance(event.get("sender"), dict) else {}
        self.port_connected(
            str(event.get("portId") or ""),
            str(event.get("name") or ""),
            TabInfo.from_payload(sender.get("tab")),
        )

    async def _on_port_disconnected(self, event: dict[str, Any]) -> None:
        self.port_disconnected(str(event.get("portId") or ""))

    async def port_message(self, port_id: str, msg: Any) -> None:
        port = self._ports.get(port_id)
        if port is None:
            raise MissingTabContext(f"message on unknown port {port_id!r}")
        tab = port.tab
        if tab is None:
            raise MissingTabContext(f"port {port_id!r} has no sender tab")
        if not isinstance(msg, dict):
            raise MalformedMessage("agent message is not an object")

        command = msg.get("command")
        if command == "reload":
            await self.update_page_state(tab.id, tab.url)
            await self._browser.reload_tab(tab.id, bypass_cache=True)
            return
        if command == "save_settings":
            await self.save_page_settings(tab, msg.get("content"))
            return
        _LOGGER.debug("agent command ignored: %r", command)

    async def save_page_settings(self, tab: TabInfo, content: Any) -> None:
        if not isinstance(content, str):
            raise MalformedMessage("save_settings content must be a JSON string")
        try:
            page_options = json.loads(content)
        except ValueError as exc:
            raise MalformedMessage(f"save_settings content is not JSON: {exc}") from exc
        if not isinstance(page_options, dict):
            raise MalformedMessage("save_settings content must decode to an object")

        page = self._canonical(tab.url)
        await self._options.set_page_options(page.url, page_options)
        if self._options.get_page_status(page.url) is PageStatus.WHITELISTED:
            # New snapshot, new handle: the agent sees the cookie value change.
            await self.sync.sync(page, self._options)

    # ─────────────────────────────────────────────────────────────────────────
    # Settings
    # ─────────────────────────────────────────────────────────────────────────

    async def setup(self) -> None:
        if self._options.settings.show_context_menu:
            name = self._config.product_name
            title = f"Toggle {name} on this page" if name else "Toggle on this page"
            await self._browser.create_context_menu(TOGGLE_MENU_ITEM_ID, title)

    async def cleanup(self) -> None:
        await self._browser.remove_context_menus()

    async def update_settings(self, settings: GlobalSettings) -> None:
        await self.cleanup()
        await self._options.set_settings(settings)
        await self.setup()
