from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class TabInfo:
    id: int
    url: str

    @classmethod
    def from_payload(cls, raw: Any) -> TabInfo | None:
        if not isinstance(raw, dict):
            return None
        try:
            tab_id = int(raw.get("id"))
        except (TypeError, ValueError):
            return None
        url = raw.get("url")
        return cls(id=tab_id, url=url if isinstance(url, str) else "")


class BrowserApi(Protocol):
    async def get_tab(self, tab_id: int) -> TabInfo | None: ...

    async def reload_tab(self, tab_id: int, *, bypass_cache: bool = True) -> None: ...

    async def set_cookie(self, *, url: str, name: str, value: str, path: str) -> None: ...

    async def remove_cookie(self, *, url: str, name: str) -> None: ...

    async def set_action_title(self, tab_id: int, title: str) -> None: ...

    async def set_action_icon(self, tab_id: int, path: str) -> None: ...

    async def show_action(self, tab_id: int) -> None: ...

    async def hide_action(self, tab_id: int) -> None: ...

    async def create_context_menu(self, item_id: str, title: str) -> None: ...

    async def remove_context_menus(self) -> None: ...


class _Transport(Protocol):
    async def rpc(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any: ...

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None: ...


class GatewayBrowserApi:
    """BrowserApi over the extension gateway.

    Calls whose result matters (tabs, cookies) are RPCs answered by the shell;
    page-action, reload and context-menu calls are notifications.
    """

    def __init__(self, transport: _Transport) -> None:
        self._transport = transport

    async def get_tab(self, tab_id: int) -> TabInfo | None:
        res = await self._transport.rpc("tabs.get", {"tabId": int(tab_id)})
        return TabInfo.from_payload(res)

    async def reload_tab(self, tab_id: int, *, bypass_cache: bool = True) -> None:
        await self._transport.notify("tabs.reload", {"tabId": int(tab_id), "bypassCache": bool(bypass_cache)})

    async def set_cookie(self, *, url: str, name: str, value: str, path: str) -> None:
        await self._transport.rpc("cookies.set", {"url": url, "name": name, "value": value, "path": path})

    async def remove_cookie(self, *, url: str, name: str) -> None:
        await self._transport.rpc("cookies.remove", {"url": url, "name": name})

    async def set_action_title(self, tab_id: int, title: str) -> None:
        await self._transport.notify("pageAction.setTitle", {"tabId": int(tab_id), "title": title})

    async def set_action_icon(self, tab_id: int, path: str) -> None:
        await self._transport.notify("pageAction.setIcon", {"tabId": int(tab_id), "path": path})

    async def show_action(self, tab_id: int) -> None:
        await self._transport.notify("pageAction.show", {"tabId": int(tab_id)})

    async def hide_action(self, tab_id: int) -> None:
        await self._transport.notify("pageAction.hide", {"tabId": int(tab_id)})

    async def create_context_menu(self, item_id: str, title: str) -> None:
        await self._transport.notify("contextMenus.create", {"id": item_id, "title": title, "contexts": ["page"]})

    async def remove_context_menus(self) -> None:
        await self._transport.notify("contextMenus.removeAll")
