from __future__ import annotations

import asyncio
import json
import socket
import threading
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

import pytest


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def test_gateway_well_known_without_shell() -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from extension_hosts.injector.gateway import (
        GATEWAY_WELL_KNOWN_PATH,
        INJECTOR_PROTOCOL_VERSION,
        ExtensionGateway,
    )

    port = _free_port()
    gw = ExtensionGateway(host="127.0.0.1", port=port)
    gw.start()
    try:
        assert gw.status().get("listening") is True
        assert gw.is_connected() is False
        assert gw.wait_for_connection(timeout=0.1) is False

        url = f"http://127.0.0.1:{port}{GATEWAY_WELL_KNOWN_PATH}"
        with urllib.request.urlopen(url, timeout=1.0) as resp:  # noqa: S310
            doc = json.loads(resp.read().decode("utf-8"))
        assert doc.get("type") == "injectorGateway"
        assert doc.get("protocolVersion") == INJECTOR_PROTOCOL_VERSION
        assert doc.get("gatewayPort") == port
        assert doc.get("shellConnected") is False

        with pytest.raises(urllib.error.HTTPError) as err:
            urllib.request.urlopen(f"http://127.0.0.1:{port}/blobs/nope", timeout=1.0)  # noqa: S310
        assert err.value.code == 404
    finally:
        gw.stop(timeout=2.0)


def test_injector_host_action_click_roundtrip(tmp_path: Path) -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from extension_hosts.injector.config import InjectorConfig
    from extension_hosts.injector.gateway import BLOB_PATH_PREFIX, INJECTOR_PROTOCOL_VERSION
    from extension_hosts.injector.main import InjectorHost

    port = _free_port()
    config = InjectorConfig(options_path=str(tmp_path / "options.json"), port=port)
    host = InjectorHost(config)
    host.start()

    ext_id = "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
    connected = threading.Event()
    reloaded = threading.Event()
    stop = threading.Event()
    notifies: list[dict[str, Any]] = []
    cookies: dict[str, dict[str, Any]] = {}

    def _client() -> None:
        async def _main() -> None:
            uri = f"ws://127.0.0.1:{port}"
            async with websockets.connect(uri, origin=f"chrome-extension://{ext_id}", ping_interval=None) as ws:
                await ws.send(json.dumps({"type": "hello", "extensionId": ext_id, "extensionVersion": "0.0.0"}))
                ack = json.loads(await ws.recv())
                assert ack.get("type") == "helloAck"
                assert ack.get("protocolVersion") == INJECTOR_PROTOCOL_VERSION
                assert ack.get("blobPath") == BLOB_PATH_PREFIX
                connected.set()

                await ws.send(
                    json.dumps(
                        {
                            "type": "event",
                            "event": "actionClicked",
                            "tab": {"id": 7, "url": "https://example.test/page#top"},
                        }
                    )
                )

                while not stop.is_set():
                    try:
                        raw = await asyncio.wait_for(ws.recv(), timeout=0.2)
                    except asyncio.TimeoutError:
                        continue
                    msg = json.loads(raw)
                    params = msg.get("params") if isinstance(msg.get("params"), dict) else {}

                    if msg.get("type") == "notify":
                        notifies.append(msg)
                        if msg.get("method") == "tabs.reload":
                            reloaded.set()
                        continue
                    if msg.get("type") != "rpc":
                        continue

                    req_id = msg.get("id")
                    method = msg.get("method")
                    if method == "cookies.set":
                        cookies[params["url"]] = params
                        result: Any = {"name": params["name"]}
                    elif method == "cookies.remove":
                        cookies.pop(params.get("url"), None)
                        result = None
                    elif method == "tabs.get":
                        result = {"id": params.get("tabId"), "url": "https://example.test/page"}
                    else:
                        await ws.send(
                            json.dumps(
                                {"type": "rpcResult", "id": req_id, "ok": False, "error": {"message": "unknown"}}
                            )
                        )
                        continue
                    await ws.send(json.dumps({"type": "rpcResult", "id": req_id, "ok": True, "result": result}))

        asyncio.run(_main())

    t = threading.Thread(target=_client, name="test-injector-shell", daemon=True)
    t.start()
    try:
        assert connected.wait(timeout=3.0)
        assert reloaded.wait(timeout=3.0)

        methods = [m.get("method") for m in notifies]
        assert methods[0] == "contextMenus.removeAll"
        assert methods.index("pageAction.setTitle") < methods.index("tabs.reload")
        title = next(m for m in notifies if m.get("method") == "pageAction.setTitle")
        assert title["params"] == {"tabId": 7, "title": "Disable on this page"}
        reload = next(m for m in notifies if m.get("method") == "tabs.reload")
        assert reload["params"] == {"tabId": 7, "bypassCache": True}

        cookie = cookies["https://example.test/page"]
        assert cookie["name"] == "wtf"
        assert cookie["path"] == "/page"

        blob_url = f"http://127.0.0.1:{port}{BLOB_PATH_PREFIX}{cookie['value']}"
        with urllib.request.urlopen(blob_url, timeout=1.0) as resp:  # noqa: S310
            assert json.loads(resp.read().decode("utf-8")) == {}

        tab = host.gateway.run_coroutine(host.browser.get_tab(7), timeout=2.0)
        assert tab is not None and tab.url == "https://example.test/page"

        st = host.status()
        assert st.get("connected") is True
        assert st.get("client", {}).get("extensionId") == ext_id
        assert st.get("host_state", {}).get("liveHandles") == 1
        assert st.get("host_state", {}).get("pages") == 1

        saved = json.loads((tmp_path / "options.json").read_text(encoding="utf-8"))
        assert saved["pages"]["https://example.test/page"]["status"] == "whitelisted"
    finally:
        stop.set()
        t.join(timeout=2.0)
        host.stop()
