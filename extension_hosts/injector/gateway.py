from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from .config import InjectorConfig
from .errors import GatewayError

INJECTOR_PROTOCOL_VERSION = "2026-10-01"
GATEWAY_WELL_KNOWN_PATH = "/.well-known/injector-gateway"
BLOB_PATH_PREFIX = "/blobs/"

_LOGGER = logging.getLogger("injector.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The injector gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


@dataclass(frozen=True)
class ShellClientInfo:
    extension_id: str
    extension_version: str | None = None
    user_agent: str | None = None


class ExtensionGateway:
    """Local WebSocket gateway for the browser extension shell.

    The shell forwards browser events (`{"type": "event", ...}`) and executes the
    browser calls the host asks for. Calls with a result go out as `rpc` and are
    answered with `rpcResult`; page-action/reload/menu calls go out as `notify`.

    The same port serves two plain HTTP endpoints: the discovery document and
    `/blobs/<handle>` for the in-page agent's configuration.

    The server runs its own event loop in a daemon thread; every event handler
    and every coroutine handed to `run_coroutine` runs on that loop.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 8766,
        expected_extension_id: str | None = None,
        rpc_timeout: float = 10.0,
        on_event: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
        on_connect: Callable[[], Awaitable[None]] | None = None,
        blob_source: Callable[[str], bytes | None] | None = None,
        status_source: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.expected_extension_id = expected_extension_id
        self.rpc_timeout = float(rpc_timeout)
        self._on_event = on_event
        self._on_connect = on_connect
        self._blob_source = blob_source
        self._status_source = status_source
        self._server_started_at_ms = _now_ms()

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._connected = threading.Event()

        self._server: Any | None = None
        self._ws: Any | None = None
        self._bind_error: str | None = None
        self._session_id: str | None = None
        self._client: ShellClientInfo | None = None
        self._client_last_seen_ms = 0

        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()

        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

    @classmethod
    def from_config(cls, config: InjectorConfig, **kwargs: Any) -> ExtensionGateway:
        return cls(
            host=config.host,
            port=config.port,
            expected_extension_id=config.expected_extension_id,
            rpc_timeout=config.rpc_timeout,
            **kwargs,
        )

    def bind(
        self,
        *,
        on_event: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
        on_connect: Callable[[], Awaitable[None]] | None = None,
        blob_source: Callable[[str], bytes | None] | None = None,
        status_source: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        """Late wiring: the controller needs the gateway before the gateway can call it."""
        if on_event is not None:
            self._on_event = on_event
        if on_connect is not None:
            self._on_connect = on_connect
        if blob_source is not None:
            self._blob_source = blob_source
        if status_source is not None:
            self._status_source = status_source

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop.clear()
        with self._lock:
            self._bind_error = None

        t = threading.Thread(target=self._run_thread, name="injector-gateway", daemon=True)
        self._thread = t
        t.start()

        deadline = time.time() + max(0.05, float(wait_timeout))
        while time.time() < deadline:
            with self._lock:
                server = self._server
            if server is not None:
                return
            if not t.is_alive():
                break
            time.sleep(0.05)

        with self._lock:
            bind_error = self._bind_error
            server = self._server
        if server is not None:
            return
        if bind_error:
            raise RuntimeError(f"Injector gateway bind failed on {self.host}:{self.port}: {bind_error}")
        raise RuntimeError(f"Injector gateway failed to start on {self.host}:{self.port}")

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        loop = self._loop
        if loop is not None and loop.is_running():
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop).result(timeout=timeout)

        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def run_coroutine(self, coro: Coroutine[Any, Any, Any], *, timeout: float = 10.0) -> Any:
        """Run ``coro`` on the gateway loop from another thread and wait for its result."""
        loop = self._loop
        if loop is None or not loop.is_running():
            coro.close()
            raise GatewayError("Injector gateway loop is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=timeout)

    def status(self) -> dict[str, Any]:
        with self._lock:
            connected = self._ws is not None
            client = self._client
            sid = self._session_id
            last_seen = int(self._client_last_seen_ms or 0)
            bind_error = self._bind_error
            listening = self._server is not None
            logs = list(self._logs)[-20:]

        extra: dict[str, Any] = {}
        if self._status_source is not None:
            try:
                extra = dict(self._status_source())
            except Exception:  # noqa: BLE001
                _LOGGER.exception("status source failed")

        return {
            "listening": listening,
            "host": self.host,
            "port": self.port,
            "connected": connected,
            "sessionId": sid,
            **({"bindError": bind_error} if bind_error else {}),
            "client": (
                {
                    "extensionId": client.extension_id,
                    **({"extensionVersion": client.extension_version} if client.extension_version else {}),
                    **({"userAgent": client.user_agent} if client.user_agent else {}),
                    **({"lastSeenMs": last_seen} if last_seen else {}),
                }
                if isinstance(client, ShellClientInfo)
                else None
            ),
            **({"logs": logs} if logs else {}),
            **({"host_state": extra} if extra else {}),
        }

    def is_connected(self) -> bool:
        with self._lock:
            return self._ws is not None

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        return bool(self._connected.wait(timeout=max(0.0, float(timeout))))

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound calls (gateway loop only)
    # ─────────────────────────────────────────────────────────────────────────

    async def rpc(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise GatewayError("RPC method is required")

        with self._lock:
            ws = self._ws
            if ws is None:
                raise GatewayError("Extension shell is not connected")
            req_id = self._next_id
            self._next_id += 1
            fut = asyncio.get_running_loop().create_future()
            self._pending[req_id] = fut

        msg: dict[str, Any] = {"type": "rpc", "id": req_id, "method": method}
        if isinstance(params, dict) and params:
            msg["params"] = params

        try:
            await self._ws_send_json(ws, msg)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._pending.pop(req_id, None)
            raise GatewayError(f"RPC send failed: {method}: {exc}") from exc

        limit = self.rpc_timeout if timeout is None else float(timeout)
        try:
            return await asyncio.wait_for(fut, timeout=max(0.1, limit))
        except asyncio.TimeoutError as exc:
            raise GatewayError(f"RPC timed out: method={method}") from exc
        finally:
            with self._lock:
                self._pending.pop(req_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        with self._lock:
            ws = self._ws
        if ws is None:
            raise GatewayError("Extension shell is not connected")
        msg: dict[str, Any] = {"type": "notify", "method": method}
        if isinstance(params, dict) and params:
            msg["params"] = params
        try:
            await self._ws_send_json(ws, msg)
        except Exception as exc:  # noqa: BLE001
            raise GatewayError(f"notify failed: {method}: {exc}") from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    def _log(self, level: str, message: str) -> None:
        with self._lock:
            self._logs.append({"ts": _now_ms(), "level": level, "message": message[:2000]})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_callback(self, label: str, fn: Callable[[], Awaitable[None]]) -> None:
        try:
            await fn()
        except Exception:  # noqa: BLE001
            _LOGGER.exception("%s failed", label)

    async def _handle_shell(self, ws) -> None:  # type: ignore[no-untyped-def]
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=2.5)
        except Exception:  # noqa: BLE001
            self._log("warn", "shell hello timeout")
            return

        try:
            hello = json.loads(raw)
        except ValueError:
            hello = None

        if not isinstance(hello, dict) or hello.get("type") != "hello":
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="expected hello")
            return

        ext_id = str(hello.get("extensionId") or "").strip()
        if not ext_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="missing extensionId")
            return
        if self.expected_extension_id is not None and ext_id != self.expected_extension_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1008, reason="unexpected extensionId")
            return

        client = ShellClientInfo(
            extension_id=ext_id,
            extension_version=str(hello.get("extensionVersion") or "") or None,
            user_agent=str(hello.get("userAgent") or "") or None,
        )
        session_id = f"inj-{_now_ms()}-{os.getpid()}"

        # Replace the active shell (MV3 service workers reconnect often).
        with self._lock:
            self._ws = ws
            self._client = client
            self._session_id = session_id
            self._client_last_seen_ms = _now_ms()
            self._connected.clear()

        try:
            await self._ws_send_json(
                ws,
                {
                    "type": "helloAck",
                    "protocolVersion": INJECTOR_PROTOCOL_VERSION,
                    "sessionId": session_id,
                    "serverStartedAtMs": int(self._server_started_at_ms),
                    "gatewayPort": int(self.port),
                    "blobPath": BLOB_PATH_PREFIX,
                },
            )
        except Exception:  # noqa: BLE001
            with self._lock:
                if self._ws is ws:
                    self._ws = None
            return
        self._connected.set()
        _LOGGER.info("shell connected extensionId=%s session=%s", ext_id, session_id)

        on_connect = self._on_connect
        if on_connect is not None:
            self._spawn(self._run_callback("on_connect", on_connect))

        try:
            async for raw_msg in ws:
                with self._lock:
                    self._client_last_seen_ms = _now_ms()
                try:
                    msg = json.loads(raw_msg)
                except ValueError:
                    _LOGGER.debug("malformed frame dropped")
                    continue
                await self._on_message(ws, msg)
        except Exception:  # noqa: BLE001
            pass
        finally:
            self._disconnect(ws)

    def _blob_response(self, path: str):  # type: ignore[no-untyped-def]
        handle = path[len(BLOB_PATH_PREFIX) :].strip("/")
        source = self._blob_source
        data = source(handle) if (source is not None and handle) else None
        if data is None:
            return None
        return self._http_response(200, "OK", "application/json", data)

    def _well_known_response(self):  # type: ignore[no-untyped-def]
        with self._lock:
            connected = self._ws is not None
        payload = {
            "type": "injectorGateway",
            "protocolVersion": INJECTOR_PROTOCOL_VERSION,
            "serverStartedAtMs": int(self._server_started_at_ms),
            "gatewayPort": int(self.port),
            "pid": int(os.getpid()),
            "shellConnected": bool(connected),
        }
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        return self._http_response(200, "OK", "application/json", body)

    def _http_response(self, status: int, reason: str, content_type: str, body: bytes):  # type: ignore[no-untyped-def]
        from websockets.datastructures import Headers as WsHeaders  # type: ignore[import-not-found]
        from websockets.http11 import Response as WsResponse  # type: ignore[import-not-found]

        headers = WsHeaders()
        headers["Content-Type"] = content_type
        headers["Content-Length"] = str(len(body))
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        return WsResponse(status, reason, headers, body)

    async def _process_request(self, _conn, request):  # type: ignore[no-untyped-def]
        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:  # noqa: BLE001
            upgrade = ""
        if upgrade == "websocket":
            return None

        try:
            path = str(getattr(request, "path", "") or "").split("?", 1)[0]
            if path == GATEWAY_WELL_KNOWN_PATH:
                return self._well_known_response()
            if path.startswith(BLOB_PATH_PREFIX):
                resp = self._blob_response(path)
                if resp is not None:
                    return resp
            return self._http_response(404, "Not Found", "text/plain", b"not found")
        except Exception:  # noqa: BLE001
            _LOGGER.exception("http request failed")
            return self._http_response(500, "Internal Server Error", "text/plain", b"error")

    async def _run_async(self) -> None:
        websockets = _import_websockets()
        self._loop = asyncio.get_running_loop()

        backoff_s = 0.25
        max_backoff_s = 5.0
        try:
            while not self._stop.is_set():
                with self._lock:
                    has_server = self._server is not None
                if has_server:
                    await asyncio.sleep(0.25)
                    continue

                try:
                    server = await websockets.serve(
                        self._handle_shell,
                        self.host,
                        self.port,
                        origins=[None, re.compile(r"^null$"), re.compile(r"^chrome-extension://[a-p]{32}/?$")],
                        process_request=self._process_request,
                        max_size=2_000_000,
                        ping_interval=None,
                    )
                except OSError as exc:
                    with self._lock:
                        self._bind_error = str(exc)
                    self._log("error", f"gateway bind failed: {exc}")
                    await asyncio.sleep(backoff_s)
                    backoff_s = min(backoff_s * 1.6, max_backoff_s)
                    continue

                with self._lock:
                    self._server = server
                    self._bind_error = None
                backoff_s = 0.25
                _LOGGER.info("gateway listening on %s:%s", self.host, self.port)
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        with self._lock:
            srv = self._server
            self._server = None
            ws = self._ws
        if srv is not None:
            with contextlib.suppress(Exception):
                srv.close()
                await srv.wait_closed()
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
            self._disconnect(ws)

    def _disconnect(self, ws) -> None:  # type: ignore[no-untyped-def]
        with self._lock:
            if self._ws is not ws:
                return
            self._ws = None
            self._client = None
            self._session_id = None
            self._client_last_seen_ms = 0
            self._connected.clear()
            pending = list(self._pending.values())
            self._pending.clear()

        for fut in pending:
            if not fut.done():
                fut.set_exception(GatewayError("Extension shell disconnected"))
        _LOGGER.info("shell disconnected")

    async def _on_message(self, ws, msg: Any) -> None:  # type: ignore[no-untyped-def]
        if not isinstance(msg, dict):
            return

        mtype = msg.get("type")

        if mtype == "event":
            on_event = self._on_event
            if on_event is not None:
                # One task per event, created in arrival order. Handlers may await
                # RPC results that arrive on this same receive loop.
                self._spawn(on_event(msg))
            return

        if mtype == "rpcResult":
            try:
                req_id = int(msg.get("id"))
            except (TypeError, ValueError):
                return
            with self._lock:
                fut = self._pending.get(req_id)
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("result"))
                return
            err = msg.get("error")
            err_msg = err.get("message") if isinstance(err, dict) and isinstance(err.get("message"), str) else None
            fut.set_exception(GatewayError(err_msg or "Extension RPC failed"))
            return

        if mtype == "log":
            level = str(msg.get("level") or "info")
            self._log(level if level in {"debug", "info", "warn", "error"} else "info", str(msg.get("message") or ""))
            return

        if mtype == "ping":
            with contextlib.suppress(Exception):
                await self._ws_send_json(ws, {"type": "pong", "ts": _now_ms()})
            return

    async def _ws_send_json(self, ws, payload: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        await ws.send(json.dumps(payload, ensure_ascii=False))
