"""
Injector host entry point.

Wires the options store, the extension gateway and the tab event controller,
then serves until interrupted.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any

from .browser_api import GatewayBrowserApi
from .config import InjectorConfig, expand_path
from .controller import TabEventController
from .gateway import ExtensionGateway
from .options import Options
from .options_persist import JsonFileOptionsBackend

logger = logging.getLogger("injector")

__all__ = ["InjectorHost", "build_host", "main"]


class InjectorHost:
    def __init__(self, config: InjectorConfig) -> None:
        self.config = config
        self.options = Options(JsonFileOptionsBackend(config.options_path))
        self.gateway = ExtensionGateway.from_config(config)
        self.browser = GatewayBrowserApi(self.gateway)
        self.controller = TabEventController(self.options, self.browser, config=config)
        self.gateway.bind(
            on_event=self.controller.dispatch,
            on_connect=self.controller.browser_connected,
            blob_source=self.controller.sync.read_blob,
            status_source=self.controller.status,
        )

    def start(self) -> None:
        self.options.load()
        self.gateway.start()
        logger.info(
            "injector host ready on %s:%s options=%s",
            self.config.host,
            self.gateway.port,
            self.config.options_path,
        )

    def stop(self) -> None:
        self.gateway.stop()

    def status(self) -> dict[str, Any]:
        return self.gateway.status()


def build_host(argv: list[str] | None = None) -> InjectorHost:
    parser = argparse.ArgumentParser(prog="injector-host", description="Per-page injection authorization host.")
    parser.add_argument("--host", help="gateway bind address (INJECTOR_HOST)")
    parser.add_argument("--port", type=int, help="gateway port (INJECTOR_PORT)")
    parser.add_argument("--options", help="options JSON path (INJECTOR_OPTIONS_PATH)")
    args = parser.parse_args(argv)

    config = InjectorConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.options:
        config.options_path = expand_path(args.options)
    return InjectorHost(config)


def main(argv: list[str] | None = None) -> int:
    host = build_host(argv)
    logging.basicConfig(
        level=getattr(logging, host.config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        host.start()
    except Exception as exc:  # noqa: BLE001
        logger.error("gateway_start_failed: %s", exc)
        host.stop()
        return 1

    done = threading.Event()

    def _on_signal(signum, _frame) -> None:  # noqa: ANN001
        logger.info("signal %s, shutting down", signum)
        done.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    while not done.wait(0.5):
        pass
    host.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
