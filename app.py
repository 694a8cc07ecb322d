from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import threading
from typing import Any, Optional

import uvicorn

from heapwarden.core.config import ConfigManager
from heapwarden.core.config.paths import ConfigFsPaths
from heapwarden.core.errors import ConfigError
from heapwarden.core.logger import setup_logging
from heapwarden.core.services import MonitorServices, build_services
from heapwarden.web.api import create_app


class WebServerHandle:
    def __init__(self, *, app: Any, host: str, port: int, logger):
        self.app = app
        self.host = host
        self.port = port
        self.logger = logger
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        cfg = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="info")
        self._server = uvicorn.Server(cfg)

        def run() -> None:
            assert self._server is not None
            self._server.run()

        self._thread = threading.Thread(target=run, name="heapwarden-web", daemon=True)
        self._thread.start()
        self.logger.info(f"Web server started on http://{self.host}:{self.port}")

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=3.0)


def _start_web(services: MonitorServices, cfg, logger) -> Optional[WebServerHandle]:
    if not cfg.web.enabled:
        return None
    fastapi_app = create_app(
        services,
        logger=logger,
        prefix=cfg.web.prefix,
        post_optimization_settle_seconds=float(cfg.web.post_optimization_settle_seconds),
    )
    h = WebServerHandle(app=fastapi_app, host=cfg.web.bind_host, port=int(cfg.web.port), logger=logger)
    h.start()
    return h


def main() -> None:
    ap = argparse.ArgumentParser(description="heapwarden: leak detection and heap tuning service")
    ap.add_argument("--root", default=".", help="Directory holding config/ (created if missing).")
    ap.add_argument("--report", action="store_true", help="Print one leak + heap report as JSON and exit.")
    ap.add_argument("--no-web", action="store_true", help="Run the background monitors without the HTTP endpoints.")
    args = ap.parse_args()

    config = ConfigManager(fs=ConfigFsPaths(args.root), logger=logging.getLogger("heapwarden"))
    try:
        cfg = config.load_all()
    except ConfigError as e:
        raise SystemExit(f"{e.user_message} {e.context.get('path', '')}")
    logger = setup_logging(os.path.join(args.root, cfg.logging.log_dir), level=getattr(logging, cfg.logging.level.upper(), logging.INFO))

    services = build_services(cfg, root=args.root, logger=logger)
    if services.init_errors:
        logger.warning(f"Running degraded: {', '.join(sorted(services.init_errors))} unavailable.")

    if args.report:
        out = {
            "leaks": services.leak_detector.get_leak_report() if services.leak_detector is not None else None,
            "heap": services.heap_tuner.get_optimization_report() if services.heap_tuner is not None else None,
            "init_errors": services.init_errors,
        }
        print(json.dumps(out, indent=2, default=str))
        services.stop()
        return

    web = None if args.no_web else _start_web(services, cfg, logger)

    stop_event = threading.Event()

    def _on_signal(signum, _frame) -> None:
        logger.info(f"Signal {signum} received; shutting down.")
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _on_signal)

    logger.info("heapwarden ready.")
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        if web is not None:
            web.stop()
        services.stop()
        logger.info("heapwarden stopped.")


if __name__ == "__main__":
    main()
