from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .logging_config import RecentLogBuffer, configure_logging
from .service import build_service
from .store import ConfigStore


logger = logging.getLogger("ghl_attachment_relay")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ghl_attachment_relay")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API (login, OTP relay, attachment webhook)")
    serve.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    serve.add_argument("--host", default=None, help="Bind address (default: server.host from config)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: server.port from config)")
    serve.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    status = sub.add_parser("session-status", help="Check whether a tenant's saved session is still logged in")
    status.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    status.add_argument("--tenant", required=True, help="Tenant login email")
    status.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    init_db = sub.add_parser("init-db", help="Create the configuration database (and its backup) if missing")
    init_db.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    return p


def _load(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    if getattr(args, "headful", False):
        cfg.browser.headless = False
    return cfg


def _serve(cfg: AppConfig, *, host: Optional[str], port: Optional[int]) -> int:
    import uvicorn

    from .api import create_app

    buffer = RecentLogBuffer(cfg.logging.buffer_size)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path, buffer=buffer)

    service = build_service(cfg, log_buffer=buffer)
    app = create_app(service)

    host = host or cfg.server.host
    port = port or cfg.server.port
    logger.info("Serving on http://%s:%s", host, port)
    # log_config=None keeps uvicorn on the root handlers configured above.
    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


async def _session_status(cfg: AppConfig, tenant: str) -> str:
    service = build_service(cfg)
    try:
        status = await service.get_session_status(tenant)
    finally:
        await service.aclose()
    return status.value


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "serve":
        cfg = _load(args)
        return _serve(cfg, host=args.host, port=args.port)

    if args.cmd == "session-status":
        cfg = _load(args)
        configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
        status = asyncio.run(_session_status(cfg, args.tenant))
        print(status)
        return 0 if status == "Active" else 1

    if args.cmd == "init-db":
        cfg = _load(args)
        store = ConfigStore(cfg.store.db_path)
        store.close()
        logger.info("Database ready at %s", cfg.store.db_path)
        return 0

    raise SystemExit(f"Unknown command: {args.cmd}")
