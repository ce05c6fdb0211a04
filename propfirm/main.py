#!/usr/bin/env python3
"""
main.py — Prop Firm Engine Entry Point

Commands:
    serve    provision the wallet pool from FUNDED_WALLETS and run the HTTP API
    pool     print wallet pool utilization
    agents   print the agent roster

Usage:
    python main.py serve [--host 0.0.0.0] [--port 3000]
    python main.py pool
    python main.py agents [--status active|revoked|all]

Environment:
    See .env.example for configuration.
"""

import argparse
import asyncio
import json
import os
import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

import propfirm_api
from config import EngineConfig
from prop_firm import PropFirm

load_dotenv()


def setup_logging(log_level: str = "INFO") -> None:
    os.makedirs("logs", exist_ok=True)
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    logger.add(
        "logs/propfirm.log",
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )


def cmd_serve(cfg: EngineConfig, args: argparse.Namespace) -> None:
    firm = PropFirm.from_config(cfg)
    firm.provision_pool()
    if firm.pool.count_total() == 0:
        logger.warning("No funded wallets configured; every onboarding will return no_capacity")
    propfirm_api.set_firm(firm)

    host = args.host or cfg.host
    port = args.port or cfg.port
    logger.info(f"=== Prop Firm Engine listening on {host}:{port} ===")
    # propfirm_api.lifespan closes the firm when the server shuts down.
    uvicorn.run(propfirm_api.app, host=host, port=port, log_level=cfg.log_level.lower())


def cmd_pool(cfg: EngineConfig, args: argparse.Namespace) -> None:
    firm = PropFirm.from_config(cfg)
    try:
        print(json.dumps(firm.pool_utilization(), indent=2))
    finally:
        asyncio.run(firm.close())


def cmd_agents(cfg: EngineConfig, args: argparse.Namespace) -> None:
    firm = PropFirm.from_config(cfg)
    try:
        agents = firm.list_agents(args.status)
        print(json.dumps([a.to_dict() for a in agents], indent=2))
    finally:
        asyncio.run(firm.close())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prop Firm Engine")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: PORT or 3000)")
    serve.set_defaults(func=cmd_serve)

    pool = sub.add_parser("pool", help="Show wallet pool utilization")
    pool.set_defaults(func=cmd_pool)

    agents = sub.add_parser("agents", help="List agents")
    agents.add_argument("--status", choices=["active", "revoked", "all"], default="all")
    agents.set_defaults(func=cmd_agents)
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    try:
        cfg = EngineConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(cfg.log_level)
    args.func(cfg, args)


if __name__ == "__main__":
    main()
