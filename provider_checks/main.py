from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys

import structlog
import uvicorn

from monitoring.api import create_app
from monitoring.config import DEFAULT_CONFIG_PATH, load_config
from monitoring.logging_setup import configure_logging
from monitoring.runtime import MonitorRuntime
from provider_checks.common_check import AVAILABLE_STATUSES


logger = structlog.get_logger("provider-monitor")


async def run_once(config_path: str) -> int:
    """One check round; prints results as JSON. Exit code 1 if any provider is unavailable."""
    config = load_config(config_path)
    async with MonitorRuntime(config, schedule=False) as runtime:
        results = await runtime.poller.tick()

    json.dump([r.to_dict() for r in results], sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    if not results:
        return 1
    return 0 if all(r.status in AVAILABLE_STATUSES for r in results) else 1


async def run_loop(config_path: str) -> int:
    config = load_config(config_path)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    async with MonitorRuntime(config, config_loader=lambda: load_config(config_path)):
        logger.info("monitor_running", config=config_path, interval_seconds=config.poll_interval_seconds)
        await stop.wait()
    return 0


async def serve(config_path: str, host: str | None, port: int | None) -> int:
    config = load_config(config_path)
    runtime = MonitorRuntime(config, config_loader=lambda: load_config(config_path))
    app = create_app(runtime, manage_runtime=True)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=host or config.api_host,
            port=port or config.api_port,
            log_level=config.log_level.lower(),
        )
    )
    await server.serve()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="AI provider health monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("MONITORING_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one check round and exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); defaults to the config value",
    )
    parser.add_argument("--serve", action="store_true", help="Serve the status API while polling")
    parser.add_argument("--host", default=None, help="Status API bind host")
    parser.add_argument("--port", type=int, default=None, help="Status API port")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or config.log_level, config.log_format)

    if args.once:
        return asyncio.run(run_once(args.config))
    if args.serve:
        return asyncio.run(serve(args.config, args.host, args.port))
    return asyncio.run(run_loop(args.config))


if __name__ == "__main__":
    raise SystemExit(main())
