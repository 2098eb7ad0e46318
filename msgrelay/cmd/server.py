from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from msgrelay.config import ServerConfig, load_config
from msgrelay.server.runtime import RelayServer

log = logging.getLogger("msgrelay.cmd.server")


async def _run(config: ServerConfig) -> None:
    server = RelayServer(config)
    await server.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Message relay server")
    parser.add_argument("--config", default=None, help="Path to server YAML config")
    parser.add_argument("--listen", default=None, help="Override listen address host:port")
    parser.add_argument("--ws-listen", default=None, help="Also accept WebSocket clients on host:port")
    parser.add_argument("--db", dest="db_path", default=None, help="Override user database path")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    overrides = {k: v for k, v in vars(args).items() if k != "config" and v is not None}
    if overrides:
        config = ServerConfig(**{**config.model_dump(), **overrides})

    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
