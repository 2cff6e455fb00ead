"""``meross-lan-bridge``: run the bridge until SIGINT or SIGTERM."""

from __future__ import annotations

import asyncio
import signal
from typing import Iterable, Optional

from .api import ApiService
from .config import Config, load_config
from .errors import ConfigurationError
from .logging import configure_logging, get_logger
from .platform import MerossPlatform

logger = get_logger("meross")


def _stop_on_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handle(name: str) -> None:
        if not stop.is_set():
            logger.warning("Shutdown requested", extra={"signal": name})
            stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle, sig.name)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass


async def serve(config: Config, stop: Optional[asyncio.Event] = None) -> None:
    """Start the platform (and API when enabled), then wait for ``stop``."""

    stop = stop or asyncio.Event()
    _stop_on_signals(stop)
    platform = MerossPlatform(config)
    api = ApiService(config, platform) if config.api_enabled else None

    await platform.start(reason="startup")
    try:
        if api is not None:
            await api.start()
        logger.info(
            "Bridge running",
            extra={
                "devices": sorted(platform.endpoints),
                "api": f"{config.api_host}:{config.api_port}" if api else None,
                "dry_run": config.dry_run,
            },
        )
        await stop.wait()
    finally:
        if api is not None:
            await api.stop()
        await platform.stop(reason="shutdown")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """Console-script entrypoint."""

    config = load_config(cli_args)
    configure_logging(config)
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})
    try:
        asyncio.run(serve(config))
    except ConfigurationError as exc:
        logger.error("Refusing to start: %s", exc)
        raise SystemExit(2) from exc
    except KeyboardInterrupt:
        logger.warning("Interrupted")


if __name__ == "__main__":
    run()
