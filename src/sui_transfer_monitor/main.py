from __future__ import annotations

import asyncio
import logging
import signal

from .config import load_settings
from .errors import ConfigurationError
from .service import MonitorService

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    service = MonitorService(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            pass
    await service.run()


def main() -> None:
    try:
        asyncio.run(_main())
    except ConfigurationError as exc:
        configure_logging("ERROR")
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
