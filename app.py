"""
Process entrypoint: load the environment, configure logging and serve the
health/status app with uvicorn. The ASGI lifespan starts and stops the
orchestration runtime, so uvicorn's signal handling drives graceful shutdown.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from hearth.config import Settings, get_settings
from hearth.http_app import create_starlette_app
from hearth.logging_config import configure_logging

logger = logging.getLogger("hearth")


def _log_startup(settings: Settings) -> None:
    logger.info("hearth %s starting on %s:%s", settings.app_version, settings.host, settings.port)
    logger.info("Data: %s  Groups: %s", settings.data_dir, settings.groups_dir)
    logger.info(
        "Sandbox: %s %s (timeout %.0fs)",
        " ".join(settings.sandbox_runtime),
        settings.sandbox_image,
        settings.sandbox_timeout,
    )
    logger.info(
        "Fast path: %s",
        settings.fast_path_model if settings.enable_fast_path and settings.openai_api_key else "off",
    )
    logger.info("Schedules evaluated in %s", settings.timezone)


def main() -> None:
    """Run the service until uvicorn receives a stop signal."""
    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_file, settings.log_level)
    _log_startup(settings)

    try:
        uvicorn.run(
            create_starlette_app(settings),
            host=settings.host,
            port=settings.port,
            log_config=None,
        )
    except Exception:
        logger.exception("Unexpected error while running uvicorn")
        raise
    finally:
        logger.info("hearth stopped")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nShutdown complete.", file=sys.stderr)
        sys.exit(0)
    except Exception:
        sys.exit(1)
    finally:
        logging.shutdown()
