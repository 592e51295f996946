"""Run the signal alert API under uvicorn (``signal-alert`` console script)."""
from __future__ import annotations

import uvicorn

from core import get_settings
from core.logs import configure_logging


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_dir)
    uvicorn.run(
        "app.api:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
