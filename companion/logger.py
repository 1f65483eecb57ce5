from __future__ import annotations

import logging

from .settings import Settings, settings as default_settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(settings: Settings = default_settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # httpx logs full request URLs at INFO, which include authorization codes
    logging.getLogger("httpx").setLevel(logging.WARNING)
