from __future__ import annotations

import logging
import sys

from rateopt.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler per process so workers and the API share a format.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # arq logs every job start/finish at INFO; keep it one level quieter.
    logging.getLogger("arq").setLevel(max(logging.getLevelName(resolved), logging.WARNING))
    _configured = True
