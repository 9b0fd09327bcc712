"""Process wide logging setup with an extra TRACE level below DEBUG."""

from __future__ import annotations

import logging
import os
import sys

TRACE_LEVEL = 5
logging.addLevelName(TRACE_LEVEL, "TRACE")


def configure_logging(default_level: str = "INFO") -> logging.Logger:
    level_name = os.getenv("PIPELINE_LOG_LEVEL", default_level).upper()
    level = TRACE_LEVEL if level_name == "TRACE" else getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s | %(message)s",
    )
    return logging.getLogger("pdfviewer")


__all__ = ["TRACE_LEVEL", "configure_logging"]
