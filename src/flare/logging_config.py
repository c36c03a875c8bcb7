"""
Logging configuration for the flare CLI.
"""

import logging
import logging.config
from typing import Any, Dict


class SourceLineFilter(logging.Filter):
    """Expose the script line of a FlareError passed as the log argument."""

    def filter(self, record: logging.LogRecord) -> bool:
        line = None
        if record.args and isinstance(record.args, tuple):
            line = getattr(record.args[0], "line", None)
        record.script_line = line if line is not None else "-"
        return True


def get_logging_config(debug: bool = False) -> Dict[str, Any]:
    """Get logging configuration; flare loggers report warnings unless debug is set."""
    level = "DEBUG" if debug else "WARNING"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "source_line": {
                "()": SourceLineFilter
            }
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "debug": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - [line %(script_line)s] %(message)s"
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "debug" if debug else "default",
                "stream": "ext://sys.stderr",
                "filters": ["source_line"]
            }
        },
        "loggers": {
            "flare": {
                "handlers": ["default"],
                "level": level,
                "propagate": False
            }
        },
        "root": {
            "level": "WARNING",
            "handlers": ["default"]
        }
    }


def setup_logging(debug: bool = False) -> None:
    """Apply the flare logging configuration."""
    logging.config.dictConfig(get_logging_config(debug))
