"""
Logging bootstrap for the indexer process.

Handlers, formatters and per-component levels live in ``config/logging.yaml``
and are applied with :func:`logging.config.dictConfig`. File handlers with a
relative ``filename`` are rooted in the configured logs directory so the
indexer can run from any working directory.
"""

import os
import json
import logging
import logging.config
import yaml
from pathlib import Path
from typing import Dict, Any, Optional


DEFAULT_LOGGING_CONFIG_PATH = Path(__file__).resolve().parents[3] / 'config' / 'logging.yaml'

FALLBACK_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
FALLBACK_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else arrived through ``extra=``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra=`` fields promoted to top level."""

    def format(self, record):
        payload = dict(
            timestamp=self.formatTime(record, self.datefmt),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
            module=record.module,
            function=record.funcName,
            line=record.lineno,
        )
        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)

        payload.update(
            (key, value) for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
        )
        return json.dumps(payload, default=str)


def setup_logging(config_path: Optional[str] = None, logs_directory: Optional[str] = None) -> None:
    """
    Apply the YAML logging configuration.

    Falls back to a plain console configuration when the file is missing or
    cannot be applied, so a broken logging file never stops the indexer.

    Args:
        config_path: YAML file to load, ``config/logging.yaml`` by default
        logs_directory: Root for handler files given as relative paths
    """
    path = Path(config_path or DEFAULT_LOGGING_CONFIG_PATH).resolve()

    if not path.is_file():
        _console_only()
        logging.getLogger(__name__).warning("No logging config at %s, logging to console", path)
        return

    try:
        with path.open() as f:
            dict_config = yaml.safe_load(f)

        handlers = dict_config.get('handlers', {})
        if logs_directory:
            _root_handler_files(handlers, logs_directory)
        _ensure_handler_dirs(handlers)

        logging.config.dictConfig(dict_config)
    except Exception as e:
        _console_only()
        logging.getLogger(__name__).error("Could not apply logging config %s: %s", path, e)
        return

    logging.getLogger(__name__).info("Logging configured from %s", path)


def _console_only() -> None:
    logging.basicConfig(level=logging.INFO, format=FALLBACK_FORMAT, datefmt=FALLBACK_DATEFMT)


def _root_handler_files(handlers: Dict[str, Any], logs_directory: str) -> None:
    for handler in handlers.values():
        filename = handler.get('filename')
        if filename and not os.path.isabs(filename):
            handler['filename'] = os.path.join(logs_directory, filename)


def _ensure_handler_dirs(handlers: Dict[str, Any]) -> None:
    for handler in handlers.values():
        if 'filename' in handler:
            Path(handler['filename']).parent.mkdir(parents=True, exist_ok=True)


def get_logger(name: str) -> logging.Logger:
    """Return the named logger; a thin alias kept for call-site symmetry."""
    return logging.getLogger(name)
