"""Console logging for the host, the device agent and the CLIs.

Everything goes through one rich handler on the root logger. Modules
only ever call ``get_logger(__name__)``; entry points call
``setup_logging`` once before anything else logs.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

_console = Console(stderr=True)
_configured = False

# Libraries that log every request or statement at INFO
_CHATTY_LOGGERS = ("sqlalchemy.engine", "httpx", "multipart")
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _rich_handler(level: int, component: Optional[str]) -> RichHandler:
    handler = RichHandler(
        console=_console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
    )
    handler.setLevel(level)
    prefix = f"[bold cyan]\\[{component}][/] " if component else ""
    handler.setFormatter(logging.Formatter(prefix + "%(message)s"))
    return handler


def setup_logging(level: str = "INFO", component: Optional[str] = None) -> None:
    """Install the rich console handler. Only the first call has an effect.

    Args:
        level: "DEBUG", "INFO", "WARNING" or "ERROR".
        component: Tag shown before every line, e.g. "host" or "agent:8090".
    """
    global _configured
    if _configured:
        return
    _configured = True

    numeric = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_rich_handler(numeric, component))
    root.setLevel(numeric)

    for name in _UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
