import os
import logging
from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

# ignore errors from these libs
import httpx, tomlkit

console = Console()


def setup_logging(level: str = None):
    FORMAT = "%(message)s"
    logging_handler = RichHandler(
        level=level or os.environ.get("LOGLEVEL", "INFO"),
        console=console,
        rich_tracebacks=True,
        tracebacks_suppress=[httpx, tomlkit]
    )

    logging.basicConfig(
        level="NOTSET", format=FORMAT, datefmt="[%X]", handlers=[logging_handler]
    )

    # httpx logs every request at INFO, keep it quieter than our own messages
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    install(
        console=console,
        suppress=[httpx, tomlkit]
    )
