import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)


def configure(level: str | int = logging.WARNING) -> None:
    logging.basicConfig(
        level=level,
        format="%(name)s - %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )
    # discovery logs every request at INFO
    if logging.getLogger().level > logging.DEBUG:
        logging.getLogger("googleapiclient").setLevel(logging.WARNING)


def level_for(verbosity: int, configured: str) -> str:
    match verbosity:
        case 0:
            return configured
        case 1:
            return "INFO"
        case _:
            return "DEBUG"
