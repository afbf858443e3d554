"""Configure logging for the CLI and the API server."""

import logging
import sys

# Third-party loggers that only speak up in debug mode
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def setup_logging(debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger("bookmarks_sync")
    root.setLevel(level)
    # Called once per CLI invocation; keep a single handler on the current stderr
    handler = next((h for h in root.handlers if getattr(h, "_bookmarks_sync", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        handler._bookmarks_sync = True
        root.addHandler(handler)
    else:
        handler.stream = sys.stderr

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if debug else logging.WARNING)
