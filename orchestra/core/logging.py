"""Logging helpers for Orchestra."""

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging.

    Args:
        level: Log level name.
    """

    if logging.getLogger().handlers:
        return

    logging.basicConfig(level=level, format=LOG_FORMAT)


def _handler_name(query_id: str) -> str:
    return f"orchestra-request-{query_id}"


def add_request_file_handler(log_dir: Path, query_id: str, level: str = "INFO") -> Path:
    """Attach a file handler that records one search request.

    Calling it again for the same request is a no-op.

    Args:
        log_dir: Directory holding per-request log files.
        query_id: Request identifier; names the file and the handler.
        level: Log level name.

    Returns:
        Path of the request's log file.
    """

    log_path = log_dir / f"{query_id}.log"
    root = logging.getLogger()
    name = _handler_name(query_id)
    if any(handler.get_name() == name for handler in root.handlers):
        return log_path

    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path)
    file_handler.set_name(name)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    return log_path


def remove_request_file_handler(query_id: str) -> None:
    """Detach and close the file handler of a finished request."""

    root = logging.getLogger()
    name = _handler_name(query_id)
    for handler in list(root.handlers):
        if handler.get_name() == name:
            root.removeHandler(handler)
            handler.close()
