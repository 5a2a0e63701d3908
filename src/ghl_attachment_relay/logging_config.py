import logging
import os
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class RecentLogBuffer(logging.Handler):
    """
    Keeps the last `capacity` formatted log lines in memory for the admin UI (`GET /api/logs`).
    """

    def __init__(self, capacity: int = 200) -> None:
        super().__init__()
        self._lines: deque[str] = deque(maxlen=capacity)
        self._buf_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
            line = f"{stamp}: [{record.levelname}] {record.getMessage()}"
        except Exception:
            self.handleError(record)
            return
        with self._buf_lock:
            self._lines.append(line)

    def lines(self) -> list[str]:
        with self._buf_lock:
            return list(self._lines)

    def clear(self) -> None:
        with self._buf_lock:
            self._lines.clear()


def configure_logging(
    level: str = "INFO",
    file_path: Optional[str] = None,
    *,
    buffer: Optional[RecentLogBuffer] = None,
) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    if buffer is not None:
        # Only our own messages; library chatter stays out of the UI.
        buffer.addFilter(logging.Filter("ghl_attachment_relay"))
        handlers.append(buffer)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # allow configure_logging() to be called multiple times (CLI does this)
    )

    # Reduce noise from chatty libraries
    for noisy in ("playwright", "httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))
