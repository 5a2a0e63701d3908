from __future__ import annotations

import logging
import re
import threading
import time
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+\.png$")


class DiagnosticsRecorder:
    """
    Failure screenshots. Files live under `screenshot_dir`; callers refer to them by file name only.
    """

    def __init__(self, screenshot_dir: str) -> None:
        self.screenshot_dir = Path(screenshot_dir)
        self._latest: dict[str, str] = {}
        self._lock = threading.Lock()

    async def capture(self, session, *, tenant_id: str, prefix: str) -> Optional[str]:
        """
        Best-effort screenshot of the current page. Never raises; returns the file name or None.
        """
        safe_tenant = re.sub(r"[^a-zA-Z0-9_-]+", "_", tenant_id).strip("_")[:40] or "tenant"
        safe_prefix = re.sub(r"[^a-zA-Z0-9_-]+", "_", prefix).strip("_")[:40] or "error"
        name = f"{safe_prefix}_{safe_tenant}_{int(time.time() * 1000)}.png"
        try:
            self.screenshot_dir.mkdir(parents=True, exist_ok=True)
            await session.screenshot(str(self.screenshot_dir / name))
        except Exception as e:
            logger.warning("Could not take a screenshot (tenant=%s): %s", tenant_id, e)
            return None

        with self._lock:
            self._latest[tenant_id] = name
        logger.info("Screenshot saved to %s (tenant=%s)", self.screenshot_dir / name, tenant_id)
        return name

    def last_for(self, tenant_id: str) -> Optional[str]:
        with self._lock:
            return self._latest.get(tenant_id)

    def path_for(self, name: str) -> Optional[Path]:
        if not name or ".." in name or not _SAFE_NAME_RE.match(name):
            return None
        p = self.screenshot_dir / name
        if not p.is_file():
            return None
        return p
