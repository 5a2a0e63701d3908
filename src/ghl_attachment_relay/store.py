from __future__ import annotations

import logging
import shutil
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .models import TenantConfig


logger = logging.getLogger(__name__)


class ConfigStore:
    """
    Durable per-tenant configuration: credentials, callback URL and the last saved browser session.

    One row per tenant. The session blob is whatever the automation driver produced; it is stored and
    returned verbatim.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")
        # Login and attachment tasks, plus sync API handlers running in a threadpool, share one connection.
        self._lock = threading.RLock()

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        # Ensure we have *some* backup available for next time.
        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the DB. If it looks corrupted, move it aside and restore from the last-known-good backup.

        Losing the DB only means tenants have to log in again; it never blocks startup.
        """
        if self.db_path.exists():
            try:
                conn = self._connect()
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except Exception as e:
                logger.warning("Config DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = self._connect()
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored config DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except Exception:
                        logger.warning("Failed to restore config DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No config DB backup found; creating a fresh DB.")

        return self._connect()

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except Exception:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except Exception:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return

        try:
            self.backup()
        except Exception:
            logger.debug("Failed to write config DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        try:
            if tmp.exists():
                tmp.unlink()
        except Exception:
            pass

        # Use SQLite online backup API for a consistent snapshot.
        dst = sqlite3.connect(tmp)
        try:
            with self._lock:
                self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS configurations (
                  tenant_id TEXT PRIMARY KEY,
                  credential_secret TEXT,
                  callback_url TEXT,
                  session_state TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        with self._lock:
            row = self._conn.execute(
                "SELECT tenant_id, credential_secret, callback_url, session_state FROM configurations WHERE tenant_id = ?;",
                (tenant_id,),
            ).fetchone()
        if not row:
            return None
        return TenantConfig(
            tenant_id=row[0],
            credential_secret=row[1],
            callback_url=row[2],
            session_state=row[3],
        )

    def save_config(self, tenant_id: str, *, credential_secret: str, callback_url: str) -> None:
        """Upsert credentials + callback URL; an existing session blob is kept."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO configurations(tenant_id, credential_secret, callback_url, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                  credential_secret = excluded.credential_secret,
                  callback_url = excluded.callback_url,
                  updated_at = excluded.updated_at;
                """,
                (tenant_id, credential_secret, callback_url, now, now),
            )
            self._conn.commit()

    def save_session(self, tenant_id: str, session_state: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO configurations(tenant_id, session_state, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                  session_state = excluded.session_state,
                  updated_at = excluded.updated_at;
                """,
                (tenant_id, session_state, now, now),
            )
            self._conn.commit()

        # A fresh session is a good moment to refresh the last-known-good snapshot.
        self._maybe_backup(if_missing=False)

    def delete_session(self, tenant_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                "UPDATE configurations SET session_state = NULL, updated_at = ? WHERE tenant_id = ?;",
                (now, tenant_id),
            )
            self._conn.commit()
