from __future__ import annotations

from pathlib import Path

from ghl_attachment_relay.store import ConfigStore


def test_store_creates_backup(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"
    s = ConfigStore(str(db_path))
    try:
        s.save_config("a@example.com", credential_secret="pw", callback_url="https://hooks.example.test/a")
    finally:
        s.close()

    bak = tmp_path / "relay.db.bak"
    assert db_path.exists()
    assert bak.exists()
    assert bak.stat().st_size > 0


def test_save_config_keeps_existing_session(tmp_path: Path) -> None:
    s = ConfigStore(str(tmp_path / "relay.db"))
    try:
        assert s.get("a@example.com") is None

        s.save_config("a@example.com", credential_secret="pw", callback_url="https://hooks.example.test/a")
        s.save_session("a@example.com", '{"cookies": []}')
        s.save_config("a@example.com", credential_secret="pw2", callback_url="https://hooks.example.test/b")

        cfg = s.get("a@example.com")
        assert cfg is not None
        assert cfg.credential_secret == "pw2"
        assert cfg.callback_url == "https://hooks.example.test/b"
        assert cfg.session_state == '{"cookies": []}'
        assert cfg.has_session
    finally:
        s.close()


def test_delete_session_keeps_configuration(tmp_path: Path) -> None:
    s = ConfigStore(str(tmp_path / "relay.db"))
    try:
        s.save_config("a@example.com", credential_secret="pw", callback_url="https://hooks.example.test/a")
        s.save_session("a@example.com", '{"cookies": []}')
        s.delete_session("a@example.com")

        cfg = s.get("a@example.com")
        assert cfg is not None
        assert not cfg.has_session
        assert cfg.callback_url == "https://hooks.example.test/a"
        assert cfg.masked() == {
            "tenantId": "a@example.com",
            "hasCredentials": True,
            "callbackUrl": "https://hooks.example.test/a",
            "hasSession": False,
        }

        # unknown tenant: no-op
        s.delete_session("nobody@example.com")
        assert s.get("nobody@example.com") is None
    finally:
        s.close()


def test_session_blob_round_trips_verbatim(tmp_path: Path) -> None:
    blob = '{"cookies": [{"name": "a", "value": "\\u00e9"}], "origins": []}'
    s = ConfigStore(str(tmp_path / "relay.db"))
    try:
        s.save_session("a@example.com", blob)
        assert s.get("a@example.com").session_state == blob
    finally:
        s.close()


def test_store_restores_from_backup_when_db_corrupted(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"

    # Create a valid DB + backup (save_session refreshes it).
    s1 = ConfigStore(str(db_path))
    try:
        s1.save_config("a@example.com", credential_secret="pw", callback_url="https://hooks.example.test/a")
        s1.save_session("a@example.com", '{"cookies": []}')
    finally:
        s1.close()

    bak = tmp_path / "relay.db.bak"
    assert bak.exists()

    # Corrupt the main DB file.
    db_path.write_bytes(b"not a sqlite db")
    for suffix in ("-wal", "-shm"):
        p = tmp_path / f"relay.db{suffix}"
        if p.exists():
            p.unlink()

    # Re-open: should quarantine the corrupted DB and restore from backup.
    s2 = ConfigStore(str(db_path))
    try:
        cfg = s2.get("a@example.com")
        assert cfg is not None
        assert cfg.has_session
    finally:
        s2.close()

    quarantined = list(tmp_path.glob("relay.db.corrupt-*"))
    assert quarantined, "expected quarantined corrupted db file to be created"
