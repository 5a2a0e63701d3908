from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so most deployments only need `.env`; YAML remains an optional override.

    Unset variables are left out so the model defaults apply.
    """
    env_map = {
        "site": {
            "base_url": "SITE_BASE_URL",
            "login_path": "SITE_LOGIN_PATH",
            "dashboard_path": "SITE_DASHBOARD_PATH",
            "authenticated_marker": "SITE_AUTHENTICATED_MARKER",
            "conversation_path_template": "SITE_CONVERSATION_PATH_TEMPLATE",
            "attachment_suffix": "SITE_ATTACHMENT_SUFFIX",
        },
        "timeouts": {
            "already_authenticated_probe": "ALREADY_AUTHENTICATED_PROBE_SECONDS",
            "navigation": "NAVIGATION_TIMEOUT_SECONDS",
            "challenge": "CHALLENGE_TIMEOUT_SECONDS",
            "response_wait": "RESPONSE_WAIT_TIMEOUT_SECONDS",
            "settle_delay": "SETTLE_DELAY_SECONDS",
            "session_probe": "SESSION_PROBE_TIMEOUT_SECONDS",
            "forward": "FORWARD_TIMEOUT_SECONDS",
        },
        "browser": {"slow_mo_ms": "BROWSER_SLOW_MO_MS"},
        "store": {"db_path": "STORE_DB_PATH"},
        "diagnostics": {"screenshot_dir": "SCREENSHOT_DIR"},
        "logging": {"level": "LOG_LEVEL", "file_path": "LOG_FILE", "buffer_size": "LOG_BUFFER_SIZE"},
        "server": {"host": "SERVER_HOST", "port": "SERVER_PORT"},
    }
    out: dict = {}
    for section, keys in env_map.items():
        values = {k: os.environ[var] for k, var in keys.items() if os.getenv(var, "") != ""}
        out[section] = values
    if os.getenv("BROWSER_HEADLESS", "") != "":
        out["browser"]["headless"] = _env_bool("BROWSER_HEADLESS", default=True)
    return out


class SiteConfig(BaseModel):
    """
    The remote agency app. All paths are joined onto the origin of `base_url`.
    """

    base_url: str = "https://app.gohighlevel.com"
    login_path: str = "/"
    dashboard_path: str = "/v2/dashboard"
    # Any URL containing this is an authenticated page.
    authenticated_marker: str = "/v2/"
    conversation_path_template: str = "/v2/location/{location_id}/conversations/{conversation_id}"
    attachment_suffix: str = "/attachment"

    @model_validator(mode="after")
    def _normalize(self) -> "SiteConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("site.base_url must be a full URL like 'https://app.gohighlevel.com'")
        for name in ("{location_id}", "{conversation_id}"):
            if name not in self.conversation_path_template:
                raise ValueError(f"site.conversation_path_template must contain {name}")
        self.base_url = base_url
        return self

    @property
    def origin(self) -> str:
        parsed = urlparse(self.base_url)
        return f"{parsed.scheme}://{parsed.netloc}"

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return self.origin + "/" + path.lstrip("/")

    @property
    def login_url(self) -> str:
        return self.url(self.login_path)

    @property
    def dashboard_url(self) -> str:
        return self.url(self.dashboard_path)

    def conversation_url(self, *, location_id: str, conversation_id: str) -> str:
        return self.url(
            self.conversation_path_template.format(location_id=location_id, conversation_id=conversation_id)
        )


class TimeoutsConfig(BaseModel):
    """All values in seconds."""

    already_authenticated_probe: float = 5.0
    navigation: float = 30.0
    challenge: float = 180.0
    response_wait: float = 45.0
    # Lets the app finish its client-side session bootstrap before we snapshot storage state.
    settle_delay: float = 5.0
    session_probe: float = 20.0
    forward: float = 30.0

    @field_validator(
        "already_authenticated_probe", "navigation", "challenge", "response_wait", "session_probe", "forward"
    )
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("settle_delay")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("timeouts.settle_delay must not be negative")
        return v


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo_ms: int = 0


class StoreConfig(BaseModel):
    db_path: str = "data/relay.db"


class DiagnosticsConfig(BaseModel):
    screenshot_dir: str = "data/screenshots"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/relay.log"
    buffer_size: int = Field(default=200, ge=1)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class AppConfig(BaseModel):
    site: SiteConfig = SiteConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    browser: BrowserConfig = BrowserConfig()
    store: StoreConfig = StoreConfig()
    diagnostics: DiagnosticsConfig = DiagnosticsConfig()
    logging: LoggingConfig = LoggingConfig()
    server: ServerConfig = ServerConfig()


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
