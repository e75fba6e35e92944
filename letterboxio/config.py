from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

BASE_URL = "https://letterboxd.com"

DEFAULT_PORT = 7000
DEFAULT_LISTING_TTL_S = 5 * 60
DEFAULT_METADATA_TTL_S = 6 * 60 * 60
DEFAULT_IDENTITY_TTL_S = 7 * 24 * 60 * 60
DEFAULT_DEDUP_WINDOW_S = 5.0

DEFAULT_HTTP_TIMEOUT_S = 10.0
DEFAULT_NAV_TIMEOUT_MS = 20_000
DEFAULT_LOGIN_TIMEOUT_MS = 30_000
DEFAULT_FORM_TIMEOUT_MS = 20_000

DEFAULT_PAGE_DELAY_S = 0.3
DEFAULT_CATALOG_PAGE_SIZE = 100
DEFAULT_CATALOG_CONCURRENCY = 5

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/123.0.0.0 Safari/537.36"
)


ENV_VARS = (
    "LETTERBOXD_USERNAME",
    "LETTERBOXD_PASSWORD",
    "LETTERBOXD_BASE_URL",
    "HOST",
    "PORT",
    "PUBLIC_URL",
    "LISTING_TTL_S",
    "METADATA_TTL_S",
    "IDENTITY_TTL_S",
    "DEDUP_WINDOW_S",
    "HTTP_TIMEOUT_S",
    "NAV_TIMEOUT_MS",
    "LOGIN_TIMEOUT_MS",
    "FORM_TIMEOUT_MS",
    "PAGE_DELAY_S",
    "CATALOG_PAGE_SIZE",
    "CATALOG_CONCURRENCY",
    "BROWSER_HEADLESS",
    "BROWSER_NO_SANDBOX",
    "LOG_LEVEL",
)


def apply_env_file(path: Union[str, Path] = ".env") -> list[str]:
    """Copy addon settings from a .env file into ``os.environ``.

    Only names in ``ENV_VARS`` are read, an ``export`` prefix and surrounding
    quotes are stripped, and variables already set in the shell win.
    Returns the names that were applied.
    """
    p = Path(path)
    if not p.is_file():
        return []
    applied: list[str] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        name, sep, value = line.strip().removeprefix("export ").partition("=")
        name = name.strip()
        if not sep or name not in ENV_VARS or name in os.environ:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        os.environ[name] = value
        applied.append(name)
    return applied


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _normalize_public_url(raw: Optional[str], port: int) -> str:
    url = (raw or "").strip().rstrip("/")
    if not url:
        return f"http://localhost:{port}"
    if not url.startswith("http"):
        url = f"https://{url}"
    return url


@dataclass(slots=True)
class Settings:
    username: Optional[str] = None
    password: Optional[str] = None
    base_url: str = BASE_URL
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    public_url: str = f"http://localhost:{DEFAULT_PORT}"
    listing_ttl_s: float = DEFAULT_LISTING_TTL_S
    metadata_ttl_s: float = DEFAULT_METADATA_TTL_S
    identity_ttl_s: float = DEFAULT_IDENTITY_TTL_S
    dedup_window_s: float = DEFAULT_DEDUP_WINDOW_S
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    nav_timeout_ms: int = DEFAULT_NAV_TIMEOUT_MS
    login_timeout_ms: int = DEFAULT_LOGIN_TIMEOUT_MS
    form_timeout_ms: int = DEFAULT_FORM_TIMEOUT_MS
    page_delay_s: float = DEFAULT_PAGE_DELAY_S
    catalog_page_size: int = DEFAULT_CATALOG_PAGE_SIZE
    catalog_concurrency: int = DEFAULT_CATALOG_CONCURRENCY
    browser_headless: bool = True
    browser_no_sandbox: bool = True

    @classmethod
    def from_env(cls, **overrides: object) -> "Settings":
        port = int(os.getenv("PORT", str(DEFAULT_PORT)))
        kwargs: dict[str, object] = {
            "username": _env_str("LETTERBOXD_USERNAME"),
            "password": _env_str("LETTERBOXD_PASSWORD"),
            "base_url": (_env_str("LETTERBOXD_BASE_URL") or BASE_URL).rstrip("/"),
            "host": _env_str("HOST") or "0.0.0.0",
            "port": port,
            "public_url": _normalize_public_url(os.getenv("PUBLIC_URL"), port),
            "listing_ttl_s": float(os.getenv("LISTING_TTL_S", str(DEFAULT_LISTING_TTL_S))),
            "metadata_ttl_s": float(os.getenv("METADATA_TTL_S", str(DEFAULT_METADATA_TTL_S))),
            "identity_ttl_s": float(os.getenv("IDENTITY_TTL_S", str(DEFAULT_IDENTITY_TTL_S))),
            "dedup_window_s": float(os.getenv("DEDUP_WINDOW_S", str(DEFAULT_DEDUP_WINDOW_S))),
            "http_timeout_s": float(os.getenv("HTTP_TIMEOUT_S", str(DEFAULT_HTTP_TIMEOUT_S))),
            "nav_timeout_ms": int(os.getenv("NAV_TIMEOUT_MS", str(DEFAULT_NAV_TIMEOUT_MS))),
            "login_timeout_ms": int(os.getenv("LOGIN_TIMEOUT_MS", str(DEFAULT_LOGIN_TIMEOUT_MS))),
            "form_timeout_ms": int(os.getenv("FORM_TIMEOUT_MS", str(DEFAULT_FORM_TIMEOUT_MS))),
            "page_delay_s": float(os.getenv("PAGE_DELAY_S", str(DEFAULT_PAGE_DELAY_S))),
            "catalog_page_size": max(1, int(os.getenv("CATALOG_PAGE_SIZE", str(DEFAULT_CATALOG_PAGE_SIZE)))),
            "catalog_concurrency": max(
                1, int(os.getenv("CATALOG_CONCURRENCY", str(DEFAULT_CATALOG_CONCURRENCY)))
            ),
            "browser_headless": _env_bool("BROWSER_HEADLESS", True),
            "browser_no_sandbox": _env_bool("BROWSER_NO_SANDBOX", True),
        }
        kwargs.update(overrides)
        settings = cls(**kwargs)
        settings.validate()
        return settings

    @classmethod
    def load(cls, env_file: Union[str, Path] = ".env", **overrides: object) -> "Settings":
        apply_env_file(env_file)
        return cls.from_env(**overrides)

    def validate(self) -> None:
        for name in ("listing_ttl_s", "metadata_ttl_s", "identity_ttl_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.dedup_window_s < 0:
            raise ValueError("dedup_window_s must be >= 0")
        if self.http_timeout_s <= 0:
            raise ValueError("http_timeout_s must be > 0")
        for name in ("nav_timeout_ms", "login_timeout_ms", "form_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.page_delay_s < 0:
            raise ValueError("page_delay_s must be >= 0")

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)
