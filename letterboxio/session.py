from __future__ import annotations

import threading
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from playwright.sync_api import BrowserContext, Route
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from letterboxio import get_logger
from letterboxio.config import USER_AGENT, Settings
from letterboxio.errors import (
    AuthenticationFailed,
    NetworkTimeout,
    NoSessionConfigured,
    SessionInvalidated,
)
from letterboxio.fetchers import CHALLENGE_SELECTORS, slug_from_film_url
from letterboxio.models import ActionResponse, SessionState

LOGGER = get_logger("session")

LAUNCH_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-breakpad",
    "--disable-component-extensions-with-background-pages",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--metrics-recording-only",
    "--mute-audio",
    "--no-first-run",
    "--js-flags=--max-old-space-size=128",
]
NO_SANDBOX_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

BLOCKED_RESOURCE_TYPES = {"image", "stylesheet", "font", "media"}
AUTH_REJECTION_STATUSES = {401, 403}

USERNAME_SELECTOR = 'input[name="username"]'
PASSWORD_SELECTOR = 'input[name="password"]'
SUBMIT_SELECTOR = 'input[type="submit"], button[type="submit"]'
TYPING_DELAY_MS = 50

_CSRF_JS = """() =>
    document.querySelector('input[name="__csrf"]')?.value
    || document.querySelector('meta[name="csrf-token"]')?.content
    || document.body?.getAttribute('data-csrf')
    || null
"""

_OG_URL_JS = """() =>
    document.querySelector('meta[property="og:url"]')?.content || null
"""

_POST_JS = """async ([url, body]) => {
    const res = await fetch(url, {
        method: 'POST',
        headers: { 'Content-Type': 'application/x-www-form-urlencoded' },
        body,
        credentials: 'include',
    });
    return { status: res.status, body: await res.text() };
}"""


def _close_quietly(resource: Any) -> None:
    try:
        if resource is not None:
            resource.close()
    except Exception:
        LOGGER.debug("Playwright resource already closed or could not close.", exc_info=True)


def _block_heavy_resources(route: Route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        route.abort()
    else:
        route.continue_()


class SessionManager:
    """
    Owns the one automated browser and the one logged-in Letterboxd session.

    Lifecycle: UNINITIALIZED -> LAUNCHING -> IDLE -> LOGGED_IN -> INVALIDATED.
    Logging in is slow and may sit behind a bot challenge, so it happens at
    most once per valid session and is reused by every action. Any
    INVALIDATED session is torn down and relaunched on next use.

    Every method touches Playwright's sync API and must be called from the
    action queue's worker thread.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        playwright_factory: Callable[[], Any] = sync_playwright,
    ) -> None:
        self.settings = settings
        self._playwright_factory = playwright_factory
        self._lock = threading.RLock()
        self._state = SessionState.UNINITIALIZED
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Optional[BrowserContext] = None
        self._csrf_token: Optional[str] = None
        self.launch_count = 0
        self.login_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def configured(self) -> bool:
        return self.settings.has_credentials

    @property
    def has_csrf_token(self) -> bool:
        return self._csrf_token is not None

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            LOGGER.debug("Session %s -> %s", self._state.value, state.value)
        self._state = state

    def _browser_alive(self) -> bool:
        try:
            return self._browser is not None and bool(self._browser.is_connected())
        except Exception:
            return False

    # ---------- Lifecycle ----------
    def get_authenticated_session(self) -> BrowserContext:
        with self._lock:
            if self._state is SessionState.LOGGED_IN and self._browser_alive():
                return self._context
            if not self.configured:
                raise NoSessionConfigured("LETTERBOXD_USERNAME and LETTERBOXD_PASSWORD are not set")

            self._discard_browser()
            try:
                self._launch()
                self._login()
            except AuthenticationFailed:
                self.invalidate("login failed", discard_browser=True)
                raise
            except PlaywrightTimeoutError as exc:
                self.invalidate("login timed out", discard_browser=True)
                raise AuthenticationFailed(f"Login timed out: {exc}") from exc
            except Exception as exc:
                self.invalidate("browser launch/login error", discard_browser=True)
                raise AuthenticationFailed(f"Login failed: {exc}") from exc

            self._set_state(SessionState.LOGGED_IN)
            LOGGER.info("Login successful")
            return self._context

    def _launch(self) -> None:
        self._set_state(SessionState.LAUNCHING)
        LOGGER.info("Launching browser...")
        args = list(LAUNCH_ARGS)
        if self.settings.browser_no_sandbox:
            args.extend(NO_SANDBOX_ARGS)
        self._playwright = self._playwright_factory().start()
        self._browser = self._playwright.chromium.launch(
            headless=self.settings.browser_headless,
            args=args,
        )
        self._context = self._browser.new_context(
            user_agent=USER_AGENT,
            locale="en-US",
            viewport={"width": 1280, "height": 800},
        )
        self.launch_count += 1
        self._set_state(SessionState.IDLE)
        LOGGER.info("Browser ready")

    def _login(self) -> None:
        assert self._context is not None
        settings = self.settings
        page = self._context.new_page()
        try:
            LOGGER.info("Logging in to Letterboxd as %s...", settings.username)
            self.login_count += 1
            page.goto(
                f"{settings.base_url}/sign-in/",
                wait_until="domcontentloaded",
                timeout=settings.login_timeout_ms,
            )
            # The form may only appear once a bot challenge clears.
            try:
                page.wait_for_selector(USERNAME_SELECTOR, timeout=settings.form_timeout_ms)
            except PlaywrightTimeoutError as exc:
                if self._challenge_present(page):
                    raise AuthenticationFailed("Bot challenge did not clear before the sign-in form rendered") from exc
                raise AuthenticationFailed("Sign-in form did not render") from exc

            page.locator(USERNAME_SELECTOR).press_sequentially(settings.username or "", delay=TYPING_DELAY_MS)
            page.locator(PASSWORD_SELECTOR).press_sequentially(settings.password or "", delay=TYPING_DELAY_MS)
            with page.expect_navigation(wait_until="domcontentloaded", timeout=settings.login_timeout_ms):
                page.click(SUBMIT_SELECTOR)

            url = page.url
            LOGGER.info("Post-login URL: %s", url)
            if "/sign-in/" in url:
                raise AuthenticationFailed("Still on sign-in page; check LETTERBOXD_USERNAME/LETTERBOXD_PASSWORD")

            token = page.evaluate(_CSRF_JS)
            if not token:
                raise AuthenticationFailed("Logged in but no CSRF token found on the page")
            self._csrf_token = str(token)
            LOGGER.info("CSRF captured: %s...", self._csrf_token[:8])
        finally:
            _close_quietly(page)

    def _challenge_present(self, page: Any) -> bool:
        try:
            return page.query_selector(",".join(CHALLENGE_SELECTORS)) is not None
        except Exception:
            return False

    def invalidate(self, reason: str, *, discard_browser: bool = False) -> None:
        with self._lock:
            LOGGER.warning("Session invalidated: %s", reason)
            self._csrf_token = None
            if discard_browser:
                self._discard_browser()
            self._set_state(SessionState.INVALIDATED)

    def _discard_browser(self) -> None:
        _close_quietly(self._context)
        _close_quietly(self._browser)
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception:
                LOGGER.debug("Playwright driver could not stop cleanly.", exc_info=True)
        self._context = None
        self._browser = None
        self._playwright = None

    def close(self) -> None:
        with self._lock:
            self._csrf_token = None
            self._discard_browser()
            self._set_state(SessionState.UNINITIALIZED)

    # ---------- Actions ----------
    def perform_authenticated_action(self, url: str, form: dict[str, Any]) -> ActionResponse:
        """POST ``form`` to ``url`` from inside the logged-in browser."""
        context = self.get_authenticated_session()
        if not self._csrf_token:
            self.invalidate("missing CSRF token")
            raise SessionInvalidated(0, "No CSRF token; session must log in again")
        body = urlencode({**form, "__csrf": self._csrf_token})

        page = None
        try:
            page = context.new_page()
            try:
                page.route("**/*", _block_heavy_resources)
                # In-page fetch() only carries cookies from the site's own origin.
                page.goto(
                    f"{self.settings.base_url}/",
                    wait_until="commit",
                    timeout=self.settings.nav_timeout_ms,
                )
                result = page.evaluate(_POST_JS, [url, body])
            finally:
                _close_quietly(page)
        except PlaywrightTimeoutError as exc:
            self.invalidate("action timed out", discard_browser=True)
            raise NetworkTimeout(f"Timed out posting to {url}") from exc
        except Exception:
            LOGGER.exception("Browser action against %s failed; discarding browser.", url)
            self.invalidate("browser error", discard_browser=True)
            raise

        response = ActionResponse(
            status=int((result or {}).get("status") or 0),
            body=str((result or {}).get("body") or ""),
        )
        if response.status in AUTH_REJECTION_STATUSES:
            self.invalidate(f"HTTP {response.status} from {url}")
            raise SessionInvalidated(response.status, f"HTTP {response.status}: {response.body[:100]}")
        return response

    def resolve_slug(self, imdb_id: str) -> Optional[str]:
        """Read the canonical slug behind ``/film/imdb/<id>/`` using the browser."""
        try:
            context = self.get_authenticated_session()
        except (NoSessionConfigured, AuthenticationFailed) as exc:
            LOGGER.warning("Browser resolve for %s skipped: %s", imdb_id, exc)
            return None

        base_url = self.settings.base_url
        page = None
        try:
            page = context.new_page()
            try:
                page.route("**/*", _block_heavy_resources)
                page.goto(
                    f"{base_url}/film/imdb/{imdb_id}/",
                    wait_until="domcontentloaded",
                    timeout=self.settings.nav_timeout_ms,
                )
                slug = slug_from_film_url(page.url, base_url)
                if not slug:
                    slug = slug_from_film_url(page.evaluate(_OG_URL_JS), base_url)
            finally:
                _close_quietly(page)
        except PlaywrightTimeoutError:
            LOGGER.warning("Browser resolve for %s timed out", imdb_id)
            return None
        except Exception:
            LOGGER.exception("Browser resolve for %s failed; discarding browser.", imdb_id)
            self.invalidate("browser error", discard_browser=True)
            return None

        if slug:
            LOGGER.info("Resolved %s -> %s (browser)", imdb_id, slug)
        return slug
