from __future__ import annotations

import contextlib
from typing import Any, Optional, Union

import requests
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from letterboxio.config import Settings
from letterboxio.models import ActionResponse, SessionState
from letterboxio.session import _CSRF_JS, _OG_URL_JS, _POST_JS

BASE_URL = "https://letterboxd.com"


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "username": "cinephile",
        "password": "secret",
        "base_url": BASE_URL,
        "public_url": "https://addon.test",
        "page_delay_s": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


# -----------------------------------------------------------------------------
# HTML builders
# -----------------------------------------------------------------------------

def listing_html(films: list[tuple[str, str, Optional[str]]], *, has_next: bool = False) -> str:
    cards = "".join(
        f'<li><div class="react-component" data-item-slug="{slug}" data-item-name="{name}"'
        + (f' data-film-id="{film_id}"' if film_id else "")
        + f'><img alt="{name}"/></div></li>'
        for slug, name, film_id in films
    )
    nxt = '<a class="next" href="/next/">Older</a>' if has_next else ""
    return f"<html><body><ul>{cards}</ul><div class='pagination'>{nxt}</div></body></html>"


def film_html(
    *,
    imdb_id: Optional[str],
    title: str = "Interstellar (2014)",
    film_id: Optional[str] = None,
    og_url: Optional[str] = None,
) -> str:
    imdb = f'<a href="http://www.imdb.com/title/{imdb_id}/maindetails" data-track-action="IMDb">IMDb</a>' if imdb_id else ""
    body_attr = f' data-film-id="{film_id}"' if film_id else ""
    og = f'<meta property="og:url" content="{og_url}"/>' if og_url else ""
    return (
        "<html><head>"
        f'<meta property="og:title" content="{title}"/>'
        '<meta property="og:description" content="A team of explorers travel through a wormhole."/>'
        '<meta property="og:image" content="https://a.ltrbxd.com/resized/sm/upload/ab/cd/'
        'interstellar-1200-1200-675-675-crop-000000.jpg?v=1"/>'
        f"{og}</head><body{body_attr}>{imdb}</body></html>"
    )


# -----------------------------------------------------------------------------
# HTTP
# -----------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, text: str = "", status_code: int = 200, url: str = "") -> None:
        self.text = text
        self.status_code = status_code
        self.url = url

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"Status code {self.status_code}")


class FakeHttp:
    """Stands in for ``requests.Session``; unknown URLs answer 404."""

    def __init__(self, pages: Optional[dict[str, Union[FakeResponse, Exception]]] = None) -> None:
        self.pages = dict(pages or {})
        self.calls: list[str] = []

    def get(self, url: str, **_kwargs: Any) -> FakeResponse:
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            return FakeResponse("", 404, url)
        if isinstance(page, Exception):
            raise page
        if not page.url:
            page.url = url
        return page


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------

class FakeSession:
    """Records authenticated actions instead of driving a browser."""

    def __init__(
        self,
        responses: Optional[list[ActionResponse]] = None,
        *,
        error: Optional[Exception] = None,
        browser_slug: Optional[str] = None,
    ) -> None:
        self.responses = list(responses or [])
        self.error = error
        self.browser_slug = browser_slug
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.resolve_calls: list[str] = []
        self.state = SessionState.UNINITIALIZED
        self.closed = False

    def perform_authenticated_action(self, url: str, form: dict[str, Any]) -> ActionResponse:
        self.calls.append((url, dict(form)))
        if self.error is not None:
            raise self.error
        self.state = SessionState.LOGGED_IN
        if self.responses:
            return self.responses.pop(0)
        return ActionResponse(status=200, body='{"result": true}')

    def resolve_slug(self, imdb_id: str) -> Optional[str]:
        self.resolve_calls.append(imdb_id)
        return self.browser_slug

    def close(self) -> None:
        self.closed = True


# -----------------------------------------------------------------------------
# Playwright
# -----------------------------------------------------------------------------

class BrowserScript:
    """Shared knobs and recordings for the fake Playwright object graph."""

    def __init__(self) -> None:
        self.post_login_url = f"{BASE_URL}/cinephile/"
        self.csrf: Optional[str] = "csrf-token-1234567890"
        self.form_renders = True
        self.challenge = False
        self.root_goto_error: Optional[Exception] = None
        self.evaluate_error: Optional[Exception] = None
        self.redirect_to: dict[str, str] = {}
        self.og_url: Optional[str] = None
        self.responses: list[dict[str, Any]] = []
        self.launches = 0
        self.gotos: list[str] = []
        self.posts: list[list[str]] = []
        self.typed: dict[str, str] = {}
        self.pages: list["FakePage"] = []
        self.browsers: list["FakeBrowser"] = []
        self.stops = 0


class FakeLocator:
    def __init__(self, script: BrowserScript, selector: str) -> None:
        self.script = script
        self.selector = selector

    def press_sequentially(self, text: str, delay: float = 0) -> None:
        self.script.typed[self.selector] = text


class FakePage:
    def __init__(self, script: BrowserScript) -> None:
        self.script = script
        self.url = "about:blank"
        self.closed = False
        self.routes: list[str] = []

    def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.script.gotos.append(url)
        if url == f"{BASE_URL}/" and self.script.root_goto_error is not None:
            raise self.script.root_goto_error
        self.url = self.script.redirect_to.get(url, url)

    def wait_for_selector(self, selector: str, timeout: Optional[float] = None) -> object:
        if not self.script.form_renders:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return object()

    def query_selector(self, selector: str) -> Optional[object]:
        return object() if self.script.challenge else None

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self.script, selector)

    @contextlib.contextmanager
    def expect_navigation(self, **_kwargs: Any):
        yield None
        self.url = self.script.post_login_url

    def click(self, selector: str) -> None:
        pass

    def route(self, pattern: str, handler: Any) -> None:
        self.routes.append(pattern)

    def evaluate(self, script: str, arg: Any = None) -> Any:
        if self.script.evaluate_error is not None and script == _POST_JS:
            raise self.script.evaluate_error
        if script == _CSRF_JS:
            return self.script.csrf
        if script == _OG_URL_JS:
            return self.script.og_url
        if script == _POST_JS:
            self.script.posts.append(list(arg))
            if self.script.responses:
                return self.script.responses.pop(0)
            return {"status": 200, "body": '{"result": true}'}
        raise AssertionError(f"unexpected script: {script}")

    def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, script: BrowserScript) -> None:
        self.script = script
        self.closed = False

    def new_page(self) -> FakePage:
        page = FakePage(self.script)
        self.script.pages.append(page)
        return page

    def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, script: BrowserScript) -> None:
        self.script = script
        self.closed = False
        self.contexts: list[FakeContext] = []

    def is_connected(self) -> bool:
        return not self.closed

    def new_context(self, **_kwargs: Any) -> FakeContext:
        context = FakeContext(self.script)
        self.contexts.append(context)
        return context

    def close(self) -> None:
        self.closed = True


class FakeChromium:
    def __init__(self, script: BrowserScript) -> None:
        self.script = script
        self.launch_kwargs: list[dict[str, Any]] = []

    def launch(self, **kwargs: Any) -> FakeBrowser:
        self.script.launches += 1
        self.launch_kwargs.append(kwargs)
        browser = FakeBrowser(self.script)
        self.script.browsers.append(browser)
        return browser


class FakePlaywright:
    def __init__(self, script: BrowserScript) -> None:
        self.script = script
        self.chromium = FakeChromium(script)

    def stop(self) -> None:
        self.script.stops += 1


class FakePlaywrightManager:
    def __init__(self, script: BrowserScript) -> None:
        self.script = script

    def start(self) -> FakePlaywright:
        return FakePlaywright(self.script)


def fake_playwright_factory(script: BrowserScript):
    return lambda: FakePlaywrightManager(script)
