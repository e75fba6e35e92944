from __future__ import annotations

import threading

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from helpers import BASE_URL, BrowserScript, fake_playwright_factory, make_settings
from letterboxio.action_queue import ActionQueue
from letterboxio.errors import (
    AuthenticationFailed,
    NetworkTimeout,
    NoSessionConfigured,
    SessionInvalidated,
)
from letterboxio.models import SessionState
from letterboxio.session import SessionManager

RATE_URL = f"{BASE_URL}/s/film:117621/rate/"


def _manager(script: BrowserScript, **overrides) -> SessionManager:
    return SessionManager(make_settings(**overrides), playwright_factory=fake_playwright_factory(script))


def test_login_captures_csrf_and_reuses_session() -> None:
    script = BrowserScript()
    manager = _manager(script)

    first = manager.get_authenticated_session()
    second = manager.get_authenticated_session()

    assert first is second
    assert manager.state is SessionState.LOGGED_IN
    assert manager.has_csrf_token
    assert manager.launch_count == 1
    assert manager.login_count == 1
    assert script.gotos == [f"{BASE_URL}/sign-in/"]
    assert script.typed['input[name="username"]'] == "cinephile"
    assert script.typed['input[name="password"]'] == "secret"
    assert all(page.closed for page in script.pages)


def test_launch_passes_headless_and_sandbox_flags() -> None:
    script = BrowserScript()
    manager = _manager(script, browser_headless=False, browser_no_sandbox=True)
    manager.get_authenticated_session()

    browser = manager._playwright.chromium
    kwargs = browser.launch_kwargs[0]
    assert kwargs["headless"] is False
    assert "--no-sandbox" in kwargs["args"]


def test_missing_credentials_never_launch() -> None:
    script = BrowserScript()
    manager = _manager(script, password=None)

    with pytest.raises(NoSessionConfigured):
        manager.get_authenticated_session()
    assert script.launches == 0
    assert manager.state is SessionState.UNINITIALIZED


def test_still_on_sign_in_page_fails_login() -> None:
    script = BrowserScript()
    script.post_login_url = f"{BASE_URL}/sign-in/"
    manager = _manager(script)

    with pytest.raises(AuthenticationFailed, match="Still on sign-in page"):
        manager.get_authenticated_session()
    assert manager.state is SessionState.INVALIDATED
    assert script.browsers[0].closed
    assert all(page.closed for page in script.pages)


def test_unresolved_challenge_fails_login() -> None:
    script = BrowserScript()
    script.form_renders = False
    script.challenge = True
    manager = _manager(script)

    with pytest.raises(AuthenticationFailed, match="challenge"):
        manager.get_authenticated_session()
    assert manager.state is SessionState.INVALIDATED


def test_missing_csrf_token_fails_login() -> None:
    script = BrowserScript()
    script.csrf = None
    manager = _manager(script)

    with pytest.raises(AuthenticationFailed, match="CSRF"):
        manager.get_authenticated_session()
    assert not manager.has_csrf_token


def test_action_appends_csrf_and_closes_page() -> None:
    script = BrowserScript()
    manager = _manager(script)

    response = manager.perform_authenticated_action(RATE_URL, {"rating": 9})

    assert response.status == 200
    assert response.body == '{"result": true}'
    assert script.posts == [[RATE_URL, "rating=9&__csrf=csrf-token-1234567890"]]
    assert script.gotos[-1] == f"{BASE_URL}/"
    assert all(page.closed for page in script.pages)
    assert script.pages[-1].routes == ["**/*"]


def test_forbidden_invalidates_then_relogs_on_next_action() -> None:
    script = BrowserScript()
    script.responses = [{"status": 403, "body": "Forbidden"}]
    manager = _manager(script)

    with pytest.raises(SessionInvalidated) as excinfo:
        manager.perform_authenticated_action(RATE_URL, {"rating": 9})
    assert excinfo.value.status == 403
    assert manager.state is SessionState.INVALIDATED
    assert not manager.has_csrf_token

    response = manager.perform_authenticated_action(RATE_URL, {"rating": 9})
    assert response.status == 200
    assert manager.launch_count == 2
    assert manager.login_count == 2
    assert script.browsers[0].closed
    assert manager.state is SessionState.LOGGED_IN


def test_browser_error_discards_browser_and_propagates() -> None:
    script = BrowserScript()
    script.evaluate_error = RuntimeError("Target page, context or browser has been closed")
    manager = _manager(script)

    with pytest.raises(RuntimeError):
        manager.perform_authenticated_action(RATE_URL, {"rating": 9})
    assert manager.state is SessionState.INVALIDATED
    assert script.browsers[0].closed
    assert script.stops == 1
    assert all(page.closed for page in script.pages)


def test_action_timeout_maps_to_network_timeout() -> None:
    script = BrowserScript()
    script.root_goto_error = PlaywrightTimeoutError("Timeout 20000ms exceeded")
    manager = _manager(script)

    with pytest.raises(NetworkTimeout):
        manager.perform_authenticated_action(RATE_URL, {"rating": 9})
    assert manager.state is SessionState.INVALIDATED
    assert script.browsers[0].closed


def test_resolve_slug_reads_redirected_url() -> None:
    script = BrowserScript()
    script.redirect_to[f"{BASE_URL}/film/imdb/tt0816692/"] = f"{BASE_URL}/film/interstellar/"
    manager = _manager(script)

    assert manager.resolve_slug("tt0816692") == "interstellar"
    assert all(page.closed for page in script.pages)


def test_resolve_slug_falls_back_to_og_url() -> None:
    script = BrowserScript()
    script.og_url = f"{BASE_URL}/film/interstellar/"
    manager = _manager(script)

    assert manager.resolve_slug("tt0816692") == "interstellar"


def test_resolve_slug_without_credentials_returns_none() -> None:
    script = BrowserScript()
    manager = _manager(script, username=None, password=None)

    assert manager.resolve_slug("tt0816692") is None
    assert script.launches == 0


def test_close_resets_state() -> None:
    script = BrowserScript()
    manager = _manager(script)
    manager.get_authenticated_session()

    manager.close()
    assert manager.state is SessionState.UNINITIALIZED
    assert script.browsers[0].closed
    assert script.browsers[0].contexts[0].closed


def test_concurrent_callers_share_one_launch() -> None:
    script = BrowserScript()
    manager = _manager(script)
    queue = ActionQueue()
    contexts: list[object] = []
    start = threading.Barrier(2)

    def caller() -> None:
        start.wait(5)
        contexts.append(queue.call(manager.get_authenticated_session, timeout=10))

    threads = [threading.Thread(target=caller) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    queue.stop(timeout=5)

    assert len(contexts) == 2
    assert contexts[0] is contexts[1]
    assert manager.launch_count == 1
    assert manager.login_count == 1
