from __future__ import annotations

import json
import math
from typing import Any, Callable, Optional

from letterboxio import get_logger
from letterboxio.action_queue import ActionQueue, Deduplicator
from letterboxio.cache import TTLCache
from letterboxio.config import Settings
from letterboxio.errors import (
    InvalidRating,
    ItemNotFound,
    LetterboxioError,
    NoSessionConfigured,
    UpstreamUnexpectedResponse,
)
from letterboxio.fetchers import SiteFetcher
from letterboxio.models import ActionResponse, ActionResult, ItemMetadata, ListingItem
from letterboxio.resolver import IdentifierResolver
from letterboxio.session import SessionManager

LOGGER = get_logger("service")

MIN_STARS = 0.5
MAX_STARS = 5.0


def to_internal_rating(stars: Any) -> int:
    """Map a half-star value in [0.5, 5.0] onto Letterboxd's 1-10 scale."""
    if isinstance(stars, bool):
        raise InvalidRating(f"Invalid rating value: {stars!r}")
    try:
        value = float(stars)
    except (TypeError, ValueError) as exc:
        raise InvalidRating(f"Invalid rating value: {stars!r}") from exc
    if math.isnan(value) or not MIN_STARS <= value <= MAX_STARS or not (value * 2).is_integer():
        raise InvalidRating(f"Invalid rating value: {stars!r}")
    return int(value * 2)


def _parse_json_body(response: ActionResponse) -> dict[str, Any]:
    if response.status != 200:
        raise UpstreamUnexpectedResponse(f"HTTP {response.status}: {response.body[:100]}")
    try:
        payload = json.loads(response.body)
    except ValueError as exc:
        raise UpstreamUnexpectedResponse(f"Unexpected response: {response.body[:100]}") from exc
    if not isinstance(payload, dict):
        raise UpstreamUnexpectedResponse(f"Unexpected response: {response.body[:100]}")
    return payload


class LetterboxioService:
    """
    Core operations behind the addon.

    Reads (watchlist, metadata, resolve) go through the cache and plain HTTP.
    Writes (rate, watchlist membership) run on the action queue so only one
    browser action is ever in flight. ``submit_*`` are the fire-and-forget
    variants used by the HTTP layer: they return whether the request was
    accepted and the outcome is only logged.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: Optional[TTLCache[Any]] = None,
        fetcher: Optional[SiteFetcher] = None,
        session: Optional[SessionManager] = None,
        queue: Optional[ActionQueue] = None,
        dedup: Optional[Deduplicator] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache if cache is not None else TTLCache()
        self.fetcher = fetcher or SiteFetcher(settings, self.cache)
        self.session = session or SessionManager(settings)
        self.queue = queue or ActionQueue()
        self.dedup = dedup or Deduplicator(settings.dedup_window_s)
        self.resolver = IdentifierResolver(
            self.cache,
            self.fetcher,
            username=settings.username,
            browser_resolve=self._browser_resolve if settings.has_credentials else None,
        )

    @property
    def has_session(self) -> bool:
        return self.settings.has_credentials

    # ---------- Reads ----------
    def get_listing(self, user: Optional[str] = None) -> list[ListingItem]:
        user = user or self.settings.username
        if not user:
            LOGGER.warning("No Letterboxd username configured; watchlist is empty.")
            return []
        return self.fetcher.get_listing(user)

    def get_metadata(self, slug: str) -> ItemMetadata:
        return self.fetcher.fetch_metadata(slug)

    def resolve(self, imdb_id: str) -> Optional[str]:
        return self.resolver.resolve(imdb_id)

    def _browser_resolve(self, imdb_id: str) -> Optional[str]:
        return self.queue.call(lambda: self.session.resolve_slug(imdb_id), name=f"resolve:{imdb_id}")

    # ---------- Writes ----------
    def rate(self, slug: str, stars: Any) -> ActionResult:
        try:
            value = to_internal_rating(stars)
        except InvalidRating as exc:
            return ActionResult.failed(str(exc), exc.code)
        if not self.has_session:
            return ActionResult.failed("No session configured", NoSessionConfigured.code)
        return self.queue.call(lambda: self._guarded(lambda: self._rate_now(slug, value)), name=f"rate:{slug}")

    def set_watchlist_membership(self, slug: str, present: bool) -> ActionResult:
        if not self.has_session:
            return ActionResult.failed("No session configured", NoSessionConfigured.code)
        return self.queue.call(
            lambda: self._guarded(lambda: self._set_watchlist_now(slug, present)),
            name=f"watchlist:{slug}",
        )

    def _guarded(self, action: Callable[[], ActionResult]) -> ActionResult:
        try:
            return action()
        except LetterboxioError as exc:
            return ActionResult.failed(str(exc), exc.code)
        except Exception as exc:
            LOGGER.exception("Unexpected error during browser action")
            return ActionResult.failed(str(exc) or exc.__class__.__name__)

    def _film_id(self, slug: str) -> str:
        film_id = self.fetcher.fetch_film_id(slug)
        if not film_id:
            raise ItemNotFound(f"Could not find film ID for {slug}")
        return film_id

    def _rate_now(self, slug: str, value: int) -> ActionResult:
        film_id = self._film_id(slug)
        LOGGER.info("Rating film:%s (%s) -> %d", film_id, slug, value)
        url = f"{self.settings.base_url}/s/film:{film_id}/rate/"
        response = self.session.perform_authenticated_action(url, {"rating": value})
        LOGGER.info("Rating response: %s %s", response.status, response.body[:150])
        payload = _parse_json_body(response)
        if payload.get("result") is not True:
            raise UpstreamUnexpectedResponse(f"Unexpected response: {response.body[:100]}")
        return ActionResult.ok(slug=slug, film_id=film_id, rating=value)

    def _set_watchlist_now(self, slug: str, present: bool) -> ActionResult:
        if present:
            film_id = self._film_id(slug)
            url = f"{self.settings.base_url}/s/film:{film_id}/watchlist/"
            LOGGER.info("Adding film:%s (%s) to watchlist", film_id, slug)
        else:
            url = f"{self.settings.base_url}/film/{slug}/remove-from-watchlist/"
            LOGGER.info("Removing %s from watchlist", slug)
        response = self.session.perform_authenticated_action(url, {})
        LOGGER.info("Watchlist response: %s %s", response.status, response.body[:150])
        payload = _parse_json_body(response)
        if payload.get("result") is not True and payload.get("watchlisted") is not present:
            raise UpstreamUnexpectedResponse(f"Unexpected response: {response.body[:100]}")
        if self.settings.username:
            self.fetcher.invalidate_listing(self.settings.username)
        return ActionResult.ok(slug=slug, watchlisted=present)

    # ---------- Fire-and-forget ----------
    def submit_rating(self, imdb_id: str, stars: Any) -> bool:
        try:
            value = to_internal_rating(stars)
        except InvalidRating as exc:
            LOGGER.error("[rate] %s", exc)
            return False
        return self._submit(
            imdb_id,
            f"rate:{value}",
            label="rate",
            action=lambda slug: self._rate_now(slug, value),
        )

    def submit_watchlist(self, imdb_id: str, present: bool) -> bool:
        kind = "watchlist-add" if present else "watchlist-remove"
        return self._submit(
            imdb_id,
            kind,
            label=kind,
            action=lambda slug: self._set_watchlist_now(slug, present),
        )

    def _submit(
        self,
        imdb_id: str,
        kind: str,
        *,
        label: str,
        action: Callable[[str], ActionResult],
    ) -> bool:
        if not self.has_session:
            LOGGER.error("[%s] No session configured; ignoring %s", label, imdb_id)
            return False
        if not self.dedup.should_accept(imdb_id, kind):
            return False
        try:
            self.queue.enqueue(lambda: self._resolve_and_run(label, imdb_id, action), name=f"{label}:{imdb_id}")
        except RuntimeError as exc:
            LOGGER.error("[%s] %s not queued: %s", label, imdb_id, exc)
            self.dedup.forget(imdb_id, kind)
            return False
        return True

    def _resolve_and_run(
        self,
        label: str,
        imdb_id: str,
        action: Callable[[str], ActionResult],
    ) -> ActionResult:
        slug = self.resolver.resolve(imdb_id)
        if not slug:
            result = ActionResult.failed(f"Could not resolve slug for {imdb_id}", ItemNotFound.code)
        else:
            result = self._guarded(lambda: action(slug))
        if result.success:
            LOGGER.info("[%s] %s OK", label, imdb_id)
        else:
            LOGGER.error("[%s] %s FAILED: %s", label, imdb_id, result.error)
        # Reads only evict what they touch; sweep the rest between jobs.
        pruned = self.cache.prune()
        if pruned:
            LOGGER.debug("Pruned %d expired cache entries", pruned)
        return result

    # ---------- Diagnostics / lifecycle ----------
    def health(self) -> dict[str, Any]:
        return {
            "session_configured": self.has_session,
            "session_state": self.session.state.value,
            "queue_depth": self.queue.pending(),
            "dedup_keys": len(self.dedup),
            "cache": self.cache.stats(),
        }

    def close(self) -> None:
        try:
            self.queue.call(self.session.close, name="session-close", timeout=30)
        finally:
            self.queue.stop(timeout=30)
