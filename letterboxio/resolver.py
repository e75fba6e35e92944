from __future__ import annotations

from typing import Any, Callable, Optional

from letterboxio import get_logger
from letterboxio.cache import TTLCache
from letterboxio.fetchers import SiteFetcher

LOGGER = get_logger("resolver")


class IdentifierResolver:
    """
    Map an IMDb id to a Letterboxd slug.

    Tiers, first hit wins:
    1. identity map in the cache (filled by every metadata fetch);
    2. scan of the user's watchlist, fetching metadata per film;
    3. authenticated fallback: a plain redirect follow, then the browser.
    """

    def __init__(
        self,
        cache: TTLCache[Any],
        fetcher: SiteFetcher,
        *,
        username: Optional[str],
        browser_resolve: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.username = username
        self.browser_resolve = browser_resolve

    def resolve(self, imdb_id: str) -> Optional[str]:
        imdb_id = (imdb_id or "").strip()
        if not imdb_id:
            return None

        slug = self.cache.get(("identity", imdb_id))
        if slug:
            return slug

        slug = self._scan_listing(imdb_id)
        if slug:
            return slug

        slug = self._authenticated_fallback(imdb_id)
        if slug:
            self.fetcher.remember_identity(imdb_id, slug)
            return slug

        LOGGER.error("Could not resolve slug for %s", imdb_id)
        return None

    def _scan_listing(self, imdb_id: str) -> Optional[str]:
        if not self.username:
            return None
        try:
            listing = self.fetcher.get_listing(self.username)
        except Exception:
            LOGGER.exception("Watchlist scan for %s failed", imdb_id)
            return None
        for item in listing:
            meta = self.fetcher.fetch_metadata(item.slug)
            if meta.imdb_id == imdb_id:
                return item.slug
        return None

    def _authenticated_fallback(self, imdb_id: str) -> Optional[str]:
        slug = self.fetcher.resolve_via_redirect(imdb_id)
        if slug or self.browser_resolve is None:
            return slug
        try:
            return self.browser_resolve(imdb_id)
        except Exception:
            LOGGER.exception("Browser resolve for %s failed", imdb_id)
            return None
