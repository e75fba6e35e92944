from __future__ import annotations

import re
import time
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from letterboxio import get_logger
from letterboxio.cache import TTLCache
from letterboxio.config import USER_AGENT, Settings
from letterboxio.errors import NetworkTimeout
from letterboxio.models import ItemMetadata, ListingItem, ListingPage

LOGGER = get_logger("fetchers")

_TITLE_YEAR_RE = re.compile(r"\s*\(\d{4}\)\s*$")
_YEAR_RE = re.compile(r"\((\d{4})\)")
_IMDB_RE = re.compile(r"imdb\.com/title/(tt\d+)")
_FILM_PATH_RE = re.compile(r"^/film/([^/]+)/?")
_POSTER_CROP_RE = re.compile(r"-\d+-\d+-\d+-\d+-crop-([^.?]+)")
_PORTRAIT_CROP = r"-0-230-0-345-crop-\1"

CHALLENGE_SELECTORS = [
    "#challenge-form",
    "#challenge-running",
    "iframe[src*='challenges.cloudflare.com']",
    "div[id*='challenge']",
]


def _default_headers() -> dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
    }


def build_http_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(_default_headers())
    return session


# -----------------------------------------------------------------------------
# Parsing (pure functions over page HTML)
# -----------------------------------------------------------------------------

def _meta_content(soup: BeautifulSoup, prop: str) -> Optional[str]:
    tag = soup.find("meta", attrs={"property": prop})
    if tag is None:
        return None
    content = (tag.get("content") or "").strip()
    return content or None


def is_challenge_page(soup: BeautifulSoup) -> bool:
    """Bot-check interstitials come back as HTTP 200 with none of the real markup."""
    return soup.select_one(",".join(CHALLENGE_SELECTORS)) is not None


def parse_listing_page(html: str) -> ListingPage:
    soup = BeautifulSoup(html or "", "lxml")
    if is_challenge_page(soup):
        return ListingPage(items=[], has_more=False, blocked=True)
    items: list[ListingItem] = []
    for el in soup.select("div.react-component[data-item-slug]"):
        slug = (el.get("data-item-slug") or "").strip()
        if not slug:
            continue
        title = _TITLE_YEAR_RE.sub("", el.get("data-item-name") or "").strip()
        if not title:
            img = el.find("img")
            title = ((img.get("alt") if img else None) or slug).strip()
        film_id = (el.get("data-film-id") or "").strip() or None
        items.append(ListingItem(slug=slug, title=title, film_id=film_id))
    has_more = soup.select_one("a.next") is not None
    return ListingPage(items=items, has_more=has_more)


def portrait_poster(url: Optional[str]) -> Optional[str]:
    """Swap the og:image landscape crop for the 230x345 portrait crop."""
    if not url or "a.ltrbxd.com/resized/" not in url:
        return url
    return _POSTER_CROP_RE.sub(_PORTRAIT_CROP, url, count=1)


def parse_metadata(html: str) -> ItemMetadata:
    soup = BeautifulSoup(html or "", "lxml")
    imdb_id: Optional[str] = None
    for link in soup.select('a[href*="imdb.com/title/"]'):
        match = _IMDB_RE.search(link.get("href") or "")
        if match:
            imdb_id = match.group(1)
            break

    og_title = _meta_content(soup, "og:title") or ""
    year_match = _YEAR_RE.search(og_title)
    return ItemMetadata(
        imdb_id=imdb_id,
        year=year_match.group(1) if year_match else None,
        poster=portrait_poster(_meta_content(soup, "og:image")),
        description=_meta_content(soup, "og:description"),
    )


def parse_film_id(html: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "lxml")
    el = soup.select_one("[data-film-id]")
    if el is not None and el.get("data-film-id"):
        return str(el.get("data-film-id")).strip() or None
    body = soup.body
    if body is not None and body.get("data-film-id"):
        return str(body.get("data-film-id")).strip() or None
    return None


def slug_from_film_url(url: Optional[str], base_url: str) -> Optional[str]:
    """Return the film slug of a ``<base>/film/<slug>/`` URL, else None."""
    if not url:
        return None
    parsed = urlparse(url)
    base_host = (urlparse(base_url).netloc or "").lower().removeprefix("www.")
    host = (parsed.netloc or "").lower().removeprefix("www.")
    if host != base_host:
        return None
    match = _FILM_PATH_RE.match(parsed.path or "")
    if not match or match.group(1) == "imdb":
        return None
    return match.group(1)


def parse_canonical_slug(html: str, base_url: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "lxml")
    return slug_from_film_url(_meta_content(soup, "og:url"), base_url)


# -----------------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------------

class SiteFetcher:
    """Unauthenticated page fetches that populate the shared cache."""

    def __init__(
        self,
        settings: Settings,
        cache: TTLCache[Any],
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.session = session or build_http_session()
        self._sleep = sleep

    def _get(self, url: str, *, allow_redirects: bool = True) -> requests.Response:
        response = self.session.get(
            url,
            timeout=self.settings.http_timeout_s,
            allow_redirects=allow_redirects,
        )
        response.raise_for_status()
        return response

    def fetch_listing_page(self, user: str, page: int = 1) -> ListingPage:
        url = f"{self.settings.base_url}/{user}/watchlist/page/{int(page)}/"
        LOGGER.debug("GET %s", url)
        response = self._get(url)
        return parse_listing_page(response.text)

    def get_listing(self, user: str) -> list[ListingItem]:
        key = ("listing", user)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        items: list[ListingItem] = []
        page = 1
        failed = False
        while True:
            try:
                result = self.fetch_listing_page(user, page)
            except requests.RequestException as exc:
                LOGGER.warning("Watchlist page %s for %s failed; treating as end: %s", page, user, exc)
                failed = True
                break
            if result.blocked:
                LOGGER.warning("Watchlist page %s for %s is a bot challenge; treating as end", page, user)
                failed = True
                break
            items.extend(result.items)
            if not result.has_more:
                break
            page += 1
            if self.settings.page_delay_s > 0:
                self._sleep(self.settings.page_delay_s)

        for item in items:
            if item.film_id:
                self.cache.set(("film-id", item.slug), item.film_id, self.settings.metadata_ttl_s)

        # A failed first page would otherwise pin an empty watchlist until expiry.
        if items or not failed:
            self.cache.set(key, items, self.settings.listing_ttl_s)
        LOGGER.info("Watchlist for %s: %d films over %d page(s)", user, len(items), page)
        return items

    def invalidate_listing(self, user: str) -> None:
        self.cache.delete(("listing", user))

    def fetch_metadata(self, slug: str) -> ItemMetadata:
        key = ("meta", slug)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        url = f"{self.settings.base_url}/film/{slug}/"
        try:
            response = self._get(url)
            meta = parse_metadata(response.text)
        except requests.RequestException as exc:
            LOGGER.warning("Metadata fetch for %s failed: %s", slug, exc)
            return ItemMetadata()
        except Exception:
            LOGGER.exception("Unexpected error parsing metadata for %s", slug)
            return ItemMetadata()

        if meta.is_empty:
            # Challenge pages and stripped markup parse to nothing; retry next time.
            LOGGER.warning("Film page for %s had no usable metadata", slug)
            return meta
        self.cache.set(key, meta, self.settings.metadata_ttl_s)
        if meta.imdb_id:
            self.remember_identity(meta.imdb_id, slug)
        return meta

    def remember_identity(self, imdb_id: str, slug: str) -> None:
        self.cache.set(("identity", imdb_id), slug, self.settings.identity_ttl_s)

    def fetch_film_id(self, slug: str) -> Optional[str]:
        key = ("film-id", slug)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        url = f"{self.settings.base_url}/film/{slug}/"
        try:
            response = self._get(url)
        except requests.Timeout as exc:
            raise NetworkTimeout(f"Timed out fetching film page for {slug}") from exc
        except requests.RequestException as exc:
            LOGGER.warning("Film id lookup for %s failed: %s", slug, exc)
            return None

        film_id = parse_film_id(response.text)
        if film_id:
            self.cache.set(key, film_id, self.settings.metadata_ttl_s)
        return film_id

    def resolve_via_redirect(self, imdb_id: str) -> Optional[str]:
        """Follow the site's ``/film/imdb/<id>/`` redirect without a browser."""
        url = f"{self.settings.base_url}/film/imdb/{imdb_id}/"
        try:
            response = self.session.get(
                url,
                headers={"Accept": "text/html"},
                timeout=self.settings.http_timeout_s,
                allow_redirects=True,
            )
        except requests.RequestException as exc:
            LOGGER.warning("Redirect resolve for %s failed: %s", imdb_id, exc)
            return None

        if response.status_code >= 500:
            LOGGER.warning("Redirect resolve for %s returned HTTP %s", imdb_id, response.status_code)
            return None

        slug = slug_from_film_url(response.url, self.settings.base_url)
        if slug:
            LOGGER.info("Resolved %s -> %s (redirect)", imdb_id, slug)
            return slug

        slug = parse_canonical_slug(response.text, self.settings.base_url)
        if slug:
            LOGGER.info("Resolved %s -> %s (og:url)", imdb_id, slug)
        return slug
