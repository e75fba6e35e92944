"""Stremio addon server for a Letterboxd watchlist.

Run with:
    python serve.py
    # or
    PORT=8080 PUBLIC_URL=https://addon.example.com python serve.py

Endpoints:
    GET /manifest.json                 - addon manifest
    GET /catalog/<type>/<id>.json      - watchlist catalog (?skip=N)
    GET /stream/<type>/<id>.json       - rating + watchlist "streams"
    GET /rate/<imdb_id>/<stars>        - rate a film (acknowledged immediately)
    GET /watchlist/add/<imdb_id>       - add to watchlist (acknowledged immediately)
    GET /watchlist/remove/<imdb_id>    - remove from watchlist (acknowledged immediately)
    GET /noop                          - empty playlist
    GET /api/health                    - session / queue / cache status
"""
from __future__ import annotations

import atexit
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional
from urllib.parse import quote

from flask import Flask, Response, jsonify, redirect, request

from letterboxio import get_logger
from letterboxio.config import Settings
from letterboxio.models import ListingItem
from letterboxio.service import LetterboxioService

LOGGER = get_logger("serve")

CATALOG_ID = "letterboxd-watchlist"
EMPTY_PLAYLIST = "#EXTM3U\n#EXT-X-ENDLIST\n"
POSTER_URL = "https://images.metahub.space/poster/medium/{imdb_id}/img"

STAR_OPTIONS: list[tuple[str, str]] = [
    ("5", "★★★★★  5 stars"),
    ("4.5", "★★★★½  4.5 stars"),
    ("4", "★★★★   4 stars"),
    ("3.5", "★★★½   3.5 stars"),
    ("3", "★★★    3 stars"),
    ("2.5", "★★½    2.5 stars"),
    ("2", "★★     2 stars"),
    ("1.5", "★½     1.5 stars"),
    ("1", "★      1 star"),
    ("0.5", "½      0.5 stars"),
]


def build_manifest(settings: Settings) -> dict[str, Any]:
    username = settings.username or "your"
    return {
        "id": "com.letterboxio.addon",
        "version": "1.0.0",
        "name": "Letterboxio",
        "description": f"Syncs with {username}'s Letterboxd account. Shows watchlist and allows rating films.",
        "logo": "https://a.ltrbxd.com/logos/letterboxd-decal-dots-neg-mono-500px.png",
        "resources": ["catalog", "stream"],
        "types": ["movie"],
        "catalogs": [
            {
                "id": CATALOG_ID,
                "type": "movie",
                "name": "Letterboxio Watchlist",
                "extra": [{"name": "skip", "isRequired": False}],
            }
        ],
        "idPrefixes": ["tt"],
        "behaviorHints": {"configurable": False},
    }


def build_streams(settings: Settings, imdb_id: str) -> list[dict[str, str]]:
    base = settings.public_url
    item = quote(imdb_id, safe="")
    streams = [
        {
            "name": "📋 Letterboxio",
            "description": "Add to Letterboxd Watchlist",
            "url": f"{base}/watchlist/add/{item}",
        },
        {
            "name": "🗑️ Letterboxio",
            "description": "Remove from Letterboxd Watchlist",
            "url": f"{base}/watchlist/remove/{item}",
        },
    ]
    for stars, label in STAR_OPTIONS:
        streams.append(
            {
                "name": "Rate on Letterboxd",
                "description": label,
                "url": f"{base}/rate/{item}/{quote(stars, safe='')}",
            }
        )
    return streams


def _parse_skip(raw: Optional[str]) -> int:
    try:
        return max(0, int(raw or "0"))
    except ValueError:
        return 0


def _empty_playlist() -> Response:
    return Response(EMPTY_PLAYLIST, mimetype="application/vnd.apple.mpegurl")


def build_catalog(service: LetterboxioService, skip: int = 0) -> list[dict[str, Any]]:
    settings = service.settings
    films = service.get_listing()
    page = films[skip : skip + settings.catalog_page_size]

    def to_meta(film: ListingItem) -> Optional[dict[str, Any]]:
        try:
            meta = service.get_metadata(film.slug)
        except Exception:
            LOGGER.exception("[catalog] metadata failed for %s", film.slug)
            return None
        if not meta.imdb_id:
            return None
        year: Optional[int] = None
        if meta.year and meta.year.isdigit():
            year = int(meta.year)
        entry: dict[str, Any] = {
            "id": meta.imdb_id,
            "type": "movie",
            "name": film.title,
            "poster": POSTER_URL.format(imdb_id=meta.imdb_id),
            "description": meta.description,
        }
        if year is not None:
            entry["year"] = year
        return entry

    with ThreadPoolExecutor(max_workers=settings.catalog_concurrency) as pool:
        metas = [m for m in pool.map(to_meta, page) if m is not None]
    return metas


def create_app(service: Optional[LetterboxioService] = None) -> Flask:
    if service is None:
        service = LetterboxioService(Settings.from_env())
    settings = service.settings
    manifest = build_manifest(settings)

    app = Flask(__name__)
    app.config["LETTERBOXIO_SERVICE"] = service

    @app.after_request
    def _cors(response: Response) -> Response:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"
        return response

    @app.route("/manifest.json")
    def manifest_json():
        return jsonify(manifest)

    @app.route("/catalog/<type_>/<catalog_id>.json")
    def catalog(type_: str, catalog_id: str):
        if type_ != "movie" or catalog_id != CATALOG_ID:
            return jsonify({"metas": []})
        LOGGER.info("[catalog] Fetching watchlist for %s", settings.username)
        try:
            metas = build_catalog(service, _parse_skip(request.args.get("skip")))
        except Exception:
            LOGGER.exception("[catalog] Failed to build watchlist catalog")
            return jsonify({"metas": []})
        LOGGER.info("[catalog] Returning %d films", len(metas))
        response = jsonify({"metas": metas})
        response.headers["Cache-Control"] = "max-age=300, stale-while-revalidate=600"
        return response

    @app.route("/stream/<type_>/<item_id>.json")
    def stream(type_: str, item_id: str):
        if type_ != "movie":
            return jsonify({"streams": []})
        LOGGER.info("[stream] Rating streams requested for %s", item_id)
        return jsonify({"streams": build_streams(settings, item_id)})

    # The player closes as soon as it gets a playlist, so every action below
    # answers first and does its work on the action queue.
    @app.route("/rate/<imdb_id>/<stars>")
    def rate(imdb_id: str, stars: str):
        LOGGER.info("[rate] %s -> %s stars", imdb_id, stars)
        service.submit_rating(imdb_id, stars)
        return _empty_playlist()

    @app.route("/watchlist/add/<imdb_id>")
    def watchlist_add(imdb_id: str):
        LOGGER.info("[watchlist] add %s", imdb_id)
        service.submit_watchlist(imdb_id, True)
        return _empty_playlist()

    @app.route("/watchlist/remove/<imdb_id>")
    def watchlist_remove(imdb_id: str):
        LOGGER.info("[watchlist] remove %s", imdb_id)
        service.submit_watchlist(imdb_id, False)
        return _empty_playlist()

    @app.route("/watchlist/<imdb_id>")
    def watchlist_legacy(imdb_id: str):
        return redirect(f"/watchlist/add/{quote(imdb_id, safe='')}", code=301)

    @app.route("/noop")
    def noop():
        return _empty_playlist()

    @app.route("/api/health")
    def api_health():
        return jsonify({"status": "ok", **service.health()})

    return app


if __name__ == "__main__":
    settings = Settings.load()
    service = LetterboxioService(settings)
    atexit.register(service.close)
    app = create_app(service)
    print("Letterboxio addon running!")
    print(f"Add to Stremio: {settings.public_url}/manifest.json")
    print(f"Letterboxd user: {settings.username or '-'}")
    print(f"Session credentials: {'YES' if service.has_session else 'NO - rating will not work'}")
    app.run(host=settings.host, port=settings.port, threaded=True)
