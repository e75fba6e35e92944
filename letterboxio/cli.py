from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from typing import Any, Optional

from letterboxio.config import Settings
from letterboxio.service import LetterboxioService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Letterboxio: run addon core operations from the shell.")
    parser.add_argument("--env-file", default=".env", help="Optional .env file to load first.")
    sub = parser.add_subparsers(dest="command", required=True)

    watchlist = sub.add_parser("watchlist", help="Print a user's watchlist.")
    watchlist.add_argument("user", nargs="?", default=None, help="Defaults to LETTERBOXD_USERNAME.")

    meta = sub.add_parser("meta", help="Print metadata for a film slug.")
    meta.add_argument("slug")

    resolve = sub.add_parser("resolve", help="Resolve an IMDb id to a film slug.")
    resolve.add_argument("imdb_id")

    rate = sub.add_parser("rate", help="Rate a film (0.5-5 stars).")
    rate.add_argument("slug")
    rate.add_argument("stars")

    add = sub.add_parser("watchlist-add", help="Add a film to the watchlist.")
    add.add_argument("slug")

    remove = sub.add_parser("watchlist-remove", help="Remove a film from the watchlist.")
    remove.add_argument("slug")
    return parser


def _run(service: LetterboxioService, args: argparse.Namespace) -> tuple[Any, int]:
    if args.command == "watchlist":
        return [dataclasses.asdict(item) for item in service.get_listing(args.user)], 0
    if args.command == "meta":
        return dataclasses.asdict(service.get_metadata(args.slug)), 0
    if args.command == "resolve":
        slug = service.resolve(args.imdb_id)
        return {"imdb_id": args.imdb_id, "slug": slug}, 0 if slug else 1
    if args.command == "rate":
        result = service.rate(args.slug, args.stars)
    else:
        result = service.set_watchlist_membership(args.slug, args.command == "watchlist-add")
    return dataclasses.asdict(result), 0 if result.success else 1


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    service = LetterboxioService(Settings.load(args.env_file))
    try:
        payload, code = _run(service, args)
    finally:
        service.close()
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return code


if __name__ == "__main__":
    raise SystemExit(main())
