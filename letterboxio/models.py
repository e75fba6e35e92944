from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    IDLE = "idle"
    LOGGED_IN = "logged_in"
    INVALIDATED = "invalidated"


@dataclass(frozen=True, slots=True)
class ListingItem:
    slug: str
    title: str
    film_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ListingPage:
    items: list[ListingItem]
    has_more: bool
    blocked: bool = False


@dataclass(frozen=True, slots=True)
class ItemMetadata:
    imdb_id: Optional[str] = None
    year: Optional[str] = None
    poster: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not any((self.imdb_id, self.year, self.poster, self.description))


@dataclass(frozen=True, slots=True)
class ActionResponse:
    status: int
    body: str


@dataclass(slots=True)
class ActionResult:
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **details: Any) -> "ActionResult":
        return cls(success=True, details=details)

    @classmethod
    def failed(cls, error: str, code: str = "error") -> "ActionResult":
        return cls(success=False, error=error, code=code)
