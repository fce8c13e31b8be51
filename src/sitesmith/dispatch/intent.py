"""Page-count intent detection from a free-text brief."""

from __future__ import annotations

import re
from dataclasses import dataclass

MIN_PAGES = 3
MAX_PAGES = 50
DEFAULT_PAGES = 6
DOCS_PAGES = 12

_EXPLICIT_PAGES_RE = re.compile(r"(\d+)\s*pages?\b", re.IGNORECASE)
_GAME_RE = re.compile(r"\bgames?\b|\barcade\b|\bplay\b|\bgaming\b", re.IGNORECASE)
_GAME_COUNT_RE = re.compile(r"(\d+)\s*games?\b", re.IGNORECASE)
_GAME_LIST_RE = re.compile(r"(?:like|including|such as)\s+([^.]+)", re.IGNORECASE)
_DOCS_RE = re.compile(
    r"knowledge\s*base|\bdocs\b|documentation|\bwiki\b|help\s*center|\bguide\b|tutorial",
    re.IGNORECASE,
)
_SIMPLE_RE = re.compile(
    r"\bsimple\b|\blanding\b|one\s*page|\bbasic\b|\bminimal\b|\bsingle\b",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class PageIntent:
    """Desired page count and the rule that produced it."""

    pages: int
    reason: str
    explicit: bool


def detect_page_intent(brief: str) -> PageIntent:
    """Derive the site size from the brief.

    Explicit "N pages" wins; game sites get one page per game plus index and
    how-to-play; docs sites get 12; simple or landing sites get 3; anything
    else gets 6. The result is clamped to [3, 50].
    """

    explicit = _EXPLICIT_PAGES_RE.search(brief)
    if explicit is not None:
        requested = int(explicit.group(1))
        return PageIntent(
            pages=_clamp(requested),
            reason=f"Brief explicitly requests {requested} pages",
            explicit=True,
        )

    if _GAME_RE.search(brief):
        counted = _GAME_COUNT_RE.search(brief)
        if counted is not None:
            games = int(counted.group(1))
            return PageIntent(
                pages=_clamp(games + 2),
                reason=f"{games} games plus index and how-to-play",
                explicit=True,
            )
        listed = _GAME_LIST_RE.search(brief)
        if listed is not None:
            names = [item.strip() for item in listed.group(1).split(",") if len(item.strip()) > 2]
            if names:
                return PageIntent(
                    pages=_clamp(len(names) + 2),
                    reason=f"{len(names)} named game(s) plus index and how-to-play",
                    explicit=True,
                )
        return PageIntent(
            pages=MIN_PAGES,
            reason="Game site: index, game, how-to-play",
            explicit=False,
        )

    if _DOCS_RE.search(brief):
        return PageIntent(
            pages=DOCS_PAGES,
            reason="Documentation or knowledge base site",
            explicit=False,
        )

    if _SIMPLE_RE.search(brief):
        return PageIntent(pages=MIN_PAGES, reason="Simple or landing page site", explicit=False)

    return PageIntent(pages=DEFAULT_PAGES, reason="Standard site", explicit=False)


def _clamp(value: int) -> int:
    return max(MIN_PAGES, min(MAX_PAGES, value))
