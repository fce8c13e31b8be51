"""Request payloads for foundation, sitemap and page generation tasks.

Every payload carries chat ``messages`` for the gateway and a machine-readable
``task`` block describing what the answer must contain.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

_JSON_RULES = """\
Return ONLY one JSON object. No markdown fences, no prose, no trailing commas.
Schema: {"files": {"<relative path>": "<file content>"},
         "entry": "<one of the paths>", "notes": "<optional>"}
"""

_STYLE_RULES = """\
Styling rules:
- Every color is a custom property declared in the :root block of styles.css.
- Outside :root use var(--name) only; never hex, rgb(), rgba(), hsl() or hsla() literals.
"""

FOUNDATION_SYSTEM_PROMPT = (
    """\
You are the lead designer of a small static website.
Produce the shared foundation every page will reuse:
- styles.css with the :root palette and base typography
- header.html containing exactly one <header> with the site navigation
- footer.html containing exactly one <footer>
- index.html containing ONLY the <main> element of the home page
Also return "pages": the sitemap as a list of {"path", "title"} objects, index.html first.
"""
    + _STYLE_RULES
    + _JSON_RULES
)

PAGE_SYSTEM_PROMPT = (
    """\
You write the body of one page of an existing static website.
Return ONLY the <main> element for the requested path: no <!DOCTYPE>, <html>,
<head>, <body>, <header> or <footer>; the shared chrome is added later.
Write real content: at least three sections with <h2> headings.
Never output the literal words undefined or null as content or attribute values.
"""
    + _STYLE_RULES
    + _JSON_RULES
)

SITEMAP_SYSTEM_PROMPT = """\
You plan the pages of a small static website whose navigation already exists.
Return ONLY one JSON object: {"pages": [{"path": "<name>.html", "title": "<title>"}]}.
List index.html first, use flat lowercase file names and match the navigation labels.
"""


@dataclass(frozen=True, slots=True)
class PagePlan:
    """One sitemap entry to generate."""

    path: str
    title: str


def foundation_payload(brief: str, *, page_count: int) -> dict[str, Any]:
    """Payload for the single authoritative foundation task."""

    task = {"kind": "foundation", "id": "foundation", "brief": brief, "page_count": page_count}
    user = (
        f"Site brief:\n{brief}\n\n"
        f"Plan exactly {page_count} pages including index.html.\n"
        f"Task: {json.dumps(task, ensure_ascii=False)}"
    )
    return {
        "task": task,
        "messages": [
            {"role": "system", "content": FOUNDATION_SYSTEM_PROMPT},
            {"role": "user", "content": user},
        ],
    }


def page_payload(brief: str, *, page: PagePlan, sitemap: Sequence[PagePlan]) -> dict[str, Any]:
    """Payload for one bulk page task."""

    task = {
        "kind": "page",
        "id": f"page:{page.path}",
        "brief": brief,
        "path": page.path,
        "title": page.title,
        "sitemap": [{"path": item.path, "title": item.title} for item in sitemap],
    }
    user = (
        f"Site brief:\n{brief}\n\n"
        f"Write the page {page.path!r} titled {page.title!r}.\n"
        f"Answer with files containing exactly that path and entry set to it.\n"
        f"Task: {json.dumps(task, ensure_ascii=False)}"
    )
    return {
        "task": task,
        "messages": [
            {"role": "system", "content": PAGE_SYSTEM_PROMPT},
            {"role": "user", "content": user},
        ],
    }


def sitemap_payload(brief: str, *, page_count: int, navigation: str) -> dict[str, Any]:
    """Payload for the small auxiliary task that plans a missing sitemap."""

    task = {"kind": "sitemap", "id": "sitemap", "brief": brief, "page_count": page_count}
    user = (
        f"Site brief:\n{brief}\n\n"
        f"Plan exactly {page_count} pages including index.html.\n"
        f"Existing navigation:\n{navigation or '(none)'}\n\n"
        f"Task: {json.dumps(task, ensure_ascii=False)}"
    )
    return {
        "task": task,
        "messages": [
            {"role": "system", "content": SITEMAP_SYSTEM_PROMPT},
            {"role": "user", "content": user},
        ],
    }


def parse_sitemap(raw: Any, *, page_count: int) -> list[PagePlan]:
    """Normalize the foundation sitemap; index.html always comes first.

    Missing or malformed entries are dropped and the list is capped at
    ``page_count`` entries.
    """

    plans: list[PagePlan] = [PagePlan(path="index.html", title="Home")]
    seen = {"index.html"}
    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict):
                continue
            path = str(item.get("path") or item.get("filename") or "").strip().lstrip("/")
            if path == "index.html":
                if item.get("title"):
                    plans[0] = PagePlan(path=path, title=str(item["title"]))
                continue
            if not path.endswith(".html") or path in seen or "/" in path:
                continue
            seen.add(path)
            plans.append(PagePlan(path=path, title=str(item.get("title") or path[:-5].title())))
    return plans[: max(1, page_count)]
