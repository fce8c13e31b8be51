"""Deterministic offline gateway for local runs and tests."""

from __future__ import annotations

import html
import json
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from sitesmith.dispatch.gateway.base import GatewayOptions

Responder = Callable[[str, dict[str, Any]], str]
ScriptStep = str | BaseException

OFFLINE_BACKENDS: tuple[dict[str, Any], ...] = (
    {
        "id": "offline/atlas-coder:free",
        "name": "Offline Atlas Coder",
        "context_length": 131_072,
        "pricing": {"prompt": "0", "completion": "0"},
    },
    {
        "id": "offline/birch-writer:free",
        "name": "Offline Birch Writer",
        "context_length": 65_536,
        "pricing": {"prompt": "0", "completion": "0"},
    },
    {
        "id": "offline/cedar-mini:free",
        "name": "Offline Cedar Mini",
        "context_length": 32_768,
        "pricing": {"prompt": "0", "completion": "0"},
    },
)

OFFLINE_SCORES: dict[str, float] = {
    "offline/atlas-coder": 0.9,
    "offline/birch-writer": 0.7,
    "offline/cedar-mini": 0.5,
}


class ScriptedGateway:
    """Gateway answering from per-backend scripts, then from a responder.

    A script step is either the raw text to return or an exception to raise.
    Calls are recorded in order as ``(backend_id, task kind)`` pairs.
    """

    def __init__(
        self,
        *,
        scripts: Mapping[str, Iterable[ScriptStep]] | None = None,
        responder: Responder | None = None,
        delay_seconds: float = 0.0,
        backends: Iterable[dict[str, Any]] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._scripts = {key: deque(steps) for key, steps in (scripts or {}).items()}
        self._responder = responder or render_offline_response
        self._delay_seconds = delay_seconds
        self._backends = [dict(row) for row in (backends or OFFLINE_BACKENDS)]
        self.calls: list[tuple[str, str]] = []

    def send(self, backend_id: str, payload: dict[str, Any], options: GatewayOptions) -> str:
        task = payload.get("task") or {}
        with self._lock:
            self.calls.append((backend_id, str(task.get("id") or task.get("kind") or "")))
            queue = self._scripts.get(backend_id)
            step = queue.popleft() if queue else None
        if self._delay_seconds:
            time.sleep(min(self._delay_seconds, options.timeout_seconds))
        if isinstance(step, BaseException):
            raise step
        if step is not None:
            return step
        return self._responder(backend_id, payload)

    def list_backends(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self._backends]

    def calls_for(self, backend_id: str) -> int:
        with self._lock:
            return sum(1 for called, _ in self.calls if called == backend_id)


def render_offline_response(backend_id: str, payload: dict[str, Any]) -> str:
    """Build a well-formed artifact answer from the machine-readable task block."""

    task = payload.get("task") or {}
    brief = str(task.get("brief") or "Untitled site")
    if task.get("kind") == "foundation":
        return json.dumps(_foundation_answer(brief, task, backend_id), ensure_ascii=False)
    if task.get("kind") == "sitemap":
        pages = _offline_sitemap(task)
        return json.dumps({"pages": pages, "notes": f"offline sitemap from {backend_id}"})
    path = str(task.get("path") or "page.html")
    title = str(task.get("title") or path.rsplit(".", 1)[0].replace("-", " ").title())
    answer = {
        "files": {path: _main_block(title, brief)},
        "entry": path,
        "notes": f"offline page from {backend_id}",
    }
    return json.dumps(answer, ensure_ascii=False)


def _foundation_answer(brief: str, task: Mapping[str, Any], backend_id: str) -> dict[str, Any]:
    pages = _offline_sitemap(task)
    links = "".join(
        f'<li><a href="{page["path"]}">{html.escape(page["title"])}</a></li>' for page in pages
    )
    return {
        "files": {
            "styles.css": (
                ":root {\n  --color-bg: #ffffff;\n  --color-text: #1d1d1f;\n"
                "  --color-accent: #3b6cf6;\n}\n"
                "body { background: var(--color-bg); color: var(--color-text); }\n"
                "a { color: var(--color-accent); }\n"
            ),
            "header.html": f'<header class="site-header"><nav><ul>{links}</ul></nav></header>',
            "footer.html": (
                f'<footer class="site-footer"><p>{html.escape(brief[:80])}</p></footer>'
            ),
            "index.html": _main_block("Home", brief),
        },
        "entry": "index.html",
        "notes": f"offline foundation from {backend_id}",
        "pages": pages,
    }


def _offline_sitemap(task: Mapping[str, Any]) -> list[dict[str, str]]:
    page_count = max(1, int(task.get("page_count") or 3))
    pages = [{"path": "index.html", "title": "Home"}]
    for index in range(1, page_count):
        pages.append({"path": f"page-{index}.html", "title": f"Section {index}"})
    return pages


def _main_block(title: str, brief: str) -> str:
    safe_title = html.escape(title)
    safe_brief = html.escape(brief)
    return (
        f"<main>\n<h1>{safe_title}</h1>\n"
        f"<section><h2>Overview</h2><p>This page belongs to a site about {safe_brief}. "
        "It introduces the topic, explains who the site is for and what visitors "
        "will find in each section.</p></section>\n"
        "<section><h2>Details</h2><p>Each section is written to be read on its own, "
        "with short paragraphs, clear headings and links back to the home page so "
        "readers never lose their place.</p></section>\n"
        "<section><h2>Next steps</h2><p>Use the navigation above to continue exploring "
        "the rest of the site.</p></section>\n</main>"
    )
