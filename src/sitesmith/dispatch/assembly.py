"""Wrap validated page bodies with the shared chrome and write the site to disk."""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Collection, Mapping
from pathlib import Path

from sitesmith.dispatch.models import ParsedArtifact

logger = logging.getLogger(__name__)

STYLESHEET_PATH = "styles.css"
HEADER_PATH = "header.html"
FOOTER_PATH = "footer.html"

_HREF = r"""\bhref\s*=\s*(["'])(?P<href>[^"']*)\1"""
_LIST_ITEM_LINK_RE = re.compile(
    rf"<li\b[^>]*>\s*<a\b[^>]*?{_HREF}[^>]*>(?:(?!</?a\b|</?li\b).)*</a>\s*</li>\s*",
    re.IGNORECASE | re.DOTALL,
)
_ANCHOR_RE = re.compile(
    rf"<a\b[^>]*?{_HREF}[^>]*>(?P<text>(?:(?!</?a\b).)*)</a>",
    re.IGNORECASE | re.DOTALL,
)


def render_document(*, title: str, site_title: str, body: str, header: str, footer: str) -> str:
    """One complete HTML document around a ``<main>`` body."""

    page_title = html.escape(f"{title} | {site_title}" if title else site_title)
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '  <meta charset="utf-8">\n'
        '  <meta name="viewport" content="width=device-width, initial-scale=1">\n'
        f"  <title>{page_title}</title>\n"
        f'  <link rel="stylesheet" href="{STYLESHEET_PATH}">\n'
        "</head>\n"
        "<body>\n"
        f"{header.strip()}\n"
        f"{body.strip()}\n"
        f"{footer.strip()}\n"
        "</body>\n"
        "</html>\n"
    )


def assemble_site(
    *,
    foundation: ParsedArtifact,
    pages: Mapping[str, ParsedArtifact],
    titles: Mapping[str, str],
    site_title: str,
) -> dict[str, str]:
    """Final path -> content mapping; chrome partials are inlined, not emitted.

    Links to local pages that are not part of the final mapping are removed
    so a partial site never points at missing files.
    """

    produced = {path for path in foundation.files if path not in {HEADER_PATH, FOOTER_PATH}}
    produced.update(pages)
    header = prune_dead_links(foundation.files.get(HEADER_PATH, ""), produced)
    footer = prune_dead_links(foundation.files.get(FOOTER_PATH, ""), produced)
    output: dict[str, str] = {}
    for path, content in foundation.files.items():
        if path in {HEADER_PATH, FOOTER_PATH}:
            continue
        if path.endswith(".html"):
            output[path] = render_document(
                title=titles.get(path, ""),
                site_title=site_title,
                body=prune_dead_links(content, produced),
                header=header,
                footer=footer,
            )
        else:
            output[path] = content

    for path, artifact in sorted(pages.items()):
        body = artifact.files.get(path) or artifact.files[artifact.entry]
        output[path] = render_document(
            title=titles.get(path, ""),
            site_title=site_title,
            body=prune_dead_links(body, produced),
            header=header,
            footer=footer,
        )
    return output


def prune_dead_links(markup: str, produced: Collection[str]) -> str:
    """Drop nav entries and unwrap anchors that point at local pages not in ``produced``."""

    def _is_dead(href: str) -> bool:
        target = href.split("#", 1)[0].split("?", 1)[0].strip()
        if target.startswith("./"):
            target = target[2:]
        if not target or "//" in target or ":" in target or target.startswith("/"):
            return False
        return target.lower().endswith((".html", ".htm")) and target not in produced

    dead: list[str] = []

    def _drop_item(match: re.Match[str]) -> str:
        if not _is_dead(match.group("href")):
            return match.group(0)
        dead.append(match.group("href"))
        return ""

    def _unwrap(match: re.Match[str]) -> str:
        if not _is_dead(match.group("href")):
            return match.group(0)
        dead.append(match.group("href"))
        return match.group("text")

    pruned = _ANCHOR_RE.sub(_unwrap, _LIST_ITEM_LINK_RE.sub(_drop_item, markup))
    if dead:
        logger.warning("Removed %d link(s) to missing pages: %s", len(dead), ", ".join(dead))
    return pruned


def write_site(out_dir: Path, files: Mapping[str, str]) -> list[Path]:
    """Write ``files`` under ``out_dir``; paths escaping the folder are skipped."""

    root = out_dir.resolve()
    written: list[Path] = []
    for relative, content in sorted(files.items()):
        target = (root / relative).resolve()
        if target == root or not target.is_relative_to(root):
            logger.warning("Skipping artifact outside output folder: %s", relative)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        written.append(target)
    return written
