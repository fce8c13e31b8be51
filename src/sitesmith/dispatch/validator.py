"""Artifact validation: required fields, nesting, styling, density, placeholders."""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from sitesmith.dispatch.models import ParsedArtifact, ValidationReport
from sitesmith.dispatch.styling import find_color_literals, sanitize_styles

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONTENT_CHARS = 200
CHROME_PARTIALS = frozenset({"header.html", "footer.html"})
RESERVED_KEYS = frozenset({"files", "entry", "notes"})

_DOCUMENT_WRAPPER_RE = re.compile(r"<!doctype\b|<(html|head|body)(?=[\s>/])", re.IGNORECASE)
_CHROME_RE = re.compile(r"<(header|footer)(?=[\s>/])", re.IGNORECASE)
_PLACEHOLDER_TEXT_RE = re.compile(r">\s*(undefined|null)\s*<")
_PLACEHOLDER_ATTR_RE = re.compile(r"""=\s*(["'])\s*(undefined|null)\s*\1""")
_STYLE_BLOCK_RE = re.compile(r"<style\b[^>]*>(.*?)</style>", re.IGNORECASE | re.DOTALL)
_STYLE_ATTR_RE = re.compile(r"""(?<![\w-])style\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def validate_artifact(
    document: Any,
    *,
    expected_paths: Sequence[str] = (),
    min_content_chars: int = DEFAULT_MIN_CONTENT_CHARS,
    sanitize_colors: bool = True,
) -> ValidationReport:
    """Validate a repaired document and build the immutable artifact.

    Errors block acceptance of the artifact; warnings are informational.
    With ``sanitize_colors`` leaked stylesheet colors are rewritten in the
    returned artifact instead of being left in place.
    """

    report = ValidationReport()
    if not isinstance(document, Mapping):
        report.errors.append(f"Document must be a JSON object, got {type(document).__name__}.")
        return report

    files = _normalize_files(document.get("files"), report)
    entry = document.get("entry")
    if not isinstance(entry, str) or not entry.strip():
        report.errors.append("Missing required field: entry.")
    elif files and entry not in files:
        report.errors.append(f"Entry {entry!r} is not one of the produced files.")

    for path in expected_paths:
        if path not in files:
            report.errors.append(f"Expected file {path!r} is missing.")

    for path, content in sorted(files.items()):
        if _is_html(path):
            _check_html(path, content, report, min_content_chars=min_content_chars)
        elif path.lower().endswith(".css"):
            files[path] = _check_css(path, content, report, sanitize=sanitize_colors)

    if report.errors:
        logger.info("Artifact rejected: %s", "; ".join(report.errors))
        return report

    notes = document.get("notes")
    report.artifact = ParsedArtifact(
        files=files,
        entry=str(entry),
        notes=notes if isinstance(notes, str) else "",
        metadata={key: value for key, value in document.items() if key not in RESERVED_KEYS},
    )
    return report


def visible_text(raw_html: str) -> str:
    """Normalized text a reader would see in an HTML fragment."""

    if not raw_html:
        return ""
    no_scripts = _SCRIPT_STYLE_RE.sub(" ", raw_html)
    stripped = _TAG_RE.sub(" ", no_scripts)
    return _WHITESPACE_RE.sub(" ", html.unescape(stripped)).strip()


def _normalize_files(raw: Any, report: ValidationReport) -> dict[str, str]:
    files: dict[str, str] = {}
    if isinstance(raw, Mapping):
        for path, content in raw.items():
            if isinstance(content, str):
                files[str(path).strip().lstrip("/")] = content
            else:
                report.errors.append(f"File {path!r} content must be a string.")
    elif isinstance(raw, list):
        for index, item in enumerate(raw):
            if not isinstance(item, Mapping):
                report.errors.append(f"files[{index}] must be an object.")
                continue
            path = item.get("path") or item.get("filename")
            content = item.get("content")
            if not isinstance(path, str) or not path.strip() or not isinstance(content, str):
                report.errors.append(f"files[{index}] needs string path and content.")
                continue
            files[path.strip().lstrip("/")] = content
    elif raw is not None:
        report.errors.append("Field files must be an object or a list.")

    if not files and not report.errors:
        report.errors.append("Missing required field: files.")
    return files


def _check_html(
    path: str,
    content: str,
    report: ValidationReport,
    *,
    min_content_chars: int,
) -> None:
    wrapper = _DOCUMENT_WRAPPER_RE.search(content)
    if wrapper is not None:
        report.errors.append(
            f"{path}: body region contains document wrapper {wrapper.group(0).lower()!r}.",
        )

    is_chrome = path.rsplit("/", 1)[-1].lower() in CHROME_PARTIALS
    if not is_chrome:
        chrome = _CHROME_RE.search(content)
        if chrome is not None:
            report.errors.append(
                f"{path}: body region contains shared chrome <{chrome.group(1).lower()}>.",
            )

    placeholder = _PLACEHOLDER_TEXT_RE.search(content) or _PLACEHOLDER_ATTR_RE.search(content)
    if placeholder is not None:
        report.errors.append(f"{path}: placeholder token {placeholder.group(0).strip()!r}.")

    for block in _STYLE_BLOCK_RE.finditer(content):
        literals = find_color_literals(block.group(1))
        if literals:
            report.warnings.append(
                f"{path}: color literals outside :root: {', '.join(literals[:3])}.",
            )

    inline = [
        literal
        for attribute in _STYLE_ATTR_RE.finditer(content)
        for literal in find_color_literals(attribute.group(2))
    ]
    if inline:
        report.warnings.append(
            f"{path}: color literals in inline style attributes: {', '.join(inline[:3])}.",
        )

    if not is_chrome:
        text_length = len(visible_text(content))
        if text_length < min_content_chars:
            report.warnings.append(
                f"{path}: thin content ({text_length} chars < {min_content_chars}).",
            )


def _check_css(path: str, content: str, report: ValidationReport, *, sanitize: bool) -> str:
    literals = find_color_literals(content)
    if not literals:
        return content
    report.warnings.append(f"{path}: color literals outside :root: {', '.join(literals[:3])}.")
    if not sanitize:
        return content
    sanitized = sanitize_styles(content)
    report.warnings.append(
        f"{path}: moved {len(sanitized.variables)} color literal(s) into :root variables.",
    )
    return sanitized.css


def _is_html(path: str) -> bool:
    return path.lower().endswith((".html", ".htm"))
