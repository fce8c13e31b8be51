"""Color literal detection and rewriting for shared stylesheets.

Colors belong in the ``:root`` block as custom properties. Literals found in
declarations elsewhere are reported and can be rewritten into
``var(--color-sanitized-N)`` references declared in ``:root``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_ROOT_BLOCK_RE = re.compile(r":root\s*\{([^}]*)\}")
_DECLARATION_RE = re.compile(r"([\w-]+)(\s*:\s*)([^;{}]+)")
_COLOR_LITERAL_RE = re.compile(
    r"(?<![\w&-])#(?:[0-9a-fA-F]{8}|[0-9a-fA-F]{6}|[0-9a-fA-F]{3,4})\b"
    r"|\b(?:rgba?|hsla?)\(\s*[0-9.][^()]*\)",
    re.IGNORECASE,
)
_SANITIZED_VAR_RE = re.compile(r"--color-sanitized-(\d+)\s*:")
SANITIZED_PREFIX = "--color-sanitized-"


@dataclass(slots=True)
class StyleSanitization:
    """Rewritten stylesheet and the variables introduced for leaked literals."""

    css: str
    variables: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.variables)


def find_color_literals(css: str) -> list[str]:
    """Color literals used in declarations outside every ``:root`` block."""

    literals: list[str] = []
    for segment in _outside_root_segments(css):
        for declaration in _DECLARATION_RE.finditer(segment):
            value = declaration.group(3)
            literals.extend(match.group(0) for match in _COLOR_LITERAL_RE.finditer(value))
    return literals


def sanitize_styles(css: str) -> StyleSanitization:
    """Move leaked color literals into ``:root`` custom properties.

    Identical literals (case-insensitive) share one variable. A ``:root``
    block is created at the top when the stylesheet has none.
    """

    if not find_color_literals(css):
        return StyleSanitization(css=css)

    counter = _next_index(css)
    by_literal: dict[str, str] = {}
    variables: dict[str, str] = {}

    def _replace_literal(match: re.Match[str]) -> str:
        nonlocal counter
        literal = match.group(0)
        key = re.sub(r"\s+", "", literal.lower())
        name = by_literal.get(key)
        if name is None:
            name = f"{SANITIZED_PREFIX}{counter}"
            counter += 1
            by_literal[key] = name
            variables[name] = literal
        return f"var({name})"

    def _replace_declaration(match: re.Match[str]) -> str:
        value = _COLOR_LITERAL_RE.sub(_replace_literal, match.group(3))
        return f"{match.group(1)}{match.group(2)}{value}"

    pieces: list[str] = []
    cursor = 0
    root_spans: list[tuple[int, int]] = []
    for root in _ROOT_BLOCK_RE.finditer(css):
        pieces.append(_DECLARATION_RE.sub(_replace_declaration, css[cursor : root.start()]))
        root_spans.append((len("".join(pieces)), len(root.group(0))))
        pieces.append(root.group(0))
        cursor = root.end()
    pieces.append(_DECLARATION_RE.sub(_replace_declaration, css[cursor:]))
    rewritten = "".join(pieces)

    declarations = "".join(f"\n  {name}: {value};" for name, value in variables.items())
    if root_spans:
        start, length = root_spans[0]
        block = rewritten[start : start + length]
        closing = block.rfind("}")
        body = block[:closing].rstrip()
        rewritten = f"{rewritten[:start]}{body}{declarations}\n}}{rewritten[start + length :]}"
    else:
        rewritten = f":root {{{declarations}\n}}\n\n{rewritten}"

    logger.warning("Rewrote %d leaked color literal(s) into :root variables", len(variables))
    return StyleSanitization(css=rewritten, variables=variables)


def _outside_root_segments(css: str) -> list[str]:
    segments: list[str] = []
    cursor = 0
    for root in _ROOT_BLOCK_RE.finditer(css):
        segments.append(css[cursor : root.start()])
        cursor = root.end()
    segments.append(css[cursor:])
    return segments


def _next_index(css: str) -> int:
    existing = [int(value) for value in _SANITIZED_VAR_RE.findall(css)]
    return max(existing, default=0) + 1
