"""Offline quality scores, backend id matching and percentile tiering."""

from __future__ import annotations

import json
import logging
import re
from difflib import SequenceMatcher
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from sitesmith.dispatch.models import Tier

logger = logging.getLogger(__name__)

FUZZY_MATCH_THRESHOLD = 0.7
_SUBSTRING_SIMILARITY = 0.8
_LOW_SHARE = 0.5
_MID_SHARE = 0.35
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

# Normalized 0..1, weighted toward coding benchmarks.
CURATED_SCORES: dict[str, float] = {
    "qwen-2.5-coder-32b-instruct": 0.89,
    "deepseek-v3": 0.88,
    "gemini-2.0-flash-exp": 0.85,
    "deepseek-r1-0528": 0.84,
    "devstral-2412": 0.82,
    "kat-coder-pro": 0.78,
    "qwen3-coder": 0.76,
    "nemotron-3-nano-30b": 0.72,
}


@dataclass(frozen=True, slots=True)
class ScoreMatch:
    """Score lookup result for one backend id."""

    score: float
    ranked: bool
    method: str
    matched_id: str | None = None


@dataclass(frozen=True, slots=True)
class ScoredBackend:
    """Backend listing row enriched with its quality score."""

    id: str
    display_name: str
    context_limit: int
    match: ScoreMatch


def normalize_backend_id(value: str) -> str:
    """Lowercase, drop the zero-cost suffix and every non-alphanumeric char."""

    lowered = value.lower()
    if lowered.endswith(":free"):
        lowered = lowered[: -len(":free")]
    return _NON_ALNUM_RE.sub("", lowered)


def similarity(left: str, right: str) -> float:
    """Normalized id similarity in [0, 1]."""

    first = normalize_backend_id(left)
    second = normalize_backend_id(right)
    if first == second:
        return 1.0
    if first and second and (first in second or second in first):
        return _SUBSTRING_SIMILARITY
    return SequenceMatcher(None, first, second).ratio()


def match_score(backend_id: str, scores: Mapping[str, float]) -> ScoreMatch:
    """Find the best score for a gateway id: exact normalized match, then fuzzy."""

    normalized = normalize_backend_id(backend_id)
    for score_id, value in scores.items():
        if normalize_backend_id(score_id) == normalized:
            return ScoreMatch(score=_clamp(value), ranked=True, method="exact", matched_id=score_id)

    best_id: str | None = None
    best_similarity = 0.0
    for score_id in scores:
        candidate = similarity(backend_id, score_id)
        if candidate > best_similarity:
            best_similarity = candidate
            best_id = score_id
    if best_id is not None and best_similarity >= FUZZY_MATCH_THRESHOLD:
        return ScoreMatch(
            score=_clamp(scores[best_id]),
            ranked=True,
            method="fuzzy",
            matched_id=best_id,
        )
    return ScoreMatch(score=0.0, ranked=False, method="none")


def assign_tiers(backends: Sequence[ScoredBackend]) -> dict[str, Tier]:
    """Percentile tiers over ranked backends; unranked ones are always LOW.

    Ranked backends are sorted by score and context size; the bottom half is LOW,
    the next 35% MID and the remainder (top ~15%) HIGH.
    """

    ranked = sorted(
        (item for item in backends if item.match.ranked),
        key=lambda item: (-item.match.score, -item.context_limit, item.id),
    )
    count = len(ranked)
    low_count = int(count * _LOW_SHARE)
    mid_count = int(count * _MID_SHARE)
    high_count = count - low_count - mid_count

    tiers = {item.id: Tier.LOW for item in backends}
    for index, item in enumerate(ranked):
        if index < high_count:
            tiers[item.id] = Tier.HIGH
        elif index < high_count + mid_count:
            tiers[item.id] = Tier.MID
    return tiers


def load_scores(path: Path | None) -> dict[str, float]:
    """Load a scores file or fall back to the curated table.

    Accepted shapes: ``{"model-id": 0.8}`` or
    ``{"scores": [{"model_id": "...", "score": 0.8}]}``.
    """

    if path is None:
        return dict(CURATED_SCORES)
    if not path.exists():
        logger.warning("Scores file %s not found, using curated scores", path)
        return dict(CURATED_SCORES)

    payload = json.loads(path.read_text("utf-8"))
    if isinstance(payload, dict) and isinstance(payload.get("scores"), list):
        rows = payload["scores"]
        loaded = {
            str(row["model_id"]): float(row["score"])
            for row in rows
            if isinstance(row, dict) and "model_id" in row and "score" in row
        }
    elif isinstance(payload, dict):
        loaded = {
            str(key): float(value)
            for key, value in payload.items()
            if isinstance(value, int | float) and not isinstance(value, bool)
        }
    else:
        raise ValueError(f"Unsupported scores file shape in {path}")
    if not loaded:
        logger.warning("Scores file %s is empty, using curated scores", path)
        return dict(CURATED_SCORES)
    return {key: _clamp(value) for key, value in loaded.items()}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
