from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from sitesmith.dispatch.models import Tier
from sitesmith.dispatch.scores import (
    CURATED_SCORES,
    ScoredBackend,
    ScoreMatch,
    assign_tiers,
    load_scores,
    match_score,
    normalize_backend_id,
    similarity,
)

pytestmark = [
    allure.epic("Backend Catalog"),
    allure.feature("Quality Scores & Tiers"),
]


def _backend(backend_id: str, score: float, *, ranked: bool = True) -> ScoredBackend:
    return ScoredBackend(
        id=backend_id,
        display_name=backend_id,
        context_limit=32_000,
        match=ScoreMatch(score=score, ranked=ranked, method="exact" if ranked else "none"),
    )


def test_normalize_strips_free_suffix_and_punctuation() -> None:
    assert normalize_backend_id("Qwen/Qwen-2.5-Coder:free") == "qwenqwen25coder"


def test_similarity_scores_substrings_high() -> None:
    assert similarity("deepseek/deepseek-v3:free", "deepseek-v3") == pytest.approx(0.8)
    assert similarity("same-id", "same_id") == 1.0


def test_similarity_scores_near_miss_ids_by_matching_blocks() -> None:
    assert similarity("devstral-2512", "devstral-2412") == pytest.approx(22 / 24)
    assert similarity("abc", "xyz") == 0.0

    match = match_score("devstral-2512:free", CURATED_SCORES)

    assert match.method == "fuzzy"
    assert match.matched_id == "devstral-2412"


def test_match_score_prefers_exact_normalized_match() -> None:
    match = match_score("kat-coder-pro:free", {"kat-coder-pro": 0.78, "kat-coder": 0.5})

    assert match.ranked is True
    assert match.method == "exact"
    assert match.score == pytest.approx(0.78)


def test_match_score_falls_back_to_fuzzy_match() -> None:
    match = match_score("mistralai/devstral-2412:free", CURATED_SCORES)

    assert match.method == "fuzzy"
    assert match.matched_id == "devstral-2412"
    assert match.score == pytest.approx(CURATED_SCORES["devstral-2412"])


def test_unknown_backend_is_unranked() -> None:
    match = match_score("vendor/totally-unrelated-model:free", {"abc": 0.9})

    assert match.ranked is False
    assert match.score == 0.0


def test_assign_tiers_uses_percentile_shares() -> None:
    backends = [_backend(f"b{index}", score=index / 10) for index in range(1, 11)]
    backends.append(_backend("unranked", score=0.0, ranked=False))

    tiers = assign_tiers(backends)

    assert [tiers[f"b{index}"] for index in (10, 9)] == [Tier.HIGH, Tier.HIGH]
    assert tiers["b8"] is Tier.MID
    assert tiers["b6"] is Tier.MID
    assert tiers["b5"] is Tier.LOW
    assert tiers["b1"] is Tier.LOW
    assert tiers["unranked"] is Tier.LOW
    assert sum(1 for tier in tiers.values() if tier is Tier.HIGH) == 2


def test_load_scores_defaults_to_curated_table() -> None:
    assert load_scores(None) == CURATED_SCORES


def test_load_scores_accepts_both_file_shapes(tmp_path: Path) -> None:
    flat = tmp_path / "flat.json"
    flat.write_text(json.dumps({"model-a": 0.4, "model-b": 1.7, "label": "skip"}), "utf-8")
    listed = tmp_path / "listed.json"
    listed.write_text(
        json.dumps({"scores": [{"model_id": "model-c", "score": 0.6}, {"model_id": "broken"}]}),
        "utf-8",
    )

    assert load_scores(flat) == {"model-a": 0.4, "model-b": 1.0}
    assert load_scores(listed) == {"model-c": 0.6}


def test_load_scores_missing_file_uses_curated(tmp_path: Path) -> None:
    assert load_scores(tmp_path / "missing.json") == CURATED_SCORES
