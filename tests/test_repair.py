from __future__ import annotations

import allure
import pytest

from sitesmith.dispatch.errors import MalformedOutputError
from sitesmith.dispatch.repair import extract_balanced, repair_response

pytestmark = [
    allure.epic("Response Handling"),
    allure.feature("Repair Chain"),
]

_EXPECTED = {"files": {"index.html": "<main>{hi}</main>"}, "entry": "index.html"}


def test_clean_json_parses_directly() -> None:
    raw = '{"files": {"index.html": "<main>{hi}</main>"}, "entry": "index.html"}'
    result = repair_response(raw)

    assert result.strategy == "direct"
    assert result.document == _EXPECTED


@pytest.mark.parametrize(
    "raw",
    [
        "Sure! Here is the site you asked for.\n"
        "It has a single entry page.\n"
        "Styles live in the shared stylesheet.\n"
        '```json\n{"files": {"index.html": "<main>{hi}</main>"}, "entry": "index.html"}\n```\n'
        "Let me know if you need changes.",
        '{"files": {"index.html": "<main>{hi}</main>",}, "entry": "index.html",}',
        'Result: {"files": {"index.html": "<main>{hi}</main>"}, "entry": "index.html"} done',
    ],
    ids=["prose-and-fence", "trailing-commas", "surrounding-prose"],
)
def test_recoverable_variants_yield_same_document(raw: str) -> None:
    result = repair_response(raw)

    assert result.strategy != "direct"
    assert result.document == _EXPECTED


def test_fenced_block_is_used_when_prose_braces_come_first() -> None:
    raw = 'Use {braces} wisely.\n```json\n{"entry": "a.html", "files": {"a.html": "x"}}\n```'

    result = repair_response(raw)

    assert result.strategy == "fenced_block"
    assert result.document == {"entry": "a.html", "files": {"a.html": "x"}}


def test_truncated_output_is_unrecoverable() -> None:
    with pytest.raises(MalformedOutputError):
        repair_response('{"files": {"index.html": "<main>partial')


@pytest.mark.parametrize(
    "raw",
    ['{"a": 1, "b": ', '{"a": [1, 2, ', '{"a": {"b": 1}, "c": "x'],
)
def test_truncation_has_no_matching_close(raw: str) -> None:
    with pytest.raises(ValueError, match="Unterminated"):
        extract_balanced(raw)

    with pytest.raises(MalformedOutputError):
        repair_response(raw)


def test_escaped_quotes_do_not_end_strings() -> None:
    result = repair_response('noise {"text": "say \\"hi\\" {now}"} trailing')

    assert result.document == {"text": 'say "hi" {now}'}


def test_unrecoverable_output_raises_with_preview() -> None:
    with pytest.raises(MalformedOutputError) as excinfo:
        repair_response("I could not build that site, sorry.")

    assert "Unrecoverable" in str(excinfo.value)
    assert excinfo.value.preview.startswith("I could not build")
