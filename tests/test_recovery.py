import json

import pytest

from novel_forge.exceptions import StructuredOutputError
from novel_forge.models import ChapterPlan, OutlineResult
from novel_forge.normalize import OUTLINE_ALIASES, SCENE_PLAN_ALIASES
from novel_forge.recovery import (
    StructuredOutputParser,
    balanced_extract,
    escape_string_controls,
    quote_bare_keys,
    quote_single_quoted,
    recover_json,
)

SAMPLE = {
    "outline": [
        {"number": 1, "title": "Low Tide", "summary": "Mara finds the ledger."},
        {"number": 2, "title": "Fog Bell", "summary": "Silas seizes the harbour."},
        {"number": 3, "title": "Salt Road", "summary": "Mara runs inland."},
    ],
    "notes": "line one\nline two",
}


def test_valid_json():
    result = recover_json(json.dumps(SAMPLE), anchor="outline")
    assert result.ok
    assert result.value == SAMPLE
    assert result.strategy == "fenced_region"


def test_markdown_fences_with_chatter():
    text = "Here is the outline you asked for:\n```json\n" + json.dumps(SAMPLE, indent=2) + "\n```\nLet me know!"
    result = recover_json(text, anchor="outline")
    assert result.ok
    assert result.value == SAMPLE


def test_fence_selection_prefers_anchor():
    text = (
        "```json\n{\"draft\": true, \"padding\": \"" + "x" * 200 + "\"}\n```\n"
        "```json\n" + json.dumps(SAMPLE) + "\n```"
    )
    result = recover_json(text, anchor="outline")
    assert result.value == SAMPLE


def test_literal_newline_inside_string():
    text = json.dumps(SAMPLE).replace("line one\\nline two", "line one\nline two")
    with pytest.raises(json.JSONDecodeError):
        json.loads(text)
    result = recover_json(text, anchor="outline")
    assert result.ok
    assert result.value == SAMPLE


def test_truncated_after_complete_entries():
    full = json.dumps({"outline": SAMPLE["outline"]})
    cut = full.index('{"number": 3') + len('{"number": 3, "title": "Sal')
    result = recover_json(full[:cut], anchor="outline")
    assert result.ok
    assert result.strategy == "close_truncated"
    assert [e["number"] for e in result.value["outline"]] == [1, 2]


def test_trailing_commas_and_text_around():
    text = 'Sure! {"scenes": [{"plot_beat": "a"}, {"plot_beat": "b"},],} Hope that helps.'
    result = recover_json(text, anchor="scenes")
    assert result.ok
    assert result.value == {"scenes": [{"plot_beat": "a"}, {"plot_beat": "b"}]}


def test_single_quotes_and_bare_keys():
    text = "{scenes: [{'plot_beat': 'Mara waits', word_target: 500}]}"
    result = recover_json(text)
    assert result.ok
    assert result.strategy == "structural_fixes"
    assert result.value == {"scenes": [{"plot_beat": "Mara waits", "word_target": 500}]}


def test_position_repair_missing_comma():
    result = recover_json('{"logic_score": 7 "style_score": 8}')
    assert result.ok
    assert result.strategy == "position_repair"
    assert result.value == {"logic_score": 7, "style_score": 8}


def test_position_repair_python_literals():
    result = recover_json('{"is_approved": True, "patches": None}')
    assert result.ok
    assert result.value == {"is_approved": True, "patches": None}


def test_total_failure_reports_every_strategy():
    result = recover_json("The model refused to answer.")
    assert not result.ok
    assert "fenced_region" in result.error
    assert "position_repair" in result.error


def test_recovery_is_idempotent_on_its_own_output():
    text = "```json\n{'outline': [{'number': 1, 'title': 'Low Tide'},]}\n```"
    first = recover_json(text)
    second = recover_json(json.dumps(first.value))
    assert second.ok
    assert second.value == first.value


def test_helpers_leave_string_contents_alone():
    assert quote_bare_keys('{"a": "x: y", b: 1}') == '{"a": "x: y", "b": 1}'
    assert quote_single_quoted('{"a": "it\'s"}') == '{"a": "it\'s"}'
    assert escape_string_controls('{"a": "x\ty"}\n') == '{"a": "x\\ty"}\n'
    assert balanced_extract('noise {"a": "}"} more }') == '{"a": "}"}'


class TestStructuredOutputParser:
    def test_parse_normalizes_before_validation(self):
        text = json.dumps({
            "capitulos": [{"numero": "2", "titulo": "Fog Bell", "resumen": "Silas arrives."}],
            "biblia_del_mundo": {"personajes": [{"nombre": "Mara", "rol": "protagonist"}]},
        })
        result = StructuredOutputParser().parse(text, OutlineResult, anchor="outline", aliases=OUTLINE_ALIASES)
        assert result.outline[0].number == 2
        assert result.outline[0].title == "Fog Bell"
        assert result.world_bible.characters[0].name == "Mara"

    def test_list_key_wraps_bare_array(self):
        text = '[{"beat": "Mara waits", "scene_number": 2}, {"beat": "Silas arrives", "scene_number": 1}]'
        parser = StructuredOutputParser()
        plan = parser.parse(text, ChapterPlan, aliases=SCENE_PLAN_ALIASES, list_key="scenes")
        assert [s.plot_beat for s in plan.scenes] == ["Silas arrives", "Mara waits"]
        assert [s.scene_num for s in plan.scenes] == [1, 2]

    def test_records_strategy(self):
        parser = StructuredOutputParser()
        parser.parse('{"scenes": [{"plot_beat": "x"}],}', ChapterPlan)
        assert parser.last_strategy == "fenced_region"

    def test_unparseable_raises(self):
        with pytest.raises(StructuredOutputError) as info:
            StructuredOutputParser().parse("no json at all", ChapterPlan)
        assert info.value.raw == "no json at all"
        assert "close_truncated" in info.value.tried

    def test_schema_violation_raises(self):
        with pytest.raises(StructuredOutputError, match="ChapterPlan validation failed"):
            StructuredOutputParser().parse('{"scenes": []}', ChapterPlan)
