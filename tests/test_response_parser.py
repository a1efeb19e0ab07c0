# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests for the model reply parser."""

import json

import pytest

from wendao.metrics import disable_metrics_collector, init_metrics_collector
from wendao.models import CharacterState, CharacterUpdate, DEFAULT_ART_KEYWORD, TurnResult
from wendao.services.reconciler import reconcile
from wendao.services.response_parser import (
    CONTINUE_CHOICE,
    MAX_FALLBACK_NARRATIVE_LENGTH,
    FramedText,
    ResponseParser,
    strip_framing,
)


@pytest.fixture
def parser():
    return ResponseParser()


class TestStripFraming:
    """Tests for code-fence removal."""

    def test_json_fence(self):
        assert strip_framing('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain_fence(self):
        assert strip_framing('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_uppercase_json_fence(self):
        assert strip_framing('```JSON\n{"a": 1}```') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_framing('  plain text  ') == 'plain text'


class TestFramedText:

    def test_envelope_spans_first_to_last_brace(self):
        framed = FramedText.from_raw('Here you go: {"a": {"b": 1}} hope it helps')
        assert framed.envelope == '{"a": {"b": 1}}'

    def test_no_braces_has_no_envelope(self):
        framed = FramedText.from_raw("只是一段散文。")
        assert framed.envelope is None


class TestStrictParsing:
    """Well-formed replies decode on the strict path."""

    def test_valid_reply(self, parser):
        raw = json.dumps({
            "narrative": "你踏入山门。",
            "characterUpdate": {"cultivation": 20, "attributes": {"悟性": 12}},
            "choices": ["拜见长老", "四处走走"],
            "gameOver": False,
            "eventArtKeyword": "mountain gate"
        }, ensure_ascii=False)

        parsed = parser.parse(raw)

        assert parsed.is_valid
        assert parsed.stage == "strict"
        assert parsed.error_type is None
        assert parsed.narrative == "你踏入山门。"
        assert parsed.result.character_update.cultivation == 20
        assert parsed.result.character_update.attributes == {"悟性": 12}
        assert parsed.result.choices == ["拜见长老", "四处走走"]
        assert parsed.result.event_art_keyword == "mountain gate"

    def test_fenced_reply_with_prose(self, parser):
        raw = '```json\n好的，以下是回复：{"narrative": "雨落青山。", "choices": []}\n```'
        parsed = parser.parse(raw)
        assert parsed.is_valid
        assert parsed.narrative == "雨落青山。"
        assert parsed.result.choices == []

    def test_serialized_result_parses_back_unchanged(self, parser):
        original = TurnResult(
            narrative="剑光一闪，\n妖狼伏诛。",
            character_update=CharacterUpdate(
                cultivation=55,
                max_health=120,
                attributes={"根骨": 11},
                inventory=["狼牙"],
                equipment={"weapon": "青锋剑"},
                status_effects=["轻伤"]
            ),
            choices=["剥取狼皮", "继续赶路"],
            game_over=False,
            event_art_keyword="wolf fight"
        )

        parsed = parser.parse(original.model_dump_json(by_alias=True))

        assert parsed.stage == "strict"
        assert parsed.result == original

    def test_missing_optional_fields_use_defaults(self, parser):
        parsed = parser.parse('{"narrative": "寂静。"}')
        assert parsed.is_valid
        assert parsed.result.choices == []
        assert parsed.result.game_over is False
        assert parsed.result.event_art_keyword == DEFAULT_ART_KEYWORD
        assert parsed.result.character_update.cultivation is None

    def test_ill_typed_update_fields_are_dropped(self, parser):
        raw = json.dumps({
            "narrative": "你得到一枚丹药。",
            "characterUpdate": {
                "health": "ninety",
                "mana": "45",
                "inventory": "not a list",
                "attributes": ["根骨"]
            }
        })
        parsed = parser.parse(raw)
        update = parsed.result.character_update
        assert parsed.is_valid
        assert update.health is None
        assert update.mana == 45
        assert update.inventory is None
        assert update.attributes is None

    def test_object_choices_are_coerced(self, parser):
        raw = json.dumps({"narrative": "x", "choices": [{"name": "逃跑"}, "战斗", None]})
        parsed = parser.parse(raw)
        assert parsed.result.choices == ["逃跑", "战斗"]

    def test_non_string_narrative_falls_through(self, parser):
        parsed = parser.parse('{"narrative": 42, "choices": ["a"]}')
        assert not parsed.is_valid
        assert parsed.error_type == "validation_error"


class TestRecovery:
    """Malformed replies recover field by field."""

    def test_truncated_reply_recovers_fields(self, parser):
        raw = (
            '{"narrative": "你与妖兽缠斗良久。", "characterUpdate": {"health": 40, '
            '"根骨": 13}, "choices": ["乘胜追击", "撤退"], "gameOver": true, "eventArt'
        )
        parsed = parser.parse(raw)

        assert not parsed.is_valid
        assert parsed.stage == "recovered"
        assert parsed.error_type == "json_decode_error"
        assert parsed.narrative == "你与妖兽缠斗良久。"
        assert parsed.result.character_update.health == 40
        assert parsed.result.character_update.attributes == {"根骨": 13}
        assert parsed.result.choices == ["乘胜追击", "撤退"]
        assert parsed.result.game_over is True
        assert parsed.result.event_art_keyword == DEFAULT_ART_KEYWORD

    def test_broken_choices_do_not_suppress_narrative(self, parser):
        raw = '{"narrative": "山门大开。", "choices": ["进入", 出去], "spiritStones": 30'
        parsed = parser.parse(raw)
        assert parsed.narrative == "山门大开。"
        assert parsed.result.choices == ["进入", "出去"]
        assert parsed.result.character_update.spirit_stones == 30

    def test_missing_choices_default_to_continue(self, parser):
        parsed = parser.parse('{"narrative": "夜深了。", "gameOver": false,}')
        assert parsed.stage == "recovered"
        assert parsed.result.choices == [CONTINUE_CHOICE]

    def test_unescapes_narrative(self, parser):
        raw = '{"narrative": "他说：\\"走吧\\"\\n你点头。", broken'
        parsed = parser.parse(raw)
        assert parsed.narrative == '他说："走吧"\n你点头。'

    def test_envelope_without_narrative_uses_stripped_text(self, parser):
        raw = '{"story": "something happened", "choices": ["a"]'
        parsed = parser.parse(raw + "}")
        assert not parsed.is_valid
        assert parsed.narrative.endswith("...")
        assert '"story":' not in parsed.narrative

    def test_fallback_narrative_is_truncated(self, parser):
        raw = '{"text": "' + "长" * (MAX_FALLBACK_NARRATIVE_LENGTH * 2) + '"}'
        parsed = parser.parse(raw)
        assert len(parsed.narrative) == MAX_FALLBACK_NARRATIVE_LENGTH + 3

    def test_reply_without_braces_or_narrative_key(self, parser):
        raw = '["narrative", "x"]'
        parsed = parser.parse(raw)
        assert not parsed.is_valid
        assert parsed.error_type == "no_envelope"
        assert parsed.narrative == raw


class TestTotality:
    """The parser never raises, whatever it is given."""

    @pytest.mark.parametrize("raw", [
        "",
        "   ",
        "{",
        "}{",
        "```",
        '{"narrative": ',
        '"narrative": "unterminated',
        "null",
        "\x00\x01",
    ])
    def test_never_raises(self, parser, raw):
        parsed = parser.parse(raw)
        assert isinstance(parsed.narrative, str)
        assert isinstance(parsed.result.choices, list)

    def test_unescaped_newline_inside_string(self, parser):
        raw = '{"narrative": "第一行\n第二行", "choices": ["a"], "characterUpdate": {"health": 5}}'

        parsed = parser.parse(raw)

        assert parsed.stage == "recovered"
        assert parsed.narrative == "第一行\n第二行"
        assert parsed.result.choices == ["a"]
        assert parsed.result.character_update.health == 5

    def test_signed_numbers_are_not_recovered(self, parser):
        parsed = parser.parse('"narrative": "重伤", "health": -5, "mana": 3')
        assert parsed.result.character_update.health is None
        assert parsed.result.character_update.mana == 3

    def test_non_string_input(self, parser):
        parsed = parser.parse(None)
        assert parsed.narrative == ""
        assert parsed.result.choices == [CONTINUE_CHOICE]


class TestEndToEnd:
    """Reply text through the parser and into the reconciler."""

    def test_fenced_reply_without_outer_braces(self, parser):
        raw = (
            '```json\n'
            '"narrative":"你打坐修炼，气息渐涨。\\nmeditation continues",'
            '"characterUpdate":{"cultivation":40},'
            '"choices":["继续打坐","出关查看"],"gameOver":false\n'
            '```'
        )
        parsed = parser.parse(raw)

        assert "\n" in parsed.narrative
        assert parsed.narrative == "你打坐修炼，气息渐涨。\nmeditation continues"
        assert parsed.result.choices == ["继续打坐", "出关查看"]
        assert parsed.result.game_over is False

        prior = CharacterState(cultivation=0, max_cultivation=100)
        state = reconcile(prior, parsed.result.character_update)
        assert state.cultivation == 40
        assert state.model_dump(exclude={"cultivation"}) == prior.model_dump(exclude={"cultivation"})

    def test_overflowing_progress_raises_max(self, parser):
        parsed = parser.parse('{"narrative": "突破在即。", "characterUpdate": {"cultivation": 150}}')
        state = reconcile(CharacterState(max_cultivation=100), parsed.result.character_update)
        assert state.cultivation == 150
        assert state.max_cultivation == 150

    def test_plain_prose_is_kept_verbatim(self, parser):
        raw = "天色已晚，你在破庙中歇下。\n远处传来狼嚎。"
        parsed = parser.parse(raw)
        assert parsed.narrative == raw
        assert parsed.result.choices == [CONTINUE_CHOICE]
        assert parsed.result.game_over is False

    def test_unknown_attribute_is_dropped(self, parser):
        raw = json.dumps({
            "narrative": "洗髓伐骨。",
            "characterUpdate": {"attributes": {"根骨": 12, "不存在属性": 99}}
        }, ensure_ascii=False)
        state = reconcile(CharacterState(), parser.parse(raw).result.character_update)
        assert state.attributes["根骨"] == 12
        assert "不存在属性" not in state.attributes


class TestMetricsAndText:

    def test_parse_stages_are_counted(self, parser):
        collector = init_metrics_collector()
        collector.reset()
        try:
            parser.parse('{"narrative": "ok"}')
            parser.parse("prose only")
            conformance = collector.get_metrics()["schema_conformance"]
            assert conformance["strict_parses"] == 1
            assert conformance["recovered_parses"] == 1
            assert conformance["conformance_rate"] == 0.5
        finally:
            disable_metrics_collector()

    def test_parse_text_strips_fences(self, parser):
        assert parser.parse_text("```\n前情提要：少年入山。\n```") == "前情提要：少年入山。"

    def test_parse_text_non_string(self, parser):
        assert parser.parse_text(None) == ""
