"""Tests for prompt resolution and A/B variant selection."""

from unittest.mock import MagicMock, patch

import pytest

from curriculum_engine.core.prompt_templates import (
    GENERIC_STAGE_PROMPT,
    resolve_prompt,
    select_variant,
    string_hash,
)
from curriculum_engine.db.prompt_templates import get_template


class TestStringHash:
    def test_matches_known_values(self):
        assert string_hash("") == 0
        assert string_hash("abc") == 96354
        assert string_hash("hello") == 99162322

    def test_wraps_to_signed_int32(self):
        value = string_hash("user-with-a-fairly-long-identifier-0001")

        assert -(2**31) <= value < 2**31

    def test_non_bmp_counts_two_units(self):
        # U+1F600 is the surrogate pair D83D DE00
        assert string_hash("\U0001F600") == (0xD83D * 31 + 0xDE00)


class TestSelectVariant:
    def test_seeded_draw_is_stable(self):
        # abs(hash("abc")) % 100 == 54
        assert select_variant([50, 50], seed="abc") == 1
        assert select_variant([60, 40], seed="abc") == 0
        assert select_variant([60, 40], seed="abc") == select_variant([60, 40], seed="abc")

    def test_weights_are_normalized(self):
        assert select_variant([3, 2], seed="abc") == 0
        assert select_variant([1, 1], seed="abc") == 1

    def test_unseeded_uses_rng(self):
        assert select_variant([50, 50], rng=lambda: 0.1) == 0
        assert select_variant([50, 50], rng=lambda: 0.9) == 1

    def test_single_variant(self):
        assert select_variant([10], seed="anyone") == 0

    def test_zero_weights_pick_first(self):
        assert select_variant([0, 0]) == 0

    def test_empty_weights_rejected(self):
        with pytest.raises(ValueError):
            select_variant([])


class TestResolvePrompt:
    @patch("curriculum_engine.db.prompt_templates.get_template", return_value=None)
    def test_missing_template_uses_builtin(self, mock_get):
        resolved = resolve_prompt("Q7")

        assert resolved.source == "default"
        assert resolved.version == 0
        assert resolved.template == GENERIC_STAGE_PROMPT.replace("{{stage}}", "Q7")
        mock_get.assert_called_once_with("stage_q7")

    @patch("curriculum_engine.db.prompt_templates.get_template", side_effect=RuntimeError("down"))
    def test_store_failure_uses_builtin(self, _mock_get):
        resolved = resolve_prompt("Q1")

        assert resolved.source == "default"
        assert "SWOT" in resolved.template

    @patch("curriculum_engine.db.prompt_templates.get_template")
    def test_managed_template(self, mock_get):
        mock_get.return_value = {"id": "t1", "template": "managed {{user_input}}", "current_version": 4}

        resolved = resolve_prompt("Q2")

        assert resolved.template == "managed {{user_input}}"
        assert resolved.version == 4
        assert resolved.is_ab_test is False

    @patch("curriculum_engine.db.prompt_templates.get_version_snapshot")
    @patch("curriculum_engine.db.prompt_templates.get_template")
    def test_ab_variant_replaces_template(self, mock_get, mock_snapshot):
        mock_get.return_value = {
            "id": "t1",
            "template": "current",
            "current_version": 3,
            "ab_testing": {
                "enabled": True,
                "versions": [{"version": 2, "weight": 50}, {"version": 3, "weight": 50}],
            },
        }
        mock_snapshot.return_value = {"template": "variant two"}

        # "abc" draws 54, which lands in the second half
        resolved = resolve_prompt("Q3", user_id="abc")

        assert resolved.is_ab_test is True
        mock_snapshot.assert_called_once_with("t1", 3)
        assert resolved.template == "variant two"
        assert resolved.version == 3

    @patch("curriculum_engine.db.prompt_templates.get_version_snapshot", return_value=None)
    @patch("curriculum_engine.db.prompt_templates.get_template")
    def test_missing_snapshot_keeps_current(self, mock_get, _mock_snapshot):
        mock_get.return_value = {
            "id": "t1",
            "template": "current",
            "current_version": 5,
            "ab_testing": {"enabled": True, "versions": [{"version": 1, "weight": 100}]},
        }

        resolved = resolve_prompt("Q3", user_id="u")

        assert resolved.is_ab_test is True
        assert resolved.template == "current"
        assert resolved.version == 5


class TestTemplateStore:
    def test_get_template_queries_by_key(self):
        mock_client = MagicMock()
        mock_client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value = MagicMock(
            data=[{"key": "stage_q1", "template": "t"}]
        )

        with patch("curriculum_engine.db.prompt_templates.get_supabase", return_value=mock_client):
            row = get_template("stage_q1")

        assert row["template"] == "t"
        mock_client.table.assert_called_with("prompt_templates")
        mock_client.table.return_value.select.return_value.eq.assert_called_with("key", "stage_q1")
