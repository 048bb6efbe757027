"""Tests for stage ids and progress arithmetic."""

import pytest

from curriculum_engine.core.errors import InvalidStageError, ValidationError
from curriculum_engine.core.stages import (
    VALID_STAGES,
    calculate_progress,
    initialize_stages,
    normalize_stage,
    stages_before,
)


class TestNormalizeStage:
    def test_accepts_lowercase(self):
        assert normalize_stage(" q10 ") == "Q10"

    @pytest.mark.parametrize("stage", ["Q0", "Q11", "", None, "stage1"])
    def test_rejects_unknown(self, stage):
        with pytest.raises(InvalidStageError):
            normalize_stage(stage)

    def test_invalid_stage_is_validation_error(self):
        with pytest.raises(ValidationError):
            normalize_stage("Q99")


class TestStageOrdering:
    def test_stages_before_first(self):
        assert stages_before("Q1") == []

    def test_stages_before_is_strict(self):
        assert stages_before("Q4") == ["Q1", "Q2", "Q3"]

    def test_q10_sorts_last(self):
        assert stages_before("Q10") == list(VALID_STAGES[:9])


class TestCalculateProgress:
    def test_empty(self):
        assert calculate_progress({}) == 0
        assert calculate_progress(None) == 0

    def test_fresh_map_is_zero(self):
        assert calculate_progress(initialize_stages()) == 0

    def test_counts_completed_only(self):
        stages = initialize_stages()
        stages["Q1"]["status"] = "completed"
        stages["Q2"]["status"] = "completed"
        stages["Q3"]["status"] = "in_progress"

        assert calculate_progress(stages) == 20

    def test_all_completed(self):
        stages = {s: {"status": "completed"} for s in VALID_STAGES}

        assert calculate_progress(stages) == 100

    def test_ignores_unknown_keys(self):
        stages = {"Q1": {"status": "completed"}, "Q11": {"status": "completed"}, "Q2": "junk"}

        assert calculate_progress(stages) == 10
