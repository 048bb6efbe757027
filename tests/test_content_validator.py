"""Tests for generated-content validation."""

import pytest

from curriculum_engine.core.content_validator import ContentValidator

GOOD_CONTENT = (
    "本校坚持立德树人根本任务，落实五育并举的育人要求。\n\n"
    "课程体系围绕学生核心素养展开，结合地方文化资源设计特色课程，"
    "通过项目化学习提升学生的实践能力与创新精神。"
)


@pytest.fixture
def validator():
    return ContentValidator()


class TestKeywords:
    def test_found_and_missing_partition_keywords(self, validator):
        check = validator.check_required_keywords("我们坚持五育并举。")

        assert check.has_required is True
        assert check.found == ["五育并举"]
        assert check.missing == ["立德树人"]
        assert sorted(check.found + check.missing) == sorted(validator.required_keywords)

    def test_none_found(self, validator):
        check = validator.check_required_keywords("普通文本")

        assert check.has_required is False
        assert check.found == []

    def test_custom_keywords(self):
        validator = ContentValidator(required_keywords=["核心素养"])

        assert validator.passes_keyword_validation("发展核心素养")
        assert not validator.passes_keyword_validation("五育并举")

    def test_explicit_empty_lists_kept(self):
        validator = ContentValidator(required_keywords=[], sensitive_words=[])

        assert validator.required_keywords == []
        assert validator.sensitive_words == []
        assert validator.passes_keyword_validation("任意内容")
        assert validator.check_sensitive_words("杜绝暴力").has_sensitive is False


class TestSensitiveWords:
    def test_found_is_subset(self, validator):
        check = validator.check_sensitive_words("杜绝暴力和赌博行为")

        assert check.has_sensitive is True
        assert check.found == ["暴力", "赌博"]
        assert set(check.found) <= set(validator.sensitive_words)


class TestStructure:
    def test_short_content(self, validator):
        check = validator.check_content_structure("太短了")

        assert check.is_valid is False
        assert any("内容过短" in issue for issue in check.issues)

    def test_repetition_detected(self, validator):
        content = " ".join(["repeat"] * 8 + ["one", "two", "three", "four"]) + " " + "x" * 60

        check = validator.check_content_structure(content)

        assert any("repeat" in issue for issue in check.issues)


class TestValidate:
    def test_valid_content(self, validator):
        result = validator.validate(GOOD_CONTENT)

        assert result.is_valid is True
        assert result.suggestions == []
        assert result.details.found_keywords == ["五育并举", "立德树人"]

    def test_invalid_content_collects_suggestions(self, validator):
        result = validator.validate("这里有暴力内容")

        assert result.is_valid is False
        assert result.has_sensitive_content is True
        assert result.has_required_keywords is False
        assert result.structure_valid is False
        assert any("敏感词汇" in s for s in result.suggestions)
        assert any("教育方针关键词" in s for s in result.suggestions)

    def test_disabled_checks_pass(self, validator):
        result = validator.validate(
            "短", check_keywords=False, check_sensitive_words=False, check_structure=False
        )

        assert result.is_valid is True

    def test_empty_content(self, validator):
        result = validator.validate(None)

        assert result.is_valid is False
