"""Policy checks for generated educational content.

Validation never blocks saving: results are returned next to the content
so the caller can surface suggestions.
"""

import re
from collections import Counter

from pydantic import BaseModel, Field

DEFAULT_REQUIRED_KEYWORDS = ["五育并举", "立德树人"]
DEFAULT_SENSITIVE_WORDS = ["暴力", "色情", "赌博", "毒品", "邪教", "反动", "歧视"]

MIN_CONTENT_LENGTH = 50
REPETITION_RATIO = 0.2


class KeywordCheck(BaseModel):
    has_required: bool
    found: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class SensitiveCheck(BaseModel):
    has_sensitive: bool
    found: list[str] = Field(default_factory=list)


class StructureCheck(BaseModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)


class ValidationDetails(BaseModel):
    found_keywords: list[str] = Field(default_factory=list)
    missing_keywords: list[str] = Field(default_factory=list)
    sensitive_words_found: list[str] = Field(default_factory=list)
    structure_issues: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Outcome of validating one piece of generated content."""

    is_valid: bool
    has_required_keywords: bool
    has_sensitive_content: bool
    structure_valid: bool
    suggestions: list[str] = Field(default_factory=list)
    details: ValidationDetails = Field(default_factory=ValidationDetails)


class ContentValidator:
    """Keyword, sensitive-word and structure checks over plain text."""

    def __init__(
        self,
        required_keywords: list[str] | None = None,
        sensitive_words: list[str] | None = None,
    ):
        if required_keywords is None:
            required_keywords = DEFAULT_REQUIRED_KEYWORDS
        if sensitive_words is None:
            sensitive_words = DEFAULT_SENSITIVE_WORDS
        self.required_keywords = list(required_keywords)
        self.sensitive_words = list(sensitive_words)

    def validate(
        self,
        content: str,
        check_keywords: bool = True,
        check_sensitive_words: bool = True,
        check_structure: bool = True,
    ) -> ValidationResult:
        """
        Run every enabled check.

        Args:
            content: Generated text
            check_keywords: Require at least one policy keyword
            check_sensitive_words: Reject configured sensitive words
            check_structure: Length, paragraph and repetition checks

        Returns:
            ValidationResult; is_valid only when every enabled check passes
        """
        content = content or ""
        keywords = (
            self.check_required_keywords(content)
            if check_keywords
            else KeywordCheck(has_required=True)
        )
        sensitive = (
            self.check_sensitive_words(content)
            if check_sensitive_words
            else SensitiveCheck(has_sensitive=False)
        )
        structure = (
            self.check_content_structure(content)
            if check_structure
            else StructureCheck(is_valid=True)
        )

        return ValidationResult(
            is_valid=keywords.has_required and not sensitive.has_sensitive and structure.is_valid,
            has_required_keywords=keywords.has_required,
            has_sensitive_content=sensitive.has_sensitive,
            structure_valid=structure.is_valid,
            suggestions=self._build_suggestions(keywords, sensitive, structure),
            details=ValidationDetails(
                found_keywords=keywords.found,
                missing_keywords=keywords.missing,
                sensitive_words_found=sensitive.found,
                structure_issues=structure.issues,
            ),
        )

    def check_required_keywords(
        self, content: str, keywords: list[str] | None = None
    ) -> KeywordCheck:
        """Split ``keywords`` into found and missing; one hit is enough."""
        keywords = self.required_keywords if keywords is None else keywords
        found = [k for k in keywords if k in content]
        missing = [k for k in keywords if k not in content]
        # An empty keyword list has nothing to require
        return KeywordCheck(has_required=bool(found) or not keywords, found=found, missing=missing)

    def check_sensitive_words(self, content: str, words: list[str] | None = None) -> SensitiveCheck:
        words = self.sensitive_words if words is None else words
        found = [w for w in words if w in content]
        return SensitiveCheck(has_sensitive=bool(found), found=found)

    def check_content_structure(self, content: str) -> StructureCheck:
        issues = []

        if len(content.strip()) < MIN_CONTENT_LENGTH:
            issues.append(f"内容过短，建议至少{MIN_CONTENT_LENGTH}个字符")

        paragraphs = [p for p in re.split(r"\n\n+", content) if p.strip()]
        if not paragraphs:
            issues.append("内容缺少段落结构")

        words = content.split()
        counts = Counter(word for word in words if len(word) > 2)
        if len(words) > 10:
            for word, count in counts.items():
                if count / len(words) > REPETITION_RATIO:
                    issues.append(f"词语\"{word}\"重复过多")
                    break

        return StructureCheck(is_valid=not issues, issues=issues)

    def passes_keyword_validation(self, content: str) -> bool:
        return self.check_required_keywords(content).has_required

    @staticmethod
    def _build_suggestions(
        keywords: KeywordCheck, sensitive: SensitiveCheck, structure: StructureCheck
    ) -> list[str]:
        suggestions = []
        if not keywords.has_required:
            suggestions.append(f"建议在内容中融入以下教育方针关键词：{'、'.join(keywords.missing)}")
        if sensitive.has_sensitive:
            suggestions.append(f"请移除或替换以下敏感词汇：{'、'.join(sensitive.found)}")
        suggestions.extend(structure.issues)
        return suggestions
