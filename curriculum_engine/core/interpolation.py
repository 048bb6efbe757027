"""Prompt variable interpolation.

Pure functions over ``{{variable}}`` placeholders. Whitespace inside the
braces is tolerated: ``{{ school_name }}`` and ``{{school_name}}`` match
the same key.
"""

import re

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")


def has_unresolved_variables(text: str) -> bool:
    """True when any ``{{...}}`` placeholder remains."""
    return VARIABLE_PATTERN.search(text or "") is not None


def extract_variables(template: str) -> list[str]:
    """Unique placeholder names in first-seen order."""
    seen: dict[str, None] = {}
    for match in VARIABLE_PATTERN.finditer(template or ""):
        seen.setdefault(match.group(1).strip(), None)
    return list(seen)


def interpolate_prompt_variables(template: str, variables: dict[str, str]) -> str:
    """
    Replace every placeholder whose key is in ``variables``.

    Unknown placeholders are left in place. Values are inserted literally;
    backslashes and group references in them are not interpreted.
    """
    result = template
    for key, value in variables.items():
        pattern = re.compile(r"\{\{\s*" + re.escape(key) + r"\s*\}\}")
        result = pattern.sub(lambda _match, v=value: v, result)
    return result
