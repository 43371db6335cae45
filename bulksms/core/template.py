import re
from typing import Any, Mapping

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")
# Any recipient key may be substituted, including ones outside \w (e.g. "e-mail").
_SUBSTITUTION_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")


def has_placeholders(template: str) -> bool:
    """Return True when the template needs per-recipient rendering."""

    return PLACEHOLDER_PATTERN.search(template or "") is not None


def extract_variables(template: str) -> list[str]:
    """Return distinct placeholder names in order of first appearance."""

    variables: list[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(template or ""):
        name = match.group(1)
        if name not in variables:
            variables.append(name)
    return variables


def render(template: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{key}}`` tokens with values from ``context``.

    Keys are matched case-sensitively. A key present with an empty or None
    value renders as an empty string; placeholders with no matching key are
    left untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in context:
            return match.group(0)
        value = context[key]
        return "" if value is None else str(value)

    return _SUBSTITUTION_PATTERN.sub(_replace, template)
