"""Placeholder substitution for overlay text.

``{{name}}`` placeholders are resolved against the request content map in
three steps: exact key, alias group, then a case-insensitive key scan.
Anything still missing is rendered as ``[name]`` so the gap is visible in the
output instead of silently disappearing.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

# Lookup key is the lowercased placeholder name; candidates are tried in order.
VARIABLE_ALIASES: dict[str, tuple[str, ...]] = {
    "body": ("content", "body", "script"),
    "content": ("content", "body", "script"),
    "script": ("script", "content", "body"),
    "cta": ("callToAction", "cta", "caption"),
    "calltoaction": ("callToAction", "cta"),
    "caption": ("caption", "callToAction", "cta"),
    "hook": ("hook", "title", "question"),
    "title": ("title", "hook"),
    "question": ("question", "hook"),
    "answer": ("answer", "content", "body"),
    "items": ("items", "item1", "item2", "item3"),
}


@dataclass
class ResolvedText:
    """Result of resolving one overlay string."""

    text: str
    unresolved: list[str] = field(default_factory=list)


def _lookup(name: str, content: Mapping[str, str]) -> str | None:
    value = content.get(name)
    if value:
        return value

    for alias in VARIABLE_ALIASES.get(name.lower(), ()):
        value = content.get(alias)
        if value:
            return value

    lowered = name.lower()
    for key, value in content.items():
        if key.lower() == lowered and value:
            return value
    return None


def resolve_with_report(text: str, content: Mapping[str, str]) -> ResolvedText:
    """Resolve placeholders and report which names had no value."""
    if not text or "{{" not in text:
        return ResolvedText(text=text or "")

    names = list(dict.fromkeys(PLACEHOLDER_PATTERN.findall(text)))
    values: dict[str, str] = {}
    unresolved: list[str] = []
    for name in names:
        value = _lookup(name, content)
        if value is None:
            unresolved.append(name)
            values[name] = f"[{name}]"
        else:
            values[name] = value

    resolved = PLACEHOLDER_PATTERN.sub(lambda m: values[m.group(1)], text)
    return ResolvedText(text=resolved, unresolved=unresolved)


def resolve(text: str, content: Mapping[str, str]) -> str:
    """Replace every ``{{name}}`` in ``text`` with its content value."""
    return resolve_with_report(text, content).text


def collect_unresolved(texts: list[str], content: Mapping[str, str]) -> list[str]:
    """Unique unresolved names across several overlay strings, in first-seen order."""
    missing: dict[str, None] = {}
    for text in texts:
        for name in resolve_with_report(text, content).unresolved:
            missing.setdefault(name, None)
    if missing:
        logger.warning(f"[VARIABLES] Unresolved variables: {', '.join(missing)}")
    return list(missing)
