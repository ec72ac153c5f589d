"""Naming-convention transforms used to hop between Rails artifacts.

These are suffix-rule heuristics with a small irregular-noun table, not a
full inflector: ``singularize(pluralize(word)) == word`` is only guaranteed
for regular nouns and the irregular words listed below.
"""

from __future__ import annotations

import re

_IRREGULAR: dict[str, str] = {
    "person": "people",
    "man": "men",
    "woman": "women",
    "child": "children",
    "mouse": "mice",
    "tooth": "teeth",
    "foot": "feet",
    "goose": "geese",
    "ox": "oxen",
}
_IRREGULAR_PLURALS: dict[str, str] = {v: k for k, v in _IRREGULAR.items()}

_UNCOUNTABLE = frozenset({"equipment", "information", "series", "species", "news", "data"})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def camel_to_snake(name: str) -> str:
    """``AdminUser`` -> ``admin_user``; namespaces become path segments."""
    parts = [_CAMEL_BOUNDARY.sub("_", part).lower() for part in name.split("::")]
    return "/".join(parts)


def snake_to_camel(name: str) -> str:
    """``admin_users`` -> ``AdminUsers``; path segments become namespaces."""
    return "::".join(
        "".join(word[:1].upper() + word[1:] for word in segment.split("_") if word)
        for segment in name.split("/")
    )


def _match_case(source: str, word: str) -> str:
    return word[:1].upper() + word[1:] if source[:1].isupper() else word


def _split_last_word(word: str) -> tuple[str, str]:
    """Split ``AdminPerson``/``admin_person`` into (prefix, last word)."""
    m = re.search(r"([A-Z]?[a-z0-9]+)$", word)
    if not m:
        return "", word
    return word[: m.start()], m.group(1)


def pluralize(word: str) -> str:
    if not word:
        return word
    prefix, last = _split_last_word(word)
    lower = last.lower()
    if lower in _UNCOUNTABLE or lower in _IRREGULAR_PLURALS:
        return word
    if lower in _IRREGULAR:
        return prefix + _match_case(last, _IRREGULAR[lower])
    if re.search(r"[^aeiou]y$", lower):
        return word[:-1] + "ies"
    if re.search(r"(s|x|z|ch|sh)$", lower):
        return word + "es"
    return word + "s"


def singularize(word: str) -> str:
    if not word:
        return word
    prefix, last = _split_last_word(word)
    lower = last.lower()
    if lower in _UNCOUNTABLE or lower in _IRREGULAR:
        return word
    if lower in _IRREGULAR_PLURALS:
        return prefix + _match_case(last, _IRREGULAR_PLURALS[lower])
    if lower.endswith("ies") and len(lower) > 3:
        return word[:-3] + "y"
    if re.search(r"(ss|x|z|ch|sh)es$", lower):
        return word[:-2]
    if lower.endswith("ss"):
        return word
    if lower.endswith("s"):
        return word[:-1]
    return word


def table_name_for(class_name: str) -> str:
    """``Admin::LineItem`` -> ``line_items`` (namespace dropped)."""
    simple = class_name.split("::")[-1]
    return pluralize(camel_to_snake(simple))


def model_name_for(table_name: str) -> str:
    """``line_items`` -> ``LineItem``."""
    return snake_to_camel(singularize(table_name))
