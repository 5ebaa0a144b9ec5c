"""Naming variants for a feature's base name.

Every casing and pluralisation variant the templates need is a pure function
of the base name, so :func:`derive` is cached and its result can be shared
freely between components and threads.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache


class InvalidNameError(ValueError):
    """Raised when a base name is empty or contains no alphabetic character."""

    def __init__(self, name: str, reason: str = "") -> None:
        self.name = name
        message = f"Invalid feature name {name!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

_IRREGULAR_PLURALS: dict[str, str] = {
    "person": "people",
    "child": "children",
    "man": "men",
    "woman": "women",
    "mouse": "mice",
    "goose": "geese",
    "tooth": "teeth",
    "foot": "feet",
    "criterion": "criteria",
    "datum": "data",
    "analysis": "analyses",
    "leaf": "leaves",
    "knife": "knives",
    "life": "lives",
    "menu": "menus",
    "guru": "gurus",
}

_IRREGULAR_SINGULARS: dict[str, str] = {v: k for k, v in _IRREGULAR_PLURALS.items()}

_UNCOUNTABLE: frozenset[str] = frozenset(
    {"equipment", "information", "series", "species", "news", "feedback", "metadata"}
)

_VOWELS = frozenset("aeiou")

# Acronym runs, capitalised words, lowercase runs and digit runs.  Anything
# else (spaces, hyphens, underscores, punctuation) separates words.
_WORD_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")


# ---------------------------------------------------------------------------
# Variant set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NamingVariantSet:
    """Singular/plural forms crossed with the supported casing conventions."""

    words: tuple[str, ...]
    plural_words: tuple[str, ...]
    pascal_singular: str
    pascal_plural: str
    camel_singular: str
    camel_plural: str
    kebab_singular: str
    kebab_plural: str
    snake_singular: str
    snake_plural: str
    title_singular: str
    title_plural: str

    def as_dict(self) -> dict[str, str]:
        """Return the casing variants as a flat ``{name: value}`` mapping."""
        return {
            "pascal_singular": self.pascal_singular,
            "pascal_plural": self.pascal_plural,
            "camel_singular": self.camel_singular,
            "camel_plural": self.camel_plural,
            "kebab_singular": self.kebab_singular,
            "kebab_plural": self.kebab_plural,
            "snake_singular": self.snake_singular,
            "snake_plural": self.snake_plural,
            "title_singular": self.title_singular,
            "title_plural": self.title_plural,
        }

    def mentions(self, text: str) -> bool:
        """True when *text* contains the singular or plural PascalCase form."""
        return self.pascal_singular in text or self.pascal_plural in text


# ---------------------------------------------------------------------------
# Word splitting and casing
# ---------------------------------------------------------------------------


def split_words(name: str) -> tuple[str, ...]:
    """Split *name* on separators and case changes into lowercase words.

    ``"InvoiceLine"``, ``"invoice-line"`` and ``"invoice_line"`` all yield
    ``("invoice", "line")``; acronym runs stay together (``"HTTPRequest"`` ->
    ``("http", "request")``).  Adjacent single letters are joined into one
    word (likewise adjacent digit runs), because ``"a b"`` and ``"AB"`` must
    normalise to the same result.
    """
    words: list[str] = []
    for raw in _WORD_RE.findall(name):
        word = raw.lower()
        if words and word.isdigit() and words[-1].isdigit():
            words[-1] += word
            continue
        if (
            words
            and len(word) == 1
            and word.isalpha()
            and words[-1].isalpha()
            and len(words[-1]) == 1
        ):
            words[-1] += word
            continue
        words.append(word)
    return tuple(words)


def to_pascal(words: tuple[str, ...] | list[str]) -> str:
    return "".join(word[:1].upper() + word[1:] for word in words)


def to_camel(words: tuple[str, ...] | list[str]) -> str:
    pascal = to_pascal(words)
    return pascal[:1].lower() + pascal[1:]


def to_kebab(words: tuple[str, ...] | list[str]) -> str:
    return "-".join(words)


def to_snake(words: tuple[str, ...] | list[str]) -> str:
    return "_".join(words)


def to_title(words: tuple[str, ...] | list[str]) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in words)


# ---------------------------------------------------------------------------
# Pluralisation
# ---------------------------------------------------------------------------


def pluralize(word: str) -> str:
    """Pluralise a single lowercase word.

    Irregular and uncountable tables win; then ``-y`` after a consonant
    becomes ``-ies``, sibilant endings take ``-es``, and everything else
    gets a plain ``s``.
    """
    if word in _UNCOUNTABLE:
        return word
    if word in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[word]
    if word.isdigit():
        return word + "s"
    if word.endswith("y") and len(word) > 1 and word[-2] not in _VOWELS:
        return word[:-1] + "ies"
    if word.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def singularize(word: str) -> str:
    """Best-effort inverse of :func:`pluralize` for a single lowercase word."""
    if word in _UNCOUNTABLE:
        return word
    if word in _IRREGULAR_SINGULARS:
        return _IRREGULAR_SINGULARS[word]
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith(("sses", "xes", "zes", "ches", "shes")):
        return word[:-2]
    # Singular Latin and Greek endings: status, bus, analysis.
    if word.endswith(("us", "is", "ss")):
        return word
    if word.endswith("s") and len(word) > 1:
        return word[:-1]
    return word


def singularize_name(name: str) -> str:
    """Singularise the last word of a (possibly PascalCase) name."""
    words = list(split_words(name))
    if not words:
        return name
    words[-1] = singularize(words[-1])
    return to_pascal(words)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def validate_name(name: str) -> tuple[str, ...]:
    """Return the words of *name* or raise :class:`InvalidNameError`."""
    if not name or not name.strip():
        raise InvalidNameError(name, "name is empty")
    if any(ch.isalpha() and not ch.isascii() for ch in name):
        raise InvalidNameError(name, "only ASCII letters are supported")
    words = split_words(name)
    if not any(any(ch.isalpha() for ch in word) for word in words):
        raise InvalidNameError(name, "name must contain at least one letter")
    return words


@lru_cache(maxsize=512)
def derive(base_name: str) -> NamingVariantSet:
    """Derive every naming variant of *base_name*.

    The base name is treated as singular; only its last word is pluralised.
    Re-deriving from any casing variant of the result yields an equal set.

    Raises:
        InvalidNameError: If the name is empty or has no alphabetic character.
    """
    words = validate_name(base_name)
    plural_words = words[:-1] + (pluralize(words[-1]),)
    return NamingVariantSet(
        words=words,
        plural_words=plural_words,
        pascal_singular=to_pascal(words),
        pascal_plural=to_pascal(plural_words),
        camel_singular=to_camel(words),
        camel_plural=to_camel(plural_words),
        kebab_singular=to_kebab(words),
        kebab_plural=to_kebab(plural_words),
        snake_singular=to_snake(words),
        snake_plural=to_snake(plural_words),
        title_singular=to_title(words),
        title_plural=to_title(plural_words),
    )
