"""Title normalization for matching Plex show titles against AniList titles."""

from __future__ import annotations

import re
import unicodedata

# Trailing markers that differ between Plex libraries (AniDB/TVDB naming) and
# AniList. Applied to already casefolded, punctuation-free text.
_DECORATIVE_SUFFIXES = (
    re.compile(r" (19[5-9]\d|20\d\d)$"),  # XXX (2023)
    re.compile(r" \d+(st|nd|rd|th) season$"),  # XXX 2nd Season
    re.compile(r" season \d+$"),  # XXX Season 2
    re.compile(r" cour \d+$"),  # XXX Cour 2
    re.compile(r" part \d+$"),  # XXX Part 2
    re.compile(r" s\d+$"),  # XXX S2
    re.compile(r" \d$"),  # XXX 2
)

_WHITESPACE = re.compile(r"\s+")


def _fold_punctuation(text: str) -> str:
    """Replace punctuation and symbol characters with spaces."""
    return "".join(
        " " if unicodedata.category(ch)[0] in ("P", "S") else ch for ch in text
    )


def _strip_decorations(text: str) -> str:
    """Strip trailing decorative markers until none are left.

    Never returns an empty string for non-empty input, so a title consisting
    only of a marker ("Season 2") stays comparable.
    """
    while True:
        stripped = text
        for pattern in _DECORATIVE_SUFFIXES:
            stripped = pattern.sub("", stripped)
        stripped = stripped.strip()
        if stripped == text or not stripped:
            return text
        text = stripped


def canonical_title(title: str) -> str:
    """Reduce a raw title to a comparable form that keeps every word.

    Unicode NFC, locale-independent case folding, punctuation and symbols
    folded to spaces, whitespace collapsed. Season and year markers survive,
    so "Steins;Gate 0" and "Steins;Gate" stay distinct.
    """
    text = unicodedata.normalize("NFC", title)
    # casefold() can emit decomposed sequences (e.g. for "İ"), recompose.
    text = unicodedata.normalize("NFC", text.casefold())
    text = _fold_punctuation(text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_title(title: str) -> str:
    """Canonical form with trailing year / season / cour / part markers stripped.

    Used as the lenient fallback when the canonical forms do not match. The
    output is a single-space separated token sequence. The transform is
    idempotent and works on code points only, so any ``str`` is safe input.
    """
    return _strip_decorations(canonical_title(title))


def title_tokens(title: str) -> list[str]:
    """Return the token sequence of the normalized *title*."""
    normalized = normalize_title(title)
    return normalized.split(" ") if normalized else []
