from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Mapping
from typing import Protocol, TypeVar

_WS = re.compile(r"\s+")
_ACRONYM = re.compile(r"^[A-Z]+$")
_INTERNAL_CAPITAL = re.compile(r"[a-z][A-Z]|'[A-Z]")


def normalize_text(s: str) -> str:
    return _WS.sub(" ", s.strip())


def to_title_case(name: str) -> str:
    """Canonical concept-name form.

    All-caps words of two or more letters (ODE, PDE, FFT) and words with an
    internal capital (pH, mRNA, d'Alembert) are kept verbatim.
    """
    words = []
    for word in normalize_text(name).split(" "):
        if len(word) >= 2 and _ACRONYM.match(word):
            words.append(word)
        elif _INTERNAL_CAPITAL.search(word):
            words.append(word)
        else:
            words.append(word[:1].upper() + word[1:].lower())
    return " ".join(words)


def dice_coefficient(a: str, b: str) -> float:
    """Bigram Dice coefficient; bigrams are counted as a multiset."""
    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0
    bigrams = Counter(a[i : i + 2] for i in range(len(a) - 1))
    overlap = 0
    for i in range(len(b) - 1):
        bg = b[i : i + 2]
        if bigrams[bg] > 0:
            overlap += 1
            bigrams[bg] -= 1
    return (2.0 * overlap) / ((len(a) - 1) + (len(b) - 1))


def fuzzy_match_title(
    needle: str, haystack: Mapping[str, str], threshold: float = 0.6
) -> str | None:
    """Resolve a title to an id.

    `haystack` maps lowercased, whitespace-collapsed titles to ids. An exact
    key wins; otherwise the best Dice score at or above `threshold`.
    """
    key = normalize_text(needle).lower()
    exact = haystack.get(key)
    if exact is not None:
        return exact
    best_id: str | None = None
    best_score = threshold
    for title, _id in haystack.items():
        score = dice_coefficient(key, title)
        if score >= best_score and (best_id is None or score > best_score):
            best_score = score
            best_id = _id
    return best_id


def title_index(items: Iterable[tuple[str | None, str]]) -> dict[str, str]:
    """Build a ``fuzzy_match_title`` haystack; the first id wins per title."""
    out: dict[str, str] = {}
    for title, _id in items:
        if title:
            out.setdefault(normalize_text(title).lower(), _id)
    return out


class _Labelled(Protocol):
    title: str | None
    content: str


T = TypeVar("T", bound=_Labelled)


def find_chunk_by_label(chunks: list[T], label: str) -> T | None:
    """Exact title, then title prefix, then title-or-content substring."""
    lower = normalize_text(label).lower()
    if not lower:
        return None
    titled = [(c, (c.title or "").lower()) for c in chunks]
    for c, t in titled:
        if t == lower:
            return c
    for c, t in titled:
        if t and t.startswith(lower):
            return c
    for c, t in titled:
        if lower in t or lower in c.content.lower():
            return c
    return None


def query_terms(query: str) -> list[str]:
    return [t for t in query.lower().split() if len(t) > 1]


def contains_word(haystack: str, needle: str) -> bool:
    """Case-insensitive whole-word containment."""
    if not needle:
        return False
    pattern = r"(?<!\w)" + re.escape(needle.lower()) + r"(?!\w)"
    return re.search(pattern, haystack.lower()) is not None
