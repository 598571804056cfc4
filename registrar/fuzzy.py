"""
Fuzzy text matching for listing rows.

Listing text drifts between pages (extra whitespace, duplicated words, trailing
time suffixes), so rows are compared after normalization, first by exact
substring and then by a difflib ratio.
"""

from __future__ import annotations

import difflib
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

MatchMethod = Literal["exact", "fuzzy"]
MatchOutcome = Literal["found", "not_found", "ambiguous"]

_WS_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w:\-/&+.' ]+")


def normalize(text: str) -> str:
    """Lowercase, collapse whitespace and drop immediately repeated words."""
    t = _PUNCT_RE.sub(" ", (text or "").lower())
    words = _WS_RE.sub(" ", t).strip().split(" ")
    out: list[str] = []
    for w in words:
        if w and (not out or out[-1] != w):
            out.append(w)
    return " ".join(out)


def similarity(a: str, b: str) -> float:
    """Edit-distance based score in [0, 1]; identical normalized strings score 1.0."""
    na, nb = normalize(a), normalize(b)
    if not na and not nb:
        return 1.0
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    return difflib.SequenceMatcher(None, na, nb).ratio()


def best_window_score(target: str, text: str) -> float:
    """
    Best similarity between target and any same-sized word window of text.

    Row text usually carries more than the slot description (dates, prices,
    button labels), so the whole row is compared as well as every window of
    roughly the target's word count.
    """
    nt, nx = normalize(target), normalize(text)
    if not nt or not nx:
        return 0.0
    best = difflib.SequenceMatcher(None, nt, nx).ratio()
    t_words = nt.split(" ")
    x_words = nx.split(" ")
    n = len(t_words)
    for size in {max(1, n - 1), n, n + 1}:
        if size > len(x_words):
            continue
        for i in range(len(x_words) - size + 1):
            window = " ".join(x_words[i : i + size])
            score = difflib.SequenceMatcher(None, nt, window).ratio()
            if score > best:
                best = score
                if best >= 1.0:
                    return 1.0
    return best


@dataclass(frozen=True)
class MatchResult:
    outcome: MatchOutcome
    index: int | None = None
    score: float = 0.0
    method: MatchMethod | None = None
    candidates: tuple[int, ...] = ()


def best_match(target: str, rows: Sequence[str], threshold: float) -> MatchResult:
    """
    Pick the row matching target.

    Exact substring (case-insensitive, normalized) wins; the first such row is
    taken. Otherwise the highest fuzzy score is accepted when at or above
    threshold. Distinct rows tied at the top score are ambiguous.
    """
    nt = normalize(target)
    if not nt or not rows:
        return MatchResult(outcome="not_found")

    exact = tuple(i for i, row in enumerate(rows) if nt in normalize(row))
    if exact:
        return MatchResult(outcome="found", index=exact[0], score=1.0, method="exact", candidates=exact)

    scored = [(best_window_score(target, row), i) for i, row in enumerate(rows)]
    top = max(s for s, _ in scored)
    if top < threshold:
        return MatchResult(outcome="not_found", score=top)

    leaders = tuple(i for s, i in scored if s == top)
    distinct = {normalize(rows[i]) for i in leaders}
    if len(distinct) > 1:
        return MatchResult(outcome="ambiguous", score=top, method="fuzzy", candidates=leaders)
    return MatchResult(outcome="found", index=leaders[0], score=top, method="fuzzy", candidates=leaders)
