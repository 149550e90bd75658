"""
MODULE: Candidate Sanitizer
DESCRIPTION: Cleans free-text names returned by the model before they become entities or keywords.
"""

import re
from typing import Iterable, List, Optional

from intelgraph.util.config import DEFAULT_CANDIDATE_DENYLIST

MIN_LENGTH = 2
MAX_LENGTH = 80

_NUMERIC = re.compile(r"^[\d\s.,%+\-/$€£¥]+$")
_URL = re.compile(r"^(https?://|ftp://|www\.)|^[\w-]+(\.[\w-]+)+/\S*$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def is_valid_candidate(
    term: str,
    denylist: Iterable[str] = DEFAULT_CANDIDATE_DENYLIST,
    min_length: int = MIN_LENGTH,
    max_length: int = MAX_LENGTH,
) -> bool:
    if len(term) < min_length or len(term) > max_length:
        return False
    if _NUMERIC.match(term):
        return False
    if _URL.search(term):
        return False
    return term.lower() not in denylist


def sanitize_candidates(
    terms: Optional[Iterable],
    denylist: Iterable[str] = DEFAULT_CANDIDATE_DENYLIST,
    min_length: int = MIN_LENGTH,
    max_length: int = MAX_LENGTH,
) -> List[str]:
    """
    Filter a list of candidate names.

    Drops empty, too short, too long, purely numeric, URL-like and denylisted
    terms, then de-duplicates case-insensitively keeping the first spelling.
    Non-string items are ignored.
    """
    if not terms:
        return []
    denylist = denylist if isinstance(denylist, (set, frozenset)) else frozenset(denylist)

    seen = set()
    result = []
    for raw in terms:
        if not isinstance(raw, str):
            continue
        term = _WHITESPACE.sub(" ", raw).strip()
        if not term or not is_valid_candidate(term, denylist, min_length, max_length):
            continue
        key = term.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(term)
    return result
