"""
Keyword list used to diversify v2 paper generation.

Keywords come from the request in a fixed order: the chapter, the requested
topics, the most frequent content words of the description and finally the
subject. The list is deterministic for a given request.
"""

import re
from collections import Counter
from typing import List, Optional, Sequence

STOPWORDS = frozenset("""
a about above after again all also an and any are as at be because been before being
below between both but by can could did do does doing down during each few for from
further had has have having here how i if in into is it its just more most my no nor
not now of off on once only or other our out over own paper please questions question
same should so some such than that the their them then there these they this those
through to too under until up very was we were what when where which while who whom
why will with would you your include including cover covering focus test exam
""".split())

_TOKEN = re.compile(r"[a-z0-9][a-z0-9\-']*")


def tokenize(text: str) -> List[str]:
    return [t.strip("-'") for t in _TOKEN.findall(text.lower()) if t.strip("-'")]


def description_terms(description: str, limit: int = 5) -> List[str]:
    """Content words of a description, most frequent first, then by first appearance."""
    tokens = [t for t in tokenize(description) if t not in STOPWORDS and len(t) > 2]
    counts = Counter(tokens)
    first_seen = {}
    for i, t in enumerate(tokens):
        first_seen.setdefault(t, i)
    ranked = sorted(counts, key=lambda t: (-counts[t], first_seen[t]))
    return ranked[:limit]


def build_keywords(
    subject: str,
    chapter: Optional[str] = None,
    topics: Sequence[str] = (),
    description: Optional[str] = None,
) -> List[str]:
    candidates = []
    if chapter:
        candidates.append(chapter)
    candidates.extend(topics)
    if description:
        candidates.extend(description_terms(description))
    candidates.append(subject)

    keywords = []
    seen = set()
    for candidate in candidates:
        keyword = " ".join(candidate.split())
        if keyword and keyword.lower() not in seen:
            seen.add(keyword.lower())
            keywords.append(keyword)
    return keywords
