from __future__ import annotations

import re
from typing import Any

from .results import QualityResult

PASSING_SCORE = 60


class HeuristicScorer:
    """Structure and length checks; anything below PASSING_SCORE is flagged."""

    def __init__(self, passing_score: int = PASSING_SCORE, target_words: int = 600) -> None:
        self.passing_score = passing_score
        self.target_words = target_words

    def passes_quality(self, content: dict[str, Any]) -> QualityResult:
        title = str(content.get("title") or "").strip()
        excerpt = str(content.get("excerpt") or "").strip()
        body = str(content.get("body") or "")

        words = len(re.findall(r"\w+", body))
        headings = len(re.findall(r"^#{2,4}\s+\S", body, flags=re.MULTILINE))
        paragraphs = len([block for block in re.split(r"\n\s*\n", body) if block.strip()])

        breakdown = {
            "title": 20 if 10 <= len(title) <= 90 else (10 if title else 0),
            "excerpt": 15 if 50 <= len(excerpt) <= 300 else (5 if excerpt else 0),
            "length": min(35, int(35 * words / self.target_words)) if self.target_words else 35,
            "headings": min(15, headings * 5),
            "paragraphs": min(15, paragraphs * 3),
        }
        score = max(0, min(100, sum(breakdown.values())))
        return QualityResult(
            passes=score >= self.passing_score,
            score=score,
            breakdown={**breakdown, "words": words},
        )
