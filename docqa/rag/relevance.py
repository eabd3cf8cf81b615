"""Score-based relevance filtering.

Similarity metrics (COSINE, IP) keep scores at or above the threshold;
distance metrics (L2) keep scores at or below it. Both comparisons include
the boundary value.
"""

from docqa.models import Direction, Metric, RelevantContext, ScoredMatch


def direction_for(metric: Metric) -> Direction:
    """Return the comparison direction implied by a metric's polarity."""
    return Direction.AT_LEAST if Metric(metric).is_similarity else Direction.AT_MOST


def passes(score: float, threshold: float, direction: Direction) -> bool:
    if direction is Direction.AT_LEAST:
        return score >= threshold
    return score <= threshold


class RelevanceFilter:
    """Keeps the matches whose score satisfies the configured threshold.

    Args:
        threshold: Score cutoff.
        direction: Comparison to apply.
        sort_by_score: Reorder survivors best-first instead of keeping the
            index order.
    """

    def __init__(
        self,
        threshold: float,
        direction: Direction,
        sort_by_score: bool = False,
    ):
        self.threshold = float(threshold)
        self.direction = Direction(direction)
        self.sort_by_score = sort_by_score

    @classmethod
    def for_metric(
        cls, metric: Metric, threshold: float, sort_by_score: bool = False
    ) -> "RelevanceFilter":
        return cls(threshold, direction_for(metric), sort_by_score=sort_by_score)

    def filter(self, matches: list[ScoredMatch]) -> RelevantContext:
        kept = [m for m in matches if passes(m.score, self.threshold, self.direction)]
        if self.sort_by_score:
            kept.sort(
                key=lambda m: m.score,
                reverse=self.direction is Direction.AT_LEAST,
            )
        return RelevantContext(
            matches=kept, threshold=self.threshold, direction=self.direction
        )
