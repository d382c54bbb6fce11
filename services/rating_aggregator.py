from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional


RATING_TYPES = ["Technical", "Communication", "Cultural Fit", "Overall"]
MIN_SCORE = 1.0
MAX_SCORE = 5.0


@dataclass
class RatingTypeSummary:
    ratingType: str
    averageScore: float
    count: int
    minScore: float
    maxScore: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "ratingType": self.ratingType,
            "averageScore": self.averageScore,
            "count": self.count,
            "minScore": self.minScore,
            "maxScore": self.maxScore,
        }


@dataclass
class RatingSummary:
    byType: list[RatingTypeSummary] = field(default_factory=list)
    overallAverage: Optional[float] = None
    totalCount: int = 0

    def to_dict(self) -> dict[str, Any]:
        overall = None
        if self.totalCount:
            overall = {"averageScore": self.overallAverage, "count": self.totalCount}
        return {"byType": [r.to_dict() for r in self.byType], "overall": overall}


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def aggregate_ratings(ratings: Iterable[Any]) -> RatingSummary:
    """
    Per-type and overall averages over the full, unfiltered rating set of one candidate.

    Accepts model rows or dicts with `ratingType` and `score`. Averages are not
    rounded here; presentation decides precision.
    """

    buckets: dict[str, list[float]] = {}
    every: list[float] = []
    for r in ratings or []:
        rating_type = str(_field(r, "ratingType") or "").strip()
        score = _field(r, "score")
        if not rating_type or score is None:
            continue
        value = float(score)
        buckets.setdefault(rating_type, []).append(value)
        every.append(value)

    if not every:
        return RatingSummary()

    order = {t: i for i, t in enumerate(RATING_TYPES)}
    rows = []
    for rating_type in sorted(buckets, key=lambda t: (order.get(t, len(order)), t)):
        scores = buckets[rating_type]
        rows.append(
            RatingTypeSummary(
                ratingType=rating_type,
                averageScore=sum(scores) / len(scores),
                count=len(scores),
                minScore=min(scores),
                maxScore=max(scores),
            )
        )

    return RatingSummary(byType=rows, overallAverage=sum(every) / len(every), totalCount=len(every))


def candidate_score(ratings: Iterable[Any]) -> Optional[float]:
    """
    Derived candidate score on the 0-5 rating scale: the average of `Overall`
    ratings, falling back to the average across all ratings. None when unrated.
    """

    summary = aggregate_ratings(ratings)
    for row in summary.byType:
        if row.ratingType == "Overall":
            return row.averageScore
    return summary.overallAverage


def to_ten_point_scale(score: Optional[float]) -> Optional[float]:
    if score is None:
        return None
    return float(score) * 2.0
