"""Scoring engine: promise-vs-reality fulfillment with deterministic aggregation.

Architecture
------------
Promises (value propositions) and customer reality (per-review feedback
annotations) are compared on three dimensions:

- **Jobs**: share of customer job mentions that match a promised job.
- **Pains**: how rarely a pain the company promises to relieve still shows up
  in customer pain mentions.  A promise that is mostly relieved (> 50%)
  scores a flat 100.
- **Gains**: share of gain mentions that match a promised gain *and* come
  from a positive review, weighted by gain type (required > expected >
  desired > unexpected).

Matching is lexical: :func:`text_similarity` above ``SIMILARITY_THRESHOLD``
means two texts describe the same claim.  Each promise is weighted by how
often its dimension is mentioned at all; a dimension that has promises but
no customer mentions scores 0.

The dimension scores (0-100) are combined into:

- ``overall_score``: ``0.4 * jobs + 0.3 * pains + 0.3 * gains``
- ``statistical_significance``: coarse confidence label from sample size

Gaps come from two passes: one gap per dimension scoring below
``SCORE_GAP_THRESHOLD`` and one gap per promise whose fulfillment or average
sentiment is poor.

Everything in this module is pure: it builds unsaved ORM objects and leaves
persistence to :mod:`cvpa.services`.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Iterable

from cvpa.models import AuditScore, GapAnalysis
from cvpa.schemas import FeedbackAnnotation, Promise

# ---------------------------------------------------------------------------
# Thresholds and weights
# ---------------------------------------------------------------------------

SIMILARITY_THRESHOLD = 0.5
MIN_TOKEN_LENGTH = 4  # tokens of 3 characters or fewer are ignored
NEUTRAL_SCORE = 50.0
NEUTRAL_SENTIMENT = 0.5
POSITIVE_SENTIMENT = 0.5  # strictly above counts as positive

DIMENSION_WEIGHTS = {"jobs": 0.4, "pains": 0.3, "gains": 0.3}
GAIN_TYPE_WEIGHTS = {"required": 1.0, "expected": 0.8, "desired": 0.6}
DEFAULT_GAIN_TYPE_WEIGHT = 0.4
PAIN_RELIEF_THRESHOLD = 0.5

# Pass A: dimension score bands
SCORE_GAP_THRESHOLD = 60
SCORE_SEVERITY_BANDS = ((40, "critical"), (50, "high"))  # score < bound

# Pass B: per-promise triggers and mention-frequency bands
FULFILLMENT_GAP_THRESHOLD = 0.3
SENTIMENT_GAP_THRESHOLD = 0.4
FREQUENCY_SEVERITY_BANDS = ((30, "critical"), (15, "high"), (5, "medium"))  # percentage >= bound

# Sample size -> confidence level
SIGNIFICANCE_BANDS = ((385, 0.95), (200, 0.90))
DEFAULT_SIGNIFICANCE = 0.85

# Breakdown view: mention percentage -> fulfillment status
FULFILLMENT_STATUS_BANDS = ((30, "fulfilled"), (10, "partial"))  # percentage > bound

CATEGORIES = ("job", "pain", "gain")
CATEGORY_TO_GAP_TYPE = {"job": "jobs", "pain": "pains", "gain": "gains"}

_TOKEN_SPLIT_RE = re.compile(r"\W+")


def _round(value: float, ndigits: int) -> float:
    """Round half up (away from banker's rounding) to *ndigits* decimals."""
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


# ---------------------------------------------------------------------------
# Text similarity
# ---------------------------------------------------------------------------


def _tokens(text: str) -> set[str]:
    return {w for w in _TOKEN_SPLIT_RE.split((text or "").lower()) if len(w) >= MIN_TOKEN_LENGTH}


def text_similarity(a: str, b: str) -> float:
    """Share of significant words the two texts have in common.

    The denominator is the larger of the two word sets, so a short text fully
    contained in a long one still scores low.
    """
    words_a, words_b = _tokens(a), _tokens(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def is_match(promise_text: str, mention_text: str) -> bool:
    return text_similarity(promise_text, mention_text) > SIMILARITY_THRESHOLD


def _sentiment(f: FeedbackAnnotation) -> float:
    return NEUTRAL_SENTIMENT if f.sentiment is None else f.sentiment


# ---------------------------------------------------------------------------
# Per-promise statistics
# ---------------------------------------------------------------------------


@dataclass
class PromiseStats:
    mention_count: int
    mention_percentage: float
    average_sentiment: float
    fulfillment_rate: float
    matching_feedback: list[FeedbackAnnotation] = field(default_factory=list)


def compute_promise_stats(
    promise: Promise, feedback: list[FeedbackAnnotation], category: str,
) -> PromiseStats:
    """Aggregate how the feedback set talks about one promise.

    A feedback item counts once if any of its *category* mentions matches the
    promise text.
    """
    matching = [
        f for f in feedback
        if any(is_match(promise.extracted_text, item.text) for item in f.mentions(category))
    ]
    mention_count = len(matching)
    total = len(feedback)
    mention_percentage = mention_count / total * 100 if total else 0.0
    average_sentiment = (
        sum(_sentiment(f) for f in matching) / mention_count if matching else NEUTRAL_SENTIMENT
    )

    if category == "job":
        fulfillment_rate = mention_percentage / 100
    elif category == "pain":
        fulfillment_rate = 1 - mention_percentage / 100
    elif category == "gain":
        positive = sum(1 for f in matching if _sentiment(f) > POSITIVE_SENTIMENT)
        fulfillment_rate = positive / mention_count if mention_count else 0.0
    else:
        fulfillment_rate = 0.0

    return PromiseStats(
        mention_count=mention_count,
        mention_percentage=_round(mention_percentage, 1),
        average_sentiment=_round(average_sentiment, 2),
        fulfillment_rate=_round(fulfillment_rate, 2),
        matching_feedback=matching,
    )


# ---------------------------------------------------------------------------
# Dimension scoring
# ---------------------------------------------------------------------------


def _count_mentions(
    promise: Promise, feedback: list[FeedbackAnnotation], category: str,
    require_positive: bool = False,
) -> tuple[int, int]:
    """Return ``(matched, mentions)`` over every mention item in the feedback set."""
    matched = mentions = 0
    for f in feedback:
        for item in f.mentions(category):
            mentions += 1
            if not is_match(promise.extracted_text, item.text):
                continue
            if require_positive and not _sentiment(f) > POSITIVE_SENTIMENT:
                continue
            matched += 1
    return matched, mentions


def gain_type_weight(gain_type: str | None) -> float:
    return GAIN_TYPE_WEIGHTS.get(gain_type or "", DEFAULT_GAIN_TYPE_WEIGHT)


def _weighted(parts: Iterable[tuple[float, float]]) -> float:
    total_score = total_weight = 0.0
    for contribution, weight in parts:
        total_score += contribution
        total_weight += weight
    return total_score / total_weight if total_weight > 0 else 0.0


def score_jobs(promises: list[Promise], feedback: list[FeedbackAnnotation]) -> float:
    def parts():
        for promise in promises:
            matched, mentions = _count_mentions(promise, feedback, "job")
            fulfillment = matched / mentions if mentions else 0.0
            importance = mentions / len(feedback) if feedback else 0.0
            yield fulfillment * importance * 100, importance
    return _weighted(parts())


def score_pains(promises: list[Promise], feedback: list[FeedbackAnnotation]) -> float:
    def parts():
        for promise in promises:
            still_mentioned, mentions = _count_mentions(promise, feedback, "pain")
            reduction = 1 - still_mentioned / mentions if mentions else 1.0
            importance = mentions / len(feedback) if feedback else 0.0
            score = 100.0 if reduction > PAIN_RELIEF_THRESHOLD else reduction * 100
            yield score * importance, importance
    return _weighted(parts())


def score_gains(promises: list[Promise], feedback: list[FeedbackAnnotation]) -> float:
    def parts():
        for promise in promises:
            achieved, mentions = _count_mentions(promise, feedback, "gain", require_positive=True)
            rate = achieved / mentions if mentions else 0.0
            importance = mentions / len(feedback) if feedback else 0.0
            weight = gain_type_weight(promise.gain_type)
            yield rate * importance * weight * 100, importance * weight
    return _weighted(parts())


_DIMENSION_SCORERS = {"job": score_jobs, "pain": score_pains, "gain": score_gains}


def score_dimension(
    promises: list[Promise], feedback: list[FeedbackAnnotation], category: str,
) -> float:
    """Score one dimension 0-100. No promises in the category means neutral (50)."""
    if category not in _DIMENSION_SCORERS:
        raise ValueError(f"Unknown category: {category!r}")
    in_category = [p for p in promises if p.category == category]
    if not in_category:
        return NEUTRAL_SCORE
    return _DIMENSION_SCORERS[category](in_category, feedback)


# ---------------------------------------------------------------------------
# Deterministic aggregation
# ---------------------------------------------------------------------------


def compute_overall_score(jobs: float, pains: float, gains: float) -> float:
    return (
        jobs * DIMENSION_WEIGHTS["jobs"]
        + pains * DIMENSION_WEIGHTS["pains"]
        + gains * DIMENSION_WEIGHTS["gains"]
    )


def compute_statistical_significance(sample_size: int) -> float:
    """Fixed lookup approximating 95/90/85% confidence, not a real test."""
    for min_size, level in SIGNIFICANCE_BANDS:
        if sample_size >= min_size:
            return level
    return DEFAULT_SIGNIFICANCE


def build_audit_score(
    promises: list[Promise], feedback: list[FeedbackAnnotation], company_id: int, audit_id: int,
) -> AuditScore:
    """Compute all scores for one audit (unsaved)."""
    jobs = score_dimension(promises, feedback, "job")
    pains = score_dimension(promises, feedback, "pain")
    gains = score_dimension(promises, feedback, "gain")
    return AuditScore(
        company_id=company_id,
        audit_id=audit_id,
        overall_score=compute_overall_score(jobs, pains, gains),
        jobs_score=jobs,
        pains_score=pains,
        gains_score=gains,
        statistical_significance=compute_statistical_significance(len(feedback)),
        sample_size=len(feedback),
    )


# ---------------------------------------------------------------------------
# Gap severity
# ---------------------------------------------------------------------------


def score_gap_severity(score: float) -> str:
    for bound, severity in SCORE_SEVERITY_BANDS:
        if score < bound:
            return severity
    return "medium"


def frequency_gap_severity(frequency: int, total: int) -> str:
    if total <= 0:
        return "low"
    percentage = frequency / total * 100
    for bound, severity in FREQUENCY_SEVERITY_BANDS:
        if percentage >= bound:
            return severity
    return "low"


def fulfillment_status(mention_percentage: float) -> str:
    """How much of the feedback talks about a promise, as shown in the audit breakdown."""
    for bound, status in FULFILLMENT_STATUS_BANDS:
        if mention_percentage > bound:
            return status
    return "not_fulfilled"


# ---------------------------------------------------------------------------
# Gap builders
# ---------------------------------------------------------------------------

# (gap_type, score attribute, priority, description, promise text, reality text)
_SCORE_GAP_TEMPLATES: list[tuple[str, str, int, str, str, str]] = [
    (
        "jobs", "jobs_score", 1,
        "Jobs Fulfillment Score is {score}/100 - Customers are not experiencing promised jobs to be done",
        "Company promises to help customers accomplish specific jobs",
        "Only {score}% job fulfillment rate in customer feedback",
    ),
    (
        "pains", "pains_score", 2,
        "Pain Relief Score is {score}/100 - Customers are still experiencing promised pain relief",
        "Company promises to eliminate customer pains",
        "Only {score}% pain relief effectiveness in customer feedback",
    ),
    (
        "gains", "gains_score", 3,
        "Gain Achievement Score is {score}/100 - Customers are not receiving promised gains",
        "Company promises specific customer gains",
        "Only {score}% gain achievement rate in customer feedback",
    ),
]

_PROMISE_GAP_DESCRIPTIONS = {
    "job": "Promised job not being fulfilled: {text}",
    "pain": "Pain relief promised but pain still experienced: {text}",
    "gain": "Promised gain not achieved: {text}",
}


def build_score_gaps(score: AuditScore | None, company_id: int, audit_id: int) -> list[GapAnalysis]:
    """One gap per dimension scoring below ``SCORE_GAP_THRESHOLD``."""
    if score is None:
        return []
    gaps: list[GapAnalysis] = []
    for gap_type, attr, priority, description, promise_text, reality_text in _SCORE_GAP_TEMPLATES:
        value = getattr(score, attr)
        if value is None or value >= SCORE_GAP_THRESHOLD:
            continue
        rounded = int(_round(value, 0))
        gaps.append(GapAnalysis(
            company_id=company_id,
            audit_id=audit_id,
            gap_type=gap_type,
            gap_description=description.format(score=rounded),
            gap_severity=score_gap_severity(value),
            promise_text=promise_text,
            reality_text=reality_text.format(score=rounded),
            impact_score=100 - value,
            priority=priority,
        ))
    return gaps


def needs_gap(stats: PromiseStats) -> bool:
    return (
        stats.fulfillment_rate < FULFILLMENT_GAP_THRESHOLD
        or stats.average_sentiment < SENTIMENT_GAP_THRESHOLD
    )


def reality_summary(stats: PromiseStats) -> str:
    return (
        f"{stats.mention_percentage}% of reviews mention this. "
        f"Average sentiment: {stats.average_sentiment:.2f}/1.0. "
        f"Fulfillment rate: {stats.fulfillment_rate * 100:.1f}%"
    )


def build_promise_gaps(
    promises: list[Promise],
    feedback: list[FeedbackAnnotation],
    company_id: int,
    audit_id: int,
    first_priority: int = 1,
) -> list[GapAnalysis]:
    """One gap per promise with poor fulfillment or negative sentiment.

    Priorities are assigned in promise order starting at *first_priority*.
    """
    gaps: list[GapAnalysis] = []
    for promise in promises:
        category = promise.category
        if category not in CATEGORIES:
            continue
        stats = compute_promise_stats(promise, feedback, category)
        if not needs_gap(stats):
            continue
        gaps.append(GapAnalysis(
            company_id=company_id,
            audit_id=audit_id,
            gap_type=CATEGORY_TO_GAP_TYPE[category],
            gap_description=_PROMISE_GAP_DESCRIPTIONS[category].format(text=promise.extracted_text),
            gap_severity=frequency_gap_severity(stats.mention_count, len(feedback)),
            promise_text=promise.extracted_text,
            reality_text=reality_summary(stats),
            impact_score=(1 - stats.fulfillment_rate) * 100,
            priority=first_priority + len(gaps),
        ))
    return gaps
