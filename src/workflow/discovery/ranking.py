"""Deduplication, filtering and scoring of candidate tasks.

Scoring (each bonus at most once per task):
- +100: a label contains "critical" or "p0"
- +50:  a label contains "high" or "p1"
- +40:  a label contains "security"
- +20:  a label contains "small" or "quick"
- +10:  a label contains "bug" and the task is older than 30 days

Ranking is strictly descending by score and stable on ties: tasks with
equal scores keep their input order.
"""

import logging
from datetime import datetime, timezone
from typing import Collection, Dict, FrozenSet, Iterable, List, Optional, Tuple

from src.workflow.sources.models import Policy, PriorityFilter, ScoredTask, Task


logger = logging.getLogger(__name__)


DEFAULT_RANKING_LIMIT = 5
STALE_BUG_AGE_DAYS = 30

FILTER_KEYWORDS: Dict[PriorityFilter, FrozenSet[str]] = {
    PriorityFilter.BUGS: frozenset({"bug", "fix", "defect", "error", "crash", "regression"}),
    PriorityFilter.SECURITY: frozenset({"security", "vulnerability", "cve", "vuln"}),
    PriorityFilter.FEATURES: frozenset({"feature", "enhancement", "feat"}),
}

# (keywords, bonus); a task earns each bonus once however many labels match
SCORE_RULES: Tuple[Tuple[Tuple[str, ...], int], ...] = (
    (("critical", "p0"), 100),
    (("high", "p1"), 50),
    (("security",), 40),
    (("small", "quick"), 20),
)
STALE_BUG_BONUS = 10


def _any_label_contains(labels: Iterable[str], keywords: Iterable[str]) -> bool:
    lowered = [label.lower() for label in labels]
    return any(keyword in label for label in lowered for keyword in keywords)


def matches_filter(task: Task, priority_filter: PriorityFilter) -> bool:
    """Return True if the task belongs to the filter's category."""
    if priority_filter == PriorityFilter.ALL:
        return True
    return _any_label_contains(task.labels, FILTER_KEYWORDS[priority_filter])


def score_task(task: Task, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    score = 0
    for keywords, bonus in SCORE_RULES:
        if _any_label_contains(task.labels, keywords):
            score += bonus
    if _any_label_contains(task.labels, ("bug",)) and task.age_days(now) > STALE_BUG_AGE_DAYS:
        score += STALE_BUG_BONUS
    return score


def rank(
    candidates: Iterable[Task],
    claimed: Collection[str],
    in_flight: Collection[str],
    policy: Policy,
    limit: int = DEFAULT_RANKING_LIMIT,
    now: Optional[datetime] = None,
) -> List[ScoredTask]:
    """Exclude, filter, score and truncate candidate tasks.

    Args:
        candidates: Tasks in source order.
        claimed: Ids held by the registry for this source.
        in_flight: Ids that already have an open change.
        policy: Supplies the priority filter.
        limit: Maximum number of results.
        now: Reference time for task age.

    Returns:
        At most ``limit`` scored tasks, highest score first.
    """
    if limit < 0:
        raise ValueError("limit cannot be negative")
    now = now or datetime.now(timezone.utc)
    excluded = set(claimed) | set(in_flight)

    scored: List[ScoredTask] = []
    skipped = 0
    for task in candidates:
        if task.id in excluded:
            skipped += 1
            continue
        if not matches_filter(task, policy.priority_filter):
            continue
        scored.append(ScoredTask(task=task, score=score_task(task, now)))

    # sorted() is stable, so ties keep input order
    ranked = sorted(scored, key=lambda item: item.score, reverse=True)[:limit]
    logger.debug(
        "Ranked candidates",
        extra={
            "excluded": skipped,
            "eligible": len(scored),
            "returned": len(ranked),
            "priority_filter": policy.priority_filter.value,
        },
    )
    return ranked
