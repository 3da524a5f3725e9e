"""Task discovery.

- DiscoveryService: fetch → exclude claimed/in-flight → filter → rank
- rank / score_task / matches_filter: deterministic scoring
- HeuristicInFlightDetector: open-change matching, fails open
"""

from src.workflow.discovery.inflight import (
    HeuristicInFlightDetector,
    InFlightDetector,
    change_mentions,
    match_in_flight,
)
from src.workflow.discovery.ranking import (
    DEFAULT_RANKING_LIMIT,
    FILTER_KEYWORDS,
    matches_filter,
    rank,
    score_task,
)
from src.workflow.discovery.service import DiscoveryService

__all__ = [
    "DEFAULT_RANKING_LIMIT",
    "FILTER_KEYWORDS",
    "DiscoveryService",
    "HeuristicInFlightDetector",
    "InFlightDetector",
    "change_mentions",
    "match_in_flight",
    "matches_filter",
    "rank",
    "score_task",
]
