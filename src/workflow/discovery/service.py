"""Discovery: fetch, exclude, filter and rank candidate tasks."""

import logging
from datetime import datetime
from typing import List, Optional

from src.workflow.discovery.inflight import HeuristicInFlightDetector, InFlightDetector
from src.workflow.discovery.ranking import DEFAULT_RANKING_LIMIT, rank
from src.workflow.sources.adapter import SourceAdapterRegistry
from src.workflow.sources.models import Policy, ScoredTask
from src.workflow.state.registry import TaskRegistry


logger = logging.getLogger(__name__)


class DiscoveryService:
    """Produces the ranked candidate list for a policy.

    Attributes:
        adapters: Source adapters keyed by source kind.
        registry: Shared registry; claimed ids are excluded.
        detector: In-flight detector. Defaults to the heuristic detector
            over the source's registered change listing.
    """

    def __init__(
        self,
        adapters: SourceAdapterRegistry,
        registry: TaskRegistry,
        detector: Optional[InFlightDetector] = None,
    ):
        self.adapters = adapters
        self.registry = registry
        self.detector = detector

    def _detector_for(self, policy: Policy) -> InFlightDetector:
        if self.detector is not None:
            return self.detector
        return HeuristicInFlightDetector(self.adapters.change_source_for(policy.task_source))

    async def discover(
        self,
        policy: Policy,
        limit: int = DEFAULT_RANKING_LIMIT,
        now: Optional[datetime] = None,
    ) -> List[ScoredTask]:
        """Return the top ``limit`` unclaimed, not in-flight tasks.

        Raises:
            SourceUnavailable: If the task source cannot be fetched.
            CorruptState: If the registry document is invalid.
        """
        config = policy.task_source
        adapter = self.adapters.for_config(config)
        candidates = await adapter.fetch(config)

        claimed = self.registry.claimed_ids(config.kind)
        in_flight = await self._detector_for(policy).in_flight_ids(config, candidates)

        ranked = rank(candidates, claimed, in_flight, policy, limit=limit, now=now)
        logger.info(
            "Discovered tasks",
            extra={
                "source": config.kind.value,
                "candidates": len(candidates),
                "claimed": len(claimed),
                "in_flight": len(in_flight),
                "returned": len(ranked),
            },
        )
        return ranked
