"""
Schedule cache keyed by model identifier.

A cached Schedule is reused only while both the graph fingerprint and the
hardware fingerprint still match; otherwise the model is recompiled.
"""

import logging
from typing import Dict, Optional

from npusim.core.structures import ModelGraph, Schedule
from .mapper import HardwareMapper

logger = logging.getLogger(__name__)


class ScheduleCache:
    def __init__(self, mapper: HardwareMapper):
        self.mapper = mapper
        self._entries: Dict[int, Schedule] = {}
        self.hits = 0
        self.misses = 0

    def __contains__(self, model_id: int) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, model_id: int, graph: ModelGraph) -> Optional[Schedule]:
        schedule = self._entries.get(model_id)
        if schedule is None:
            return None
        if (schedule.graph_fingerprint != graph.fingerprint()
                or schedule.hardware_fingerprint != self.mapper.config.fingerprint()):
            logger.debug("Schedule for model %d is stale", model_id)
            return None
        return schedule

    def get_or_compile(self, graph: ModelGraph, model_id: int) -> Schedule:
        schedule = self.lookup(model_id, graph)
        if schedule is not None:
            self.hits += 1
            logger.info("Reusing cached schedule for model %d", model_id)
            return schedule
        self.misses += 1
        schedule = self.mapper.compile(graph, model_id)
        self._entries[model_id] = schedule
        return schedule
