from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Query

from tablekit.services.query_pipeline import QueryCriteria, QueryPipeline

logger = logging.getLogger(__name__)

Breakdown = Callable[[Query], dict[str, Any]]


class StatsRegistry:
    _breakdowns: dict[str, Breakdown] = {}

    @classmethod
    def register(cls, entity_key: str, breakdown: Breakdown) -> None:
        if not entity_key:
            raise ValueError("entity_key is required")
        cls._breakdowns[entity_key] = breakdown

    @classmethod
    def get(cls, entity_key: str) -> Breakdown | None:
        return cls._breakdowns.get(entity_key)

    @classmethod
    def unregister(cls, entity_key: str) -> None:
        cls._breakdowns.pop(entity_key, None)


def compute_stats(
    entity_key: str,
    pipeline: QueryPipeline,
    criteria: QueryCriteria,
) -> dict[str, Any]:
    """Totals over the filtered, unpaginated result set.

    ``context`` is ``"filtered"`` when a search term or an allowlisted filter
    is active and ``"all"`` otherwise. Entity breakdowns registered in
    ``StatsRegistry`` are merged in and receive the same filtered query.
    """
    filters_applied = criteria.has_active_criteria(pipeline.definition.filterable_keys)
    query = pipeline.filtered_query(criteria)
    stats: dict[str, Any] = {
        "total": query.order_by(None).count(),
        "context": "filtered" if filters_applied else "all",
        "filters_applied": filters_applied,
    }
    breakdown = StatsRegistry.get(entity_key)
    if breakdown is not None:
        extra = breakdown(query) or {}
        for key, value in extra.items():
            if key in stats:
                logger.debug("Stats breakdown for %s overrides %s", entity_key, key)
            stats[key] = value
    return stats
