"""Index recommendation engine.

Exports:
    IndexAdvisor: Records query statistics and recommends indexes
    IndexAnalysis: Result of ``IndexAdvisor.recommend()``
    IndexRecommendation: One suggested index
    QueryPattern: Statistics for one normalized query shape
    find_redundant_indexes: Column-prefix redundancy check over tables
    normalize_query: Collapse a query into its shape
"""

from db_bridge.advisor.index_advisor import (
    IndexAdvisor,
    IndexAnalysis,
    IndexRecommendation,
    QueryPattern,
    find_redundant_indexes,
    normalize_query,
)

__all__ = [
    "IndexAdvisor",
    "IndexAnalysis",
    "IndexRecommendation",
    "QueryPattern",
    "find_redundant_indexes",
    "normalize_query",
]
