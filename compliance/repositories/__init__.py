from compliance.repositories.analysis_results import (
    InMemoryAnalysisResultsRepository,
    PostgresAnalysisResultsRepository,
    SqliteAnalysisResultsRepository,
)

__all__ = [
    "InMemoryAnalysisResultsRepository",
    "PostgresAnalysisResultsRepository",
    "SqliteAnalysisResultsRepository",
]
