from app.repositories.enrichment_tasks import (
    InMemoryEnrichmentTasksRepository,
    PostgresEnrichmentTasksRepository,
    SqliteEnrichmentTasksRepository,
)
from app.repositories.transactions import (
    InMemoryTransactionsRepository,
    PostgresTransactionsRepository,
    SqliteTransactionsRepository,
)

__all__ = [
    "InMemoryEnrichmentTasksRepository",
    "PostgresEnrichmentTasksRepository",
    "SqliteEnrichmentTasksRepository",
    "InMemoryTransactionsRepository",
    "PostgresTransactionsRepository",
    "SqliteTransactionsRepository",
]
