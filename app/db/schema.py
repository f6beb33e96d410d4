from __future__ import annotations

# The vector lives on the transaction row; the task queue is a flat table keyed by task_id.

POSTGRES_SCHEMA_STATEMENTS: tuple[str, ...] = (
    "CREATE EXTENSION IF NOT EXISTS vector",
    """
    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        counterparty_name TEXT,
        amount_minor BIGINT NOT NULL,
        direction TEXT NOT NULL CHECK (direction IN ('income', 'expense', 'transfer')),
        category_id TEXT,
        category_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        embedding vector,
        embedding_model TEXT,
        embedded_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_transactions_tenant_created
    ON transactions(tenant_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS enrichment_tasks (
        task_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        transaction_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        claimed_at TIMESTAMPTZ,
        processed_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_enrichment_tasks_claim
    ON enrichment_tasks(tenant_id, status, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_enrichment_tasks_transaction
    ON enrichment_tasks(tenant_id, transaction_id)
    """,
)

SQLITE_SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        counterparty_name TEXT,
        amount_minor INTEGER NOT NULL,
        direction TEXT NOT NULL,
        category_id TEXT,
        category_name TEXT,
        created_at TEXT NOT NULL,
        embedding TEXT,
        embedding_model TEXT,
        embedded_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_transactions_tenant_created
    ON transactions(tenant_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS enrichment_tasks (
        task_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        transaction_id TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        created_at TEXT NOT NULL,
        claimed_at TEXT,
        processed_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_enrichment_tasks_claim
    ON enrichment_tasks(tenant_id, status, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_enrichment_tasks_transaction
    ON enrichment_tasks(tenant_id, transaction_id)
    """,
)
