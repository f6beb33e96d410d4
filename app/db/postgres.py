from __future__ import annotations

from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with tenant session injection."""

    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout_s: int = 5,
        statement_timeout_ms: int = 5000,
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect_timeout_s = max(1, int(connect_timeout_s))
        self._statement_timeout_ms = max(0, int(statement_timeout_ms))

    def _run(self, *, tenant_id: str | None, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn, connect_timeout=self._connect_timeout_s) as conn:
            with conn.cursor() as cur:
                if tenant_id is not None:
                    cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
                if self._statement_timeout_ms:
                    cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(self._statement_timeout_ms),),
                    )
            result = fn(conn)
            conn.commit()
            return result

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")
        return self._run(tenant_id=tenant_id, fn=fn)

    def run_unscoped(self, *, fn: Callable[[Any], Any]) -> Any:
        """Cross-tenant read; the worker role must be exempt from RLS."""
        return self._run(tenant_id=None, fn=fn)
