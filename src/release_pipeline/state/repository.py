"""PostgreSQL repository for pipeline state persistence.

This module implements the StateRepository protocol using asyncpg for
async PostgreSQL access. It provides:
- Connection pooling for production use
- Runs stored as JSONB documents with optimistic locking via version
- A stage_transitions audit table written in the same transaction
- Last-known-good, environment status and environment leases

The schema is defined in migrations/001_release_pipeline.sql.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, List, Optional, Sequence

import asyncpg
import structlog

from release_pipeline.state.models import (
    TERMINAL_RUN_STATUSES,
    EnvironmentLease,
    EnvironmentStatus,
    LastKnownGood,
    PipelineRun,
)

if TYPE_CHECKING:
    from release_pipeline.state.machine import AuditEntry

logger = structlog.get_logger(__name__)

_TERMINAL_VALUES = [status.value for status in TERMINAL_RUN_STATUSES]


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _rows_affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1" or "INSERT 0 1"
    return int(status.split()[-1])


class PostgresStateRepository:
    """PostgreSQL implementation of the StateRepository protocol.

    Attributes:
        connection_string: PostgreSQL connection URL.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresStateRepository("postgresql://...") as repo:
        ...     run = await repo.get_run("3f2a...")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                min_pool_size=self.min_pool_size,
                max_pool_size=self.max_pool_size,
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", error=str(e))
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresStateRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def create_run(self, run: PipelineRun) -> None:
        """Insert a new run document.

        Raises:
            DatabaseError: If the run exists or the insert fails.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO pipeline_runs (
                        run_id,
                        artifact_ref,
                        status,
                        document,
                        created_at,
                        updated_at,
                        version
                    ) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7)
                    """,
                    run.run_id,
                    run.artifact_ref,
                    run.status.value,
                    run.model_dump_json(),
                    run.created_at,
                    run.updated_at,
                    run.version,
                )
            logger.info("Saved pipeline run", run_id=run.run_id, version=run.version)
        except asyncpg.UniqueViolationError as e:
            raise DatabaseError(
                f"Pipeline run already exists: {run.run_id}",
                original_error=e,
            ) from e
        except DatabaseError:
            raise
        except Exception as e:
            logger.error("Failed to save pipeline run", run_id=run.run_id, error=str(e))
            raise DatabaseError(
                f"Failed to save pipeline run: {e}",
                original_error=e,
            ) from e

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        try:
            async with self.pool.acquire() as conn:
                document = await conn.fetchval(
                    "SELECT document FROM pipeline_runs WHERE run_id = $1",
                    run_id,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to get pipeline run: {e}",
                original_error=e,
            ) from e

        if document is None:
            return None
        return PipelineRun.model_validate_json(document)

    async def list_active_runs(self) -> List[PipelineRun]:
        """Runs whose status is not terminal, oldest first."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT document FROM pipeline_runs
                    WHERE NOT (status = ANY($1::text[]))
                    ORDER BY created_at ASC
                    """,
                    _TERMINAL_VALUES,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to list active runs: {e}",
                original_error=e,
            ) from e

        return [PipelineRun.model_validate_json(row["document"]) for row in rows]

    async def update_with_version(
        self, run: PipelineRun, transitions: Sequence["AuditEntry"] = ()
    ) -> bool:
        """Update the run document only if the stored version is run.version - 1.

        Audit entries are inserted in the same transaction, so the trail
        never records a transition whose document write lost the race.

        Raises:
            DatabaseError: If the update fails for reasons other than a
                version conflict.
        """
        expected_version = run.version - 1

        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE pipeline_runs
                    SET
                        status = $2,
                        document = $3::jsonb,
                        updated_at = $4,
                        version = $5
                    WHERE run_id = $1 AND version = $6
                    """,
                    run.run_id,
                    run.status.value,
                    run.model_dump_json(),
                    run.updated_at,
                    run.version,
                    expected_version,
                )

                if _rows_affected(result) == 0:
                    logger.warning(
                        "Version conflict during run update",
                        run_id=run.run_id,
                        expected_version=expected_version,
                    )
                    return False

                if transitions:
                    await conn.executemany(
                        """
                        INSERT INTO stage_transitions (
                            run_id,
                            stage_id,
                            from_status,
                            to_status,
                            timestamp,
                            details
                        ) VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                        """,
                        [
                            (
                                run.run_id,
                                stage_id,
                                t.from_status.value,
                                t.to_status.value,
                                t.timestamp,
                                json.dumps(t.details, default=str),
                            )
                            for stage_id, t in transitions
                        ],
                    )

            logger.debug(
                "Updated pipeline run",
                run_id=run.run_id,
                status=run.status.value,
                version=run.version,
                new_transitions=len(transitions),
            )
            return True

        except DatabaseError:
            raise
        except Exception as e:
            logger.error("Failed to update pipeline run", run_id=run.run_id, error=str(e))
            raise DatabaseError(
                f"Failed to update pipeline run: {e}",
                original_error=e,
            ) from e

    # -------------------------------------------------------------------------
    # Per-environment state
    # -------------------------------------------------------------------------

    async def get_last_known_good(self, environment: str) -> Optional[LastKnownGood]:
        row = await self._fetchrow(
            """
            SELECT environment, artifact_ref, artifact_digest, run_id, recorded_at
            FROM last_known_good WHERE environment = $1
            """,
            environment,
        )
        return LastKnownGood(**dict(row)) if row is not None else None

    async def set_last_known_good(self, record: LastKnownGood) -> None:
        await self._execute(
            """
            INSERT INTO last_known_good (
                environment, artifact_ref, artifact_digest, run_id, recorded_at
            ) VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (environment) DO UPDATE SET
                artifact_ref = EXCLUDED.artifact_ref,
                artifact_digest = EXCLUDED.artifact_digest,
                run_id = EXCLUDED.run_id,
                recorded_at = EXCLUDED.recorded_at
            """,
            record.environment,
            record.artifact_ref,
            record.artifact_digest,
            record.run_id,
            record.recorded_at,
        )

    async def get_environment_status(
        self, environment: str
    ) -> Optional[EnvironmentStatus]:
        row = await self._fetchrow(
            """
            SELECT environment, artifact_ref, undeployed, updated_at
            FROM environment_status WHERE environment = $1
            """,
            environment,
        )
        return EnvironmentStatus(**dict(row)) if row is not None else None

    async def set_environment_status(self, status: EnvironmentStatus) -> None:
        await self._execute(
            """
            INSERT INTO environment_status (
                environment, artifact_ref, undeployed, updated_at
            ) VALUES ($1, $2, $3, $4)
            ON CONFLICT (environment) DO UPDATE SET
                artifact_ref = EXCLUDED.artifact_ref,
                undeployed = EXCLUDED.undeployed,
                updated_at = EXCLUDED.updated_at
            """,
            status.environment,
            status.artifact_ref,
            status.undeployed,
            status.updated_at,
        )

    async def acquire_lease(
        self, environment: str, holder: str, expires_at: datetime, now: datetime
    ) -> bool:
        """Take or renew a lease in one statement.

        The upsert only overwrites a row held by the same holder or already
        expired, so two processes can never both succeed.
        """
        result = await self._execute(
            """
            INSERT INTO environment_leases (environment, holder, expires_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (environment) DO UPDATE SET
                holder = EXCLUDED.holder,
                expires_at = EXCLUDED.expires_at
            WHERE environment_leases.holder = EXCLUDED.holder
               OR environment_leases.expires_at <= $4
            """,
            environment,
            holder,
            expires_at,
            now,
        )
        return _rows_affected(result) == 1

    async def release_lease(self, environment: str, holder: str) -> None:
        await self._execute(
            "DELETE FROM environment_leases WHERE environment = $1 AND holder = $2",
            environment,
            holder,
        )

    async def get_lease(self, environment: str) -> Optional[EnvironmentLease]:
        row = await self._fetchrow(
            """
            SELECT environment, holder, expires_at
            FROM environment_leases WHERE environment = $1
            """,
            environment,
        )
        return EnvironmentLease(**dict(row)) if row is not None else None

    async def health_check(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            return False

    async def _fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Query failed: {e}", original_error=e) from e

    async def _execute(self, query: str, *args: Any) -> str:
        try:
            async with self.pool.acquire() as conn:
                return await conn.execute(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Statement failed: {e}", original_error=e) from e
