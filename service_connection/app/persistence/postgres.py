"""
PostgreSQL session repository for the Connection Service.
"""

import uuid
from typing import Optional

import asyncpg

from shared.logging import get_logger

from ..models import DEFAULT_DISPATCHER_STATUS, Session, SessionStatus

SESSION_COLUMNS = """
    session_id, user_id, token_id, session_status, dispatcher_status,
    created_at, completed_at
"""


class SessionNotFoundError(Exception):
    """No session row matches the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session {session_id} not found")


class SessionNotInProgressError(Exception):
    """A guarded transition found the session in another status."""

    def __init__(self, session_id: str, current_status: Optional[SessionStatus] = None):
        self.session_id = session_id
        self.current_status = current_status
        super().__init__(f"session {session_id} is not in progress")


class ActiveSessionExistsError(Exception):
    """The user already holds an IN_PROGRESS session."""

    def __init__(self, user_id: str, session_id: Optional[str] = None):
        self.user_id = user_id
        self.session_id = session_id
        super().__init__(f"user {user_id} already has an active session")


class SessionRepository:
    """Session persistence over an asyncpg pool."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10,
                 command_timeout: float = 30.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("connection.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create the schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )

            await self._create_tables()

            self.logger.info("PostgreSQL session repository started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL session repository", error=str(e))
            raise

    async def stop(self):
        """Close the pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL session repository stopped")

    async def _create_tables(self):
        """Create the sessions table and its indexes."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    token_id VARCHAR(255) NOT NULL,
                    session_status VARCHAR(32) NOT NULL DEFAULT 'IN_PROGRESS',
                    dispatcher_status VARCHAR(64) NOT NULL DEFAULT 'PENDING',
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    completed_at TIMESTAMP WITH TIME ZONE
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sessions_user_status
                ON sessions(user_id, session_status);
            """)

            # At most one IN_PROGRESS session per user
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_user_in_progress
                ON sessions(user_id) WHERE session_status = 'IN_PROGRESS';
            """)

    async def get_active_session(self, user_id: str) -> Optional[Session]:
        """Return the user's IN_PROGRESS session, if any."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {SESSION_COLUMNS} FROM sessions
                WHERE user_id = $1 AND session_status = $2
                ORDER BY created_at DESC
                LIMIT 1
            """, user_id, SessionStatus.IN_PROGRESS.value)

        if row is None:
            return None
        return self._row_to_session(row)

    async def get_session_by_id(self, session_id: str) -> Session:
        """Load a session by id."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {SESSION_COLUMNS} FROM sessions WHERE session_id = $1
            """, session_id)

        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    async def create_session(self, user_id: str, token_id: str) -> Session:
        """Insert a new IN_PROGRESS session for ``user_id``.

        The check-then-insert runs under a transaction-scoped advisory lock
        keyed by the user, so concurrent connects for one user serialize here.
        The partial unique index backs this up for writers that skip the lock.
        """
        session_id = str(uuid.uuid4())

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", user_id)

                existing = await conn.fetchval("""
                    SELECT session_id FROM sessions
                    WHERE user_id = $1 AND session_status = $2
                """, user_id, SessionStatus.IN_PROGRESS.value)
                if existing is not None:
                    raise ActiveSessionExistsError(user_id, existing)

                try:
                    row = await conn.fetchrow(f"""
                        INSERT INTO sessions
                            (session_id, user_id, token_id, session_status, dispatcher_status, created_at)
                        VALUES ($1, $2, $3, $4, $5, NOW())
                        RETURNING {SESSION_COLUMNS}
                    """, session_id, user_id, token_id,
                        SessionStatus.IN_PROGRESS.value, DEFAULT_DISPATCHER_STATUS)
                except asyncpg.UniqueViolationError:
                    raise ActiveSessionExistsError(user_id)

        session = self._row_to_session(row)
        self.logger.info("Created session", session_id=session.session_id, user_id=user_id)
        return session

    async def update_session_status(self, session_id: str, status: SessionStatus,
                                    expected_status: Optional[SessionStatus] = None) -> Session:
        """Set ``session_status``; with a guard, only from ``expected_status``."""
        status = SessionStatus(status)
        return await self._transition(
            session_id,
            "session_status = $1",
            status.value,
            expected_status,
            event="Updated session status",
            status=status.value
        )

    async def set_session_status_to_completed(
            self, session_id: str,
            expected_status: Optional[SessionStatus] = None) -> Session:
        """Mark the session COMPLETED and stamp ``completed_at``."""
        return await self._transition(
            session_id,
            "session_status = $1, completed_at = NOW()",
            SessionStatus.COMPLETED.value,
            expected_status,
            event="Updated session status",
            status=SessionStatus.COMPLETED.value
        )

    async def update_dispatcher_status(self, session_id: str, dispatcher_status: str) -> Session:
        """Record the dispatcher's acknowledgement state."""
        return await self._transition(
            session_id,
            "dispatcher_status = $1",
            dispatcher_status,
            None,
            event="Updated dispatcher status",
            dispatcher_status=dispatcher_status
        )

    async def delete_session(self, session_id: str) -> None:
        """Delete a session row. A missing row is logged, not raised."""
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                DELETE FROM sessions WHERE session_id = $1
            """, session_id)

        if result == "DELETE 0":
            self.logger.warning("Attempted to delete non-existent session", session_id=session_id)
            return

        self.logger.info("Deleted session", session_id=session_id)

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False

    async def _transition(self, session_id: str, assignments: str, value: str,
                          expected_status: Optional[SessionStatus],
                          event: str, **log_fields) -> Session:
        """Run a single-row UPDATE and classify a zero-row result."""
        query = f"UPDATE sessions SET {assignments} WHERE session_id = $2"
        args = [value, session_id]
        if expected_status is not None:
            query += " AND session_status = $3"
            args.append(SessionStatus(expected_status).value)
        query += f" RETURNING {SESSION_COLUMNS}"

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)

            if row is None:
                current = await conn.fetchval(
                    "SELECT session_status FROM sessions WHERE session_id = $1",
                    session_id
                )
                if current is None:
                    raise SessionNotFoundError(session_id)
                raise SessionNotInProgressError(session_id, SessionStatus(current))

        self.logger.info(event, session_id=session_id, **log_fields)
        return self._row_to_session(row)

    def _row_to_session(self, row) -> Session:
        """Convert database row to Session object."""
        return Session(
            session_id=str(row['session_id']),
            user_id=row['user_id'],
            token_id=row['token_id'],
            session_status=SessionStatus(row['session_status']),
            dispatcher_status=row['dispatcher_status'],
            created_at=row['created_at'],
            completed_at=row['completed_at']
        )
