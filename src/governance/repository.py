"""Governance repositories: epochs, ballots, audit log, scheduled votes.

Every method takes an optional ``conn``. Inside a governance transaction the
caller passes the transaction's connection so all reads and writes share the
row lock; outside one, the pooled ``Database`` helpers are used.
"""

import json
import logging
from datetime import datetime
from typing import Any

from src.governance.schemas import (
    AuditLogEntry,
    ContentRules,
    Epoch,
    ScheduledVote,
    Vote,
)
from src.governance.weights import WEIGHT_COLUMNS, Weights, parse_int
from src.storage.database import Database

logger = logging.getLogger(__name__)

_CURRENT_EPOCH_SQL = """
    SELECT * FROM governance_epochs
    WHERE status IN ('active', 'voting')
    ORDER BY id DESC
    LIMIT 1
"""

_WEIGHT_COLUMN_LIST = ", ".join(WEIGHT_COLUMNS)
# Positional params $2..$6 after the epoch id in $1
_WEIGHT_SET_CLAUSE = ", ".join(
    f"{col} = ${i + 2}" for i, col in enumerate(WEIGHT_COLUMNS)
)
_WEIGHT_EXCLUDED_CLAUSE = ", ".join(f"{col} = EXCLUDED.{col}" for col in WEIGHT_COLUMNS)


def _json_value(value: Any) -> Any:
    """JSONB arrives decoded when the pool codec is registered, text otherwise."""
    if isinstance(value, str):
        return json.loads(value)
    return value


class EpochRepository:
    """Persistence for ``governance_epochs`` rows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def _executor(self, conn: Any | None) -> Any:
        return conn if conn is not None else self._db

    async def get_current(
        self,
        conn: Any | None = None,
        *,
        for_update: bool = False,
    ) -> Epoch | None:
        """Get the current (non-closed) epoch.

        Args:
            conn: Transaction connection; required when ``for_update``.
            for_update: Row-lock the epoch until the transaction ends.

        Returns:
            The current Epoch, or None before bootstrap.
        """
        sql = _CURRENT_EPOCH_SQL
        if for_update:
            if conn is None:
                raise ValueError("for_update requires a transaction connection")
            sql += " FOR UPDATE"
        row = await self._executor(conn).fetchrow(sql)
        return _row_to_epoch(row) if row else None

    async def get_by_id(self, epoch_id: int, conn: Any | None = None) -> Epoch | None:
        row = await self._executor(conn).fetchrow(
            "SELECT * FROM governance_epochs WHERE id = $1", epoch_id
        )
        return _row_to_epoch(row) if row else None

    async def list_recent(self, limit: int = 20) -> list[Epoch]:
        rows = await self._db.fetch(
            "SELECT * FROM governance_epochs ORDER BY id DESC LIMIT $1", limit
        )
        return [_row_to_epoch(row) for row in rows]

    async def create(
        self,
        conn: Any,
        weights: Weights,
        content_rules: ContentRules,
        *,
        vote_count: int = 0,
        description: str | None = None,
    ) -> Epoch:
        """Insert a new active epoch in phase running."""
        sql = f"""
            INSERT INTO governance_epochs (
                status, phase, {_WEIGHT_COLUMN_LIST},
                content_rules, vote_count, description
            ) VALUES ('active', 'running', $1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
        """
        row = await conn.fetchrow(
            sql,
            *weights.as_tuple(),
            content_rules.to_dict(),
            vote_count,
            description,
        )
        return _row_to_epoch(row)

    async def close(self, conn: Any, epoch_id: int) -> None:
        await conn.execute(
            """
            UPDATE governance_epochs
            SET status = 'closed', closed_at = NOW(),
                auto_transition = FALSE, voting_ends_at = NULL
            WHERE id = $1
            """,
            epoch_id,
        )

    async def start_voting(
        self, conn: Any, epoch_id: int, voting_ends_at: datetime
    ) -> Epoch:
        row = await conn.fetchrow(
            """
            UPDATE governance_epochs
            SET phase = 'voting',
                voting_started_at = NOW(),
                voting_ends_at = $2,
                voting_closed_at = NULL,
                auto_transition = TRUE,
                proposed_weights = NULL,
                proposed_content_rules = NULL
            WHERE id = $1
            RETURNING *
            """,
            epoch_id,
            voting_ends_at,
        )
        return _row_to_epoch(row)

    async def extend_voting(
        self, conn: Any, epoch_id: int, voting_ends_at: datetime
    ) -> Epoch:
        row = await conn.fetchrow(
            """
            UPDATE governance_epochs
            SET voting_ends_at = $2, auto_transition = TRUE
            WHERE id = $1
            RETURNING *
            """,
            epoch_id,
            voting_ends_at,
        )
        return _row_to_epoch(row)

    async def close_voting(
        self,
        conn: Any,
        epoch_id: int,
        proposed_weights: Weights,
        proposed_rules: ContentRules,
        vote_count: int,
        *,
        require_expired: bool = False,
    ) -> Epoch | None:
        """Move voting -> results, storing the proposal.

        The ``phase = 'voting'`` predicate makes the update a no-op (None)
        if another tick already closed the window. With ``require_expired``
        the window must also have passed, so an admin extension made since
        the scheduler looked wins.
        """
        expiry_clause = " AND voting_ends_at <= NOW()" if require_expired else ""
        row = await conn.fetchrow(
            f"""
            UPDATE governance_epochs
            SET phase = 'results',
                voting_closed_at = NOW(),
                auto_transition = FALSE,
                proposed_weights = $2,
                proposed_content_rules = $3,
                vote_count = $4
            WHERE id = $1 AND phase = 'voting'{expiry_clause}
            RETURNING *
            """,
            epoch_id,
            proposed_weights.to_dict(),
            proposed_rules.to_dict(),
            vote_count,
        )
        return _row_to_epoch(row) if row else None

    async def apply_results(
        self,
        conn: Any,
        epoch_id: int,
        weights: Weights,
        content_rules: ContentRules,
        *,
        approved_by: str | None,
        vote_count: int | None = None,
    ) -> Epoch:
        """Make the given values live and return to phase running."""
        sql = f"""
            UPDATE governance_epochs
            SET {_WEIGHT_SET_CLAUSE},
                content_rules = $7,
                vote_count = COALESCE($8, vote_count),
                phase = 'running',
                voting_closed_at = COALESCE(voting_closed_at, NOW()),
                voting_ends_at = NULL,
                auto_transition = FALSE,
                proposed_weights = NULL,
                proposed_content_rules = NULL,
                results_approved_at = NOW(),
                results_approved_by = $9
            WHERE id = $1
            RETURNING *
        """
        row = await conn.fetchrow(
            sql,
            epoch_id,
            *weights.as_tuple(),
            content_rules.to_dict(),
            vote_count,
            approved_by,
        )
        return _row_to_epoch(row)

    async def discard_results(self, conn: Any, epoch_id: int) -> Epoch:
        row = await conn.fetchrow(
            """
            UPDATE governance_epochs
            SET phase = 'running',
                voting_ends_at = NULL,
                auto_transition = FALSE,
                proposed_weights = NULL,
                proposed_content_rules = NULL
            WHERE id = $1
            RETURNING *
            """,
            epoch_id,
        )
        return _row_to_epoch(row)

    async def update_weights(self, conn: Any, epoch_id: int, weights: Weights) -> Epoch:
        sql = f"""
            UPDATE governance_epochs
            SET {_WEIGHT_SET_CLAUSE}
            WHERE id = $1
            RETURNING *
        """
        row = await conn.fetchrow(sql, epoch_id, *weights.as_tuple())
        return _row_to_epoch(row)

    async def update_content_rules(
        self, conn: Any, epoch_id: int, content_rules: ContentRules
    ) -> Epoch:
        row = await conn.fetchrow(
            """
            UPDATE governance_epochs SET content_rules = $2
            WHERE id = $1
            RETURNING *
            """,
            epoch_id,
            content_rules.to_dict(),
        )
        return _row_to_epoch(row)

    async def find_expired_voting(self, conn: Any | None = None) -> list[int]:
        """Ids of current epochs whose auto-closing voting window has passed."""
        rows = await self._executor(conn).fetch(
            """
            SELECT id FROM governance_epochs
            WHERE status IN ('active', 'voting')
              AND phase = 'voting'
              AND auto_transition = TRUE
              AND voting_ends_at IS NOT NULL
              AND voting_ends_at <= NOW()
            ORDER BY id
            """
        )
        return [row["id"] for row in rows]


class VoteRepository:
    """Persistence for ``governance_votes`` ballots."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def _executor(self, conn: Any | None) -> Any:
        return conn if conn is not None else self._db

    async def upsert(self, vote: Vote, conn: Any | None = None) -> bool:
        """Insert or replace a voter's ballot for an epoch.

        Returns:
            True if a new ballot was inserted, False if one was replaced.
        """
        weights = vote.weights.as_tuple() if vote.weights else (None,) * len(WEIGHT_COLUMNS)
        sql = f"""
            INSERT INTO governance_votes (
                voter_did, epoch_id, {_WEIGHT_COLUMN_LIST},
                include_keywords, exclude_keywords
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (voter_did, epoch_id) DO UPDATE SET
                {_WEIGHT_EXCLUDED_CLAUSE},
                include_keywords = EXCLUDED.include_keywords,
                exclude_keywords = EXCLUDED.exclude_keywords,
                voted_at = NOW()
            RETURNING id, (xmax = 0) AS inserted
        """
        row = await self._executor(conn).fetchrow(
            sql,
            vote.voter_did,
            vote.epoch_id,
            *weights,
            vote.include_keywords,
            vote.exclude_keywords,
        )
        vote.id = str(row["id"])
        return bool(row["inserted"])

    async def get(self, voter_did: str, epoch_id: int) -> Vote | None:
        row = await self._db.fetchrow(
            "SELECT * FROM governance_votes WHERE voter_did = $1 AND epoch_id = $2",
            voter_did,
            epoch_id,
        )
        return _row_to_vote(row) if row else None

    async def list_for_epoch(self, epoch_id: int, conn: Any | None = None) -> list[Vote]:
        """All ballots for an epoch in submission order."""
        rows = await self._executor(conn).fetch(
            "SELECT * FROM governance_votes WHERE epoch_id = $1 ORDER BY voted_at",
            epoch_id,
        )
        return [_row_to_vote(row) for row in rows]

    async def count_for_epoch(self, epoch_id: int, conn: Any | None = None) -> int:
        value = await self._executor(conn).fetchval(
            "SELECT COUNT(*) FROM governance_votes WHERE epoch_id = $1", epoch_id
        )
        return parse_int(value)

    async def is_active_subscriber(self, did: str) -> bool:
        value = await self._db.fetchval(
            "SELECT 1 FROM subscribers WHERE did = $1 AND is_active = TRUE", did
        )
        return value is not None


class AuditLogRepository:
    """Append-only access to ``governance_audit_log``."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def _executor(self, conn: Any | None) -> Any:
        return conn if conn is not None else self._db

    async def append(
        self,
        action: str,
        *,
        actor_did: str | None = None,
        epoch_id: int | None = None,
        details: dict[str, Any] | None = None,
        conn: Any | None = None,
    ) -> None:
        await self._executor(conn).execute(
            """
            INSERT INTO governance_audit_log (action, actor_did, epoch_id, details)
            VALUES ($1, $2, $3, $4)
            """,
            action,
            actor_did,
            epoch_id,
            details or {},
        )

    async def exists(
        self, action: str, epoch_id: int, conn: Any | None = None
    ) -> bool:
        value = await self._executor(conn).fetchval(
            """
            SELECT 1 FROM governance_audit_log
            WHERE action = $1 AND epoch_id = $2
            LIMIT 1
            """,
            action,
            epoch_id,
        )
        return value is not None

    async def list_entries(
        self,
        *,
        action: str | None = None,
        epoch_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLogEntry], int]:
        """Page through entries, newest first.

        Returns:
            (entries, total matching count)
        """
        conditions: list[str] = []
        params: list[Any] = []
        param_idx = 1

        if action is not None:
            conditions.append(f"action = ${param_idx}")
            params.append(action)
            param_idx += 1

        if epoch_id is not None:
            conditions.append(f"epoch_id = ${param_idx}")
            params.append(epoch_id)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        total = await self._db.fetchval(
            f"SELECT COUNT(*) FROM governance_audit_log {where_clause}", *params
        )
        rows = await self._db.fetch(
            f"""
            SELECT * FROM governance_audit_log
            {where_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
            """,
            *params,
            limit,
            offset,
        )
        return [_row_to_audit_entry(row) for row in rows], parse_int(total)


class ScheduledVoteRepository:
    """Persistence for ``scheduled_votes``."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(self, scheduled: ScheduledVote, conn: Any | None = None) -> ScheduledVote:
        executor = conn if conn is not None else self._db
        row = await executor.fetchrow(
            """
            INSERT INTO scheduled_votes (starts_at, duration_hours, created_by)
            VALUES ($1, $2, $3)
            RETURNING *
            """,
            scheduled.starts_at,
            scheduled.duration_hours,
            scheduled.created_by,
        )
        return _row_to_scheduled_vote(row)

    async def list_upcoming(self) -> list[ScheduledVote]:
        rows = await self._db.fetch(
            """
            SELECT * FROM scheduled_votes
            WHERE started_at IS NULL
            ORDER BY starts_at
            """
        )
        return [_row_to_scheduled_vote(row) for row in rows]

    async def claim_due(self, conn: Any) -> ScheduledVote | None:
        """Lock the earliest due, unstarted scheduled vote.

        SKIP LOCKED lets concurrent ticks pass over a row another tick holds.
        """
        row = await conn.fetchrow(
            """
            SELECT * FROM scheduled_votes
            WHERE started_at IS NULL AND starts_at <= NOW()
            ORDER BY starts_at
            LIMIT 1
            FOR UPDATE SKIP LOCKED
            """
        )
        return _row_to_scheduled_vote(row) if row else None

    async def mark_started(self, conn: Any, scheduled_id: int) -> None:
        await conn.execute(
            "UPDATE scheduled_votes SET started_at = NOW() WHERE id = $1",
            scheduled_id,
        )

    async def mark_announced(self, scheduled_id: int, conn: Any | None = None) -> None:
        executor = conn if conn is not None else self._db
        await executor.execute(
            "UPDATE scheduled_votes SET announced = TRUE WHERE id = $1",
            scheduled_id,
        )


def _optional_weights(value: Any) -> Weights | None:
    data = _json_value(value)
    if not data:
        return None
    return Weights.from_mapping(data)


def _optional_rules(value: Any) -> ContentRules | None:
    data = _json_value(value)
    if data is None:
        return None
    return ContentRules.from_dict(data)


def _row_to_epoch(row: Any) -> Epoch:
    """Convert an asyncpg Record to an Epoch."""
    return Epoch(
        id=row["id"],
        phase=row.get("phase") or "running",
        status=row["status"],
        weights=Weights.from_row(row),
        content_rules=ContentRules.from_dict(_json_value(row.get("content_rules"))),
        vote_count=parse_int(row.get("vote_count")),
        voting_started_at=row.get("voting_started_at"),
        voting_ends_at=row.get("voting_ends_at"),
        voting_closed_at=row.get("voting_closed_at"),
        auto_transition=bool(row.get("auto_transition")),
        proposed_weights=_optional_weights(row.get("proposed_weights")),
        proposed_content_rules=_optional_rules(row.get("proposed_content_rules")),
        results_approved_at=row.get("results_approved_at"),
        results_approved_by=row.get("results_approved_by"),
        description=row.get("description"),
        created_at=row["created_at"],
        closed_at=row.get("closed_at"),
    )


def _row_to_vote(row: Any) -> Vote:
    """Convert an asyncpg Record to a Vote."""
    return Vote(
        id=str(row["id"]) if row.get("id") is not None else None,
        voter_did=row["voter_did"],
        epoch_id=row["epoch_id"],
        weights=Weights.from_row(row),
        include_keywords=list(row.get("include_keywords") or []),
        exclude_keywords=list(row.get("exclude_keywords") or []),
        voted_at=row["voted_at"],
    )


def _row_to_audit_entry(row: Any) -> AuditLogEntry:
    """Convert an asyncpg Record to an AuditLogEntry."""
    return AuditLogEntry(
        id=row["id"],
        action=row["action"],
        actor_did=row.get("actor_did"),
        epoch_id=row.get("epoch_id"),
        details=_json_value(row.get("details")) or {},
        created_at=row["created_at"],
    )


def _row_to_scheduled_vote(row: Any) -> ScheduledVote:
    """Convert an asyncpg Record to a ScheduledVote."""
    return ScheduledVote(
        id=row["id"],
        starts_at=row["starts_at"],
        duration_hours=parse_int(row["duration_hours"]),
        created_by=row["created_by"],
        announced=bool(row.get("announced")),
        started_at=row.get("started_at"),
        created_at=row["created_at"],
    )
