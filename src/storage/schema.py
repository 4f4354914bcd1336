"""
Database schema for community-feed.

``create_tables`` is idempotent (``IF NOT EXISTS`` everywhere) and is run by
``community-feed init-db``. The corpus tables (posts, engagement, likes,
reposts, follows) are written by the ingestion collaborator; this service
only reads them, apart from maintenance cleanup.
"""

import logging

from src.storage.database import Database

logger = logging.getLogger(__name__)

CORPUS_SQL = """
CREATE TABLE IF NOT EXISTS posts (
    uri          TEXT PRIMARY KEY,
    cid          TEXT NOT NULL,
    author_did   TEXT NOT NULL,
    text         TEXT,
    reply_root   TEXT,
    reply_parent TEXT,
    langs        TEXT[],
    has_media    BOOLEAN DEFAULT FALSE,
    created_at   TIMESTAMPTZ NOT NULL,
    indexed_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted      BOOLEAN DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_did);
CREATE INDEX IF NOT EXISTS idx_posts_active ON posts(created_at DESC) WHERE deleted = FALSE;

CREATE TABLE IF NOT EXISTS post_engagement (
    post_uri     TEXT PRIMARY KEY REFERENCES posts(uri) ON DELETE CASCADE,
    like_count   INTEGER DEFAULT 0,
    repost_count INTEGER DEFAULT 0,
    reply_count  INTEGER DEFAULT 0,
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS likes (
    uri         TEXT PRIMARY KEY,
    author_did  TEXT NOT NULL,
    subject_uri TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL,
    deleted     BOOLEAN DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS idx_likes_subject ON likes(subject_uri);

CREATE TABLE IF NOT EXISTS reposts (
    uri         TEXT PRIMARY KEY,
    author_did  TEXT NOT NULL,
    subject_uri TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL,
    deleted     BOOLEAN DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS idx_reposts_subject ON reposts(subject_uri);

CREATE TABLE IF NOT EXISTS follows (
    uri         TEXT PRIMARY KEY,
    author_did  TEXT NOT NULL,
    subject_did TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL,
    deleted     BOOLEAN DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS idx_follows_author ON follows(author_did) WHERE deleted = FALSE;

CREATE TABLE IF NOT EXISTS subscribers (
    did        TEXT PRIMARY KEY,
    first_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_seen  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    is_active  BOOLEAN DEFAULT TRUE
);
"""

GOVERNANCE_SQL = """
CREATE TABLE IF NOT EXISTS governance_epochs (
    id                      SERIAL PRIMARY KEY,
    status                  TEXT NOT NULL DEFAULT 'active'
                            CHECK (status IN ('active', 'voting', 'closed')),
    phase                   TEXT NOT NULL DEFAULT 'running'
                            CHECK (phase IN ('running', 'voting', 'results')),
    recency_weight          DOUBLE PRECISION NOT NULL,
    engagement_weight       DOUBLE PRECISION NOT NULL,
    bridging_weight         DOUBLE PRECISION NOT NULL,
    source_diversity_weight DOUBLE PRECISION NOT NULL,
    relevance_weight        DOUBLE PRECISION NOT NULL,
    content_rules           JSONB NOT NULL
                            DEFAULT '{"include_keywords": [], "exclude_keywords": []}',
    vote_count              INTEGER DEFAULT 0,
    voting_started_at       TIMESTAMPTZ,
    voting_ends_at          TIMESTAMPTZ,
    voting_closed_at        TIMESTAMPTZ,
    auto_transition         BOOLEAN DEFAULT FALSE,
    proposed_weights        JSONB,
    proposed_content_rules  JSONB,
    results_approved_at     TIMESTAMPTZ,
    results_approved_by     TEXT,
    description             TEXT,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    closed_at               TIMESTAMPTZ,
    CONSTRAINT weights_sum_check CHECK (
        ABS(recency_weight + engagement_weight + bridging_weight
            + source_diversity_weight + relevance_weight - 1.0) < 0.01
    )
);
CREATE INDEX IF NOT EXISTS idx_epochs_voting_deadline
    ON governance_epochs (voting_ends_at)
    WHERE status = 'active' AND phase = 'voting' AND voting_ends_at IS NOT NULL;

CREATE TABLE IF NOT EXISTS governance_votes (
    id                      UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    voter_did               TEXT NOT NULL REFERENCES subscribers(did),
    epoch_id                INTEGER NOT NULL REFERENCES governance_epochs(id),
    recency_weight          DOUBLE PRECISION,
    engagement_weight       DOUBLE PRECISION,
    bridging_weight         DOUBLE PRECISION,
    source_diversity_weight DOUBLE PRECISION,
    relevance_weight        DOUBLE PRECISION,
    include_keywords        TEXT[] DEFAULT '{}',
    exclude_keywords        TEXT[] DEFAULT '{}',
    voted_at                TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT one_vote_per_epoch UNIQUE (voter_did, epoch_id),
    CONSTRAINT vote_weights_sum_to_one CHECK (
        (recency_weight IS NULL AND engagement_weight IS NULL
         AND bridging_weight IS NULL AND source_diversity_weight IS NULL
         AND relevance_weight IS NULL)
        OR
        (recency_weight IS NOT NULL AND engagement_weight IS NOT NULL
         AND bridging_weight IS NOT NULL AND source_diversity_weight IS NOT NULL
         AND relevance_weight IS NOT NULL
         AND ABS(recency_weight + engagement_weight + bridging_weight
                 + source_diversity_weight + relevance_weight - 1.0) < 0.01)
    )
);
CREATE INDEX IF NOT EXISTS idx_votes_epoch ON governance_votes(epoch_id);

CREATE TABLE IF NOT EXISTS governance_audit_log (
    id         SERIAL PRIMARY KEY,
    action     TEXT NOT NULL,
    actor_did  TEXT,
    epoch_id   INTEGER REFERENCES governance_epochs(id),
    details    JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_audit_epoch ON governance_audit_log(epoch_id);
CREATE INDEX IF NOT EXISTS idx_audit_created ON governance_audit_log(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_audit_action ON governance_audit_log(action);

CREATE OR REPLACE FUNCTION prevent_audit_log_mutation()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'governance_audit_log is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS audit_log_append_only ON governance_audit_log;
CREATE TRIGGER audit_log_append_only
    BEFORE UPDATE OR DELETE ON governance_audit_log
    FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_mutation();

CREATE TABLE IF NOT EXISTS scheduled_votes (
    id             SERIAL PRIMARY KEY,
    starts_at      TIMESTAMPTZ NOT NULL,
    duration_hours INTEGER NOT NULL DEFAULT 72
                   CHECK (duration_hours >= 1 AND duration_hours <= 168),
    announced      BOOLEAN NOT NULL DEFAULT FALSE,
    started_at     TIMESTAMPTZ,
    created_by     TEXT NOT NULL,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_scheduled_votes_starts_at ON scheduled_votes(starts_at);

CREATE TABLE IF NOT EXISTS announcement_settings (
    key        TEXT PRIMARY KEY,
    enabled    BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
INSERT INTO announcement_settings (key, enabled) VALUES
    ('voting_opened', TRUE),
    ('voting_reminder_24h', TRUE),
    ('voting_closed', TRUE),
    ('results_approved', TRUE),
    ('vote_scheduled', TRUE)
ON CONFLICT (key) DO NOTHING;

CREATE TABLE IF NOT EXISTS governance_outbox (
    id            BIGSERIAL PRIMARY KEY,
    event_type    TEXT NOT NULL,
    epoch_id      INTEGER,
    payload       JSONB NOT NULL DEFAULT '{}',
    attempts      INTEGER NOT NULL DEFAULT 0,
    last_error    TEXT,
    available_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    delivered_at  TIMESTAMPTZ,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_outbox_pending
    ON governance_outbox (available_at) WHERE delivered_at IS NULL;

CREATE TABLE IF NOT EXISTS announcements (
    id                SERIAL PRIMARY KEY,
    epoch_id          INTEGER REFERENCES governance_epochs(id),
    post_uri          TEXT,
    content           TEXT NOT NULL,
    announcement_type TEXT DEFAULT 'custom',
    posted_at         TIMESTAMPTZ DEFAULT NOW(),
    posted_by         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_announcements_posted ON announcements(posted_at DESC);
"""

SCORING_SQL = """
CREATE TABLE IF NOT EXISTS post_scores (
    id                        UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    post_uri                  TEXT NOT NULL REFERENCES posts(uri) ON DELETE CASCADE,
    epoch_id                  INTEGER NOT NULL,
    recency_score             DOUBLE PRECISION NOT NULL,
    engagement_score          DOUBLE PRECISION NOT NULL,
    bridging_score            DOUBLE PRECISION NOT NULL,
    source_diversity_score    DOUBLE PRECISION NOT NULL,
    relevance_score           DOUBLE PRECISION NOT NULL,
    recency_weight            DOUBLE PRECISION NOT NULL,
    engagement_weight         DOUBLE PRECISION NOT NULL,
    bridging_weight           DOUBLE PRECISION NOT NULL,
    source_diversity_weight   DOUBLE PRECISION NOT NULL,
    relevance_weight          DOUBLE PRECISION NOT NULL,
    recency_weighted          DOUBLE PRECISION NOT NULL,
    engagement_weighted       DOUBLE PRECISION NOT NULL,
    bridging_weighted         DOUBLE PRECISION NOT NULL,
    source_diversity_weighted DOUBLE PRECISION NOT NULL,
    relevance_weighted        DOUBLE PRECISION NOT NULL,
    total_score               DOUBLE PRECISION NOT NULL,
    component_details         JSONB,
    scored_at                 TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT unique_post_epoch UNIQUE (post_uri, epoch_id)
);
CREATE INDEX IF NOT EXISTS idx_scores_epoch_total ON post_scores(epoch_id, total_score DESC);
CREATE INDEX IF NOT EXISTS idx_scores_scored_at ON post_scores(scored_at DESC);

CREATE TABLE IF NOT EXISTS system_status (
    key        TEXT PRIMARY KEY,
    value      JSONB NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);
"""


async def create_tables(database: Database) -> None:
    """
    Create all tables, indexes and triggers if they don't exist.

    Args:
        database: Connected Database instance
    """
    async with database.transaction() as conn:
        await conn.execute(CORPUS_SQL)
        await conn.execute(GOVERNANCE_SQL)
        await conn.execute(SCORING_SQL)

    logger.info("Database schema ensured")
