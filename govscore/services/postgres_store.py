"""
PostgreSQL implementation of the governance store.

Every write is an `INSERT ... ON CONFLICT` upsert keyed by natural identity,
sent with `execute_values` one batch at a time; each batch commits on its
own so a failed batch does not roll back the ones before it.
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence

from psycopg2.extras import Json, RealDictCursor, execute_values

from govscore.data_models.governance import (
    AlignmentBreakdown,
    Delegate,
    PowerSnapshot,
    Proposal,
    ScoreHistoryEntry,
    SocialLinkCheck,
    SyncRun,
    Vote,
    VoteRationale,
)
from govscore.services.connection_pool import DatabaseConnectionPool, get_connection_pool
from govscore.services.store import (
    DEFAULT_WRITE_BATCH_SIZE,
    GovernanceStore,
    ProposalKey,
    VotePowerUpdate,
)
from govscore.utils.batching import BatchResult
from govscore.utils.logger import logger

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS delegates (
    delegate_id      TEXT PRIMARY KEY,
    score            INTEGER NOT NULL,
    payload          JSONB NOT NULL,
    alignment        JSONB,
    delegator_count  INTEGER,
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);
ALTER TABLE delegates ADD COLUMN IF NOT EXISTS previous_alignment JSONB;
ALTER TABLE delegates ADD COLUMN IF NOT EXISTS metadata_hash_verified BOOLEAN;
CREATE INDEX IF NOT EXISTS idx_delegates_score ON delegates (score DESC);

CREATE TABLE IF NOT EXISTS votes (
    vote_tx_hash      TEXT PRIMARY KEY,
    delegate_id       TEXT NOT NULL,
    proposal_tx_hash  TEXT NOT NULL,
    proposal_index    INTEGER NOT NULL,
    decision          TEXT NOT NULL,
    epoch_no          INTEGER NOT NULL,
    block_time        BIGINT NOT NULL,
    meta_url          TEXT,
    meta_hash         TEXT,
    inline_rationale  TEXT,
    voting_power      BIGINT,
    power_source      TEXT CHECK (power_source IN ('exact', 'nearest'))
);
CREATE INDEX IF NOT EXISTS idx_votes_delegate ON votes (delegate_id);
CREATE INDEX IF NOT EXISTS idx_votes_power_source ON votes (power_source);

CREATE TABLE IF NOT EXISTS proposals (
    tx_hash         TEXT NOT NULL,
    proposal_index  INTEGER NOT NULL,
    payload         JSONB NOT NULL,
    ai_summary      TEXT,
    yes_count       INTEGER NOT NULL DEFAULT 0,
    no_count        INTEGER NOT NULL DEFAULT 0,
    abstain_count   INTEGER NOT NULL DEFAULT 0,
    block_time      BIGINT NOT NULL,
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tx_hash, proposal_index)
);

CREATE TABLE IF NOT EXISTS power_snapshots (
    delegate_id  TEXT NOT NULL,
    epoch_no     INTEGER NOT NULL,
    amount       BIGINT NOT NULL,
    PRIMARY KEY (delegate_id, epoch_no)
);

CREATE TABLE IF NOT EXISTS score_history (
    delegate_id              TEXT NOT NULL,
    snapshot_date            DATE NOT NULL,
    score                    INTEGER NOT NULL,
    effective_participation  INTEGER NOT NULL,
    rationale_rate           INTEGER NOT NULL,
    reliability_score        INTEGER NOT NULL,
    profile_completeness     INTEGER NOT NULL,
    PRIMARY KEY (delegate_id, snapshot_date)
);

CREATE TABLE IF NOT EXISTS vote_rationales (
    vote_tx_hash    TEXT PRIMARY KEY,
    delegate_id     TEXT NOT NULL,
    meta_url        TEXT,
    rationale_text  TEXT,
    ai_summary      TEXT,
    hash_verified   BOOLEAN,
    fetched_at      TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS social_link_checks (
    delegate_id      TEXT NOT NULL,
    uri              TEXT NOT NULL,
    status           TEXT NOT NULL CHECK (status IN ('valid', 'broken')),
    http_status      INTEGER,
    last_checked_at  TIMESTAMPTZ,
    PRIMARY KEY (delegate_id, uri)
);

CREATE TABLE IF NOT EXISTS sync_log (
    id             SERIAL PRIMARY KEY,
    sync_type      TEXT NOT NULL,
    started_at     TIMESTAMPTZ NOT NULL,
    finished_at    TIMESTAMPTZ,
    duration_ms    INTEGER,
    success        BOOLEAN,
    error_message  TEXT,
    metrics        JSONB NOT NULL DEFAULT '{}'::jsonb
);
"""

VOTE_COLUMNS = (
    "vote_tx_hash, delegate_id, proposal_tx_hash, proposal_index, decision, epoch_no, "
    "block_time, meta_url, meta_hash, inline_rationale, voting_power, power_source"
)
DELEGATE_SECONDARY_FIELDS = {
    "alignment", "previous_alignment", "metadata_hash_verified", "delegator_count", "updated_at",
}


class PostgresGovernanceStore(GovernanceStore):
    """Governance store backed by the shared psycopg2 connection pool."""

    def __init__(self, pool: Optional[DatabaseConnectionPool] = None, batch_size: int = DEFAULT_WRITE_BATCH_SIZE):
        super().__init__(batch_size)
        self.pool = pool or get_connection_pool()

    def ensure_schema(self) -> None:
        with self.pool.connection() as conn, conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("PostgresGovernanceStore: schema ensured")

    def _execute_values(self, sql: str, rows: List[tuple], template: Optional[str] = None) -> None:
        with self.pool.connection() as conn, conn.cursor() as cur:
            execute_values(cur, sql, rows, template=template, page_size=len(rows))

    def _fetch(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        with self.pool.connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, params)
            return [dict(row) for row in cur.fetchall()]

    def _execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        with self.pool.connection() as conn, conn.cursor() as cur:
            cur.execute(sql, params)

    # ------------------------------------------------------------------
    # Delegates
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_delegate(row: Dict[str, Any]) -> Delegate:
        return Delegate.model_validate({
            **row["payload"],
            "alignment": row.get("alignment"),
            "previous_alignment": row.get("previous_alignment"),
            "metadata_hash_verified": row.get("metadata_hash_verified"),
            "delegator_count": row.get("delegator_count"),
            "updated_at": row.get("updated_at"),
        })

    def upsert_delegates(self, delegates: Sequence[Delegate]) -> BatchResult:
        sql = """
            INSERT INTO delegates (delegate_id, score, payload, updated_at) VALUES %s
            ON CONFLICT (delegate_id) DO UPDATE SET
                score = EXCLUDED.score,
                payload = EXCLUDED.payload,
                updated_at = EXCLUDED.updated_at
        """

        def write(chunk: List[Delegate]) -> None:
            rows = [
                (
                    d.delegate_id,
                    d.score,
                    Json(d.model_dump(mode="json", exclude=DELEGATE_SECONDARY_FIELDS)),
                    d.updated_at,
                )
                for d in chunk
            ]
            self._execute_values(sql, rows, template="(%s, %s, %s, COALESCE(%s, now()))")
        return self._write_batches("delegates", delegates, write)

    def get_delegates(self) -> List[Delegate]:
        rows = self._fetch("SELECT * FROM delegates ORDER BY score DESC, delegate_id")
        return [self._row_to_delegate(row) for row in rows]

    def get_delegate(self, delegate_id: str) -> Optional[Delegate]:
        rows = self._fetch("SELECT * FROM delegates WHERE delegate_id = %s", (delegate_id,))
        return self._row_to_delegate(rows[0]) if rows else None

    def update_alignment(self, scores: Dict[str, AlignmentBreakdown]) -> BatchResult:
        sql = """
            UPDATE delegates AS d SET previous_alignment = d.alignment, alignment = u.alignment
            FROM (VALUES %s) AS u(delegate_id, alignment)
            WHERE d.delegate_id = u.delegate_id
        """

        def write(chunk) -> None:
            rows = [(delegate_id, Json(b.model_dump(mode="json"))) for delegate_id, b in chunk]
            self._execute_values(sql, rows, template="(%s, %s::jsonb)")
        return self._write_batches("alignment", list(scores.items()), write)

    def update_metadata_verification(self, results: Dict[str, bool]) -> BatchResult:
        sql = """
            UPDATE delegates AS d SET metadata_hash_verified = u.verified
            FROM (VALUES %s) AS u(delegate_id, verified)
            WHERE d.delegate_id = u.delegate_id
        """

        def write(chunk) -> None:
            self._execute_values(sql, list(chunk), template="(%s, %s::boolean)")
        return self._write_batches("metadata verification", list(results.items()), write)

    def update_delegator_counts(self, counts: Dict[str, int]) -> BatchResult:
        sql = """
            UPDATE delegates AS d SET delegator_count = u.delegator_count
            FROM (VALUES %s) AS u(delegate_id, delegator_count)
            WHERE d.delegate_id = u.delegate_id
        """

        def write(chunk) -> None:
            self._execute_values(sql, list(chunk), template="(%s, %s::integer)")
        return self._write_batches("delegator counts", list(counts.items()), write)

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def upsert_votes(self, votes: Sequence[Vote]) -> BatchResult:
        sql = f"""
            INSERT INTO votes ({VOTE_COLUMNS}) VALUES %s
            ON CONFLICT (vote_tx_hash) DO UPDATE SET
                decision = EXCLUDED.decision,
                epoch_no = EXCLUDED.epoch_no,
                meta_url = EXCLUDED.meta_url,
                meta_hash = EXCLUDED.meta_hash,
                inline_rationale = EXCLUDED.inline_rationale
        """

        def write(chunk: List[Vote]) -> None:
            rows = [
                (
                    v.vote_tx_hash, v.delegate_id, v.proposal_tx_hash, v.proposal_index,
                    v.decision.value, v.epoch_no, v.block_time, v.meta_url, v.meta_hash,
                    v.inline_rationale, v.voting_power,
                    v.power_source.value if v.power_source else None,
                )
                for v in chunk
            ]
            self._execute_values(sql, rows)
        return self._write_batches("votes", votes, write)

    def get_votes(self, delegate_id: Optional[str] = None) -> List[Vote]:
        if delegate_id is None:
            rows = self._fetch(f"SELECT {VOTE_COLUMNS} FROM votes ORDER BY block_time DESC")
        else:
            rows = self._fetch(
                f"SELECT {VOTE_COLUMNS} FROM votes WHERE delegate_id = %s ORDER BY block_time DESC",
                (delegate_id,),
            )
        return [Vote.model_validate(row) for row in rows]

    def get_votes_needing_power(self) -> Dict[str, List[Vote]]:
        rows = self._fetch(
            f"SELECT {VOTE_COLUMNS} FROM votes "
            "WHERE power_source IS NULL OR power_source = 'nearest' ORDER BY delegate_id"
        )
        grouped: Dict[str, List[Vote]] = {}
        for row in rows:
            vote = Vote.model_validate(row)
            grouped.setdefault(vote.delegate_id, []).append(vote)
        return grouped

    def apply_vote_power(self, updates: Sequence[VotePowerUpdate]) -> BatchResult:
        sql = """
            UPDATE votes AS v SET voting_power = u.voting_power, power_source = u.source
            FROM (VALUES %s) AS u(vote_tx_hash, voting_power, source)
            WHERE v.vote_tx_hash = u.vote_tx_hash
              AND v.power_source IS DISTINCT FROM 'exact'
        """

        def write(chunk: List[VotePowerUpdate]) -> None:
            rows = [(u.vote_tx_hash, u.voting_power, u.source.value) for u in chunk]
            self._execute_values(sql, rows, template="(%s, %s::bigint, %s)")
        return self._write_batches("vote power", updates, write)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_proposal(row: Dict[str, Any]) -> Proposal:
        return Proposal.model_validate({**row["payload"], "ai_summary": row.get("ai_summary")})

    def upsert_proposals(self, proposals: Sequence[Proposal]) -> BatchResult:
        sql = """
            INSERT INTO proposals (tx_hash, proposal_index, payload, ai_summary, block_time) VALUES %s
            ON CONFLICT (tx_hash, proposal_index) DO UPDATE SET
                payload = EXCLUDED.payload,
                ai_summary = COALESCE(EXCLUDED.ai_summary, proposals.ai_summary),
                block_time = EXCLUDED.block_time,
                updated_at = now()
        """

        def write(chunk: List[Proposal]) -> None:
            rows = [
                (
                    p.tx_hash, p.proposal_index,
                    Json(p.model_dump(mode="json", exclude={"ai_summary"})),
                    p.ai_summary, p.block_time,
                )
                for p in chunk
            ]
            self._execute_values(sql, rows)
        return self._write_batches("proposals", proposals, write)

    def get_proposals(self) -> List[Proposal]:
        rows = self._fetch("SELECT payload, ai_summary FROM proposals ORDER BY block_time DESC")
        return [self._row_to_proposal(row) for row in rows]

    def update_vote_tallies(self, tallies: Dict[ProposalKey, Dict[str, int]]) -> BatchResult:
        sql = """
            UPDATE proposals AS p SET yes_count = u.yes, no_count = u.no, abstain_count = u.abstain
            FROM (VALUES %s) AS u(tx_hash, proposal_index, yes, no, abstain)
            WHERE p.tx_hash = u.tx_hash AND p.proposal_index = u.proposal_index
        """

        def write(chunk) -> None:
            rows = [
                (tx_hash, index, t.get("Yes", 0), t.get("No", 0), t.get("Abstain", 0))
                for (tx_hash, index), t in chunk
            ]
            self._execute_values(sql, rows, template="(%s, %s::integer, %s::integer, %s::integer, %s::integer)")
        return self._write_batches("vote tallies", list(tallies.items()), write)

    def get_vote_tallies(self) -> Dict[ProposalKey, Dict[str, int]]:
        rows = self._fetch("SELECT tx_hash, proposal_index, yes_count, no_count, abstain_count FROM proposals")
        return {
            (row["tx_hash"], row["proposal_index"]): {
                "Yes": row["yes_count"], "No": row["no_count"], "Abstain": row["abstain_count"],
            }
            for row in rows
        }

    def update_proposal_summary(self, key: ProposalKey, summary: str) -> None:
        self._execute(
            "UPDATE proposals SET ai_summary = %s WHERE tx_hash = %s AND proposal_index = %s",
            (summary, key[0], key[1]),
        )

    # ------------------------------------------------------------------
    # Power snapshots & score history
    # ------------------------------------------------------------------

    def upsert_power_snapshots(self, snapshots: Sequence[PowerSnapshot]) -> BatchResult:
        sql = """
            INSERT INTO power_snapshots (delegate_id, epoch_no, amount) VALUES %s
            ON CONFLICT (delegate_id, epoch_no) DO NOTHING
        """

        def write(chunk: List[PowerSnapshot]) -> None:
            self._execute_values(sql, [(s.delegate_id, s.epoch_no, s.amount) for s in chunk])
        return self._write_batches("power snapshots", snapshots, write)

    def get_power_snapshots(self, delegate_id: str) -> List[PowerSnapshot]:
        rows = self._fetch(
            "SELECT delegate_id, epoch_no, amount FROM power_snapshots WHERE delegate_id = %s ORDER BY epoch_no",
            (delegate_id,),
        )
        return [PowerSnapshot.model_validate(row) for row in rows]

    def upsert_score_history(self, entries: Sequence[ScoreHistoryEntry]) -> BatchResult:
        sql = """
            INSERT INTO score_history (delegate_id, snapshot_date, score, effective_participation,
                                       rationale_rate, reliability_score, profile_completeness) VALUES %s
            ON CONFLICT (delegate_id, snapshot_date) DO UPDATE SET
                score = EXCLUDED.score,
                effective_participation = EXCLUDED.effective_participation,
                rationale_rate = EXCLUDED.rationale_rate,
                reliability_score = EXCLUDED.reliability_score,
                profile_completeness = EXCLUDED.profile_completeness
        """

        def write(chunk: List[ScoreHistoryEntry]) -> None:
            rows = [
                (e.delegate_id, e.snapshot_date, e.score, e.effective_participation,
                 e.rationale_rate, e.reliability_score, e.profile_completeness)
                for e in chunk
            ]
            self._execute_values(sql, rows)
        return self._write_batches("score history", entries, write)

    def get_score_history(self, delegate_id: str) -> List[ScoreHistoryEntry]:
        rows = self._fetch(
            "SELECT * FROM score_history WHERE delegate_id = %s ORDER BY snapshot_date", (delegate_id,)
        )
        return [ScoreHistoryEntry.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Rationales
    # ------------------------------------------------------------------

    def get_rationales(self, vote_tx_hashes: Optional[Iterable[str]] = None) -> Dict[str, VoteRationale]:
        if vote_tx_hashes is None:
            rows = self._fetch("SELECT * FROM vote_rationales")
        else:
            hashes = list(vote_tx_hashes)
            if not hashes:
                return {}
            rows = self._fetch("SELECT * FROM vote_rationales WHERE vote_tx_hash = ANY(%s)", (hashes,))
        return {row["vote_tx_hash"]: VoteRationale.model_validate(row) for row in rows}

    def upsert_rationales(self, rationales: Sequence[VoteRationale]) -> BatchResult:
        sql = """
            INSERT INTO vote_rationales (vote_tx_hash, delegate_id, meta_url, rationale_text,
                                         ai_summary, hash_verified, fetched_at) VALUES %s
            ON CONFLICT (vote_tx_hash) DO UPDATE SET
                meta_url = EXCLUDED.meta_url,
                rationale_text = EXCLUDED.rationale_text,
                ai_summary = COALESCE(EXCLUDED.ai_summary, vote_rationales.ai_summary),
                hash_verified = EXCLUDED.hash_verified,
                fetched_at = EXCLUDED.fetched_at
        """

        def write(chunk: List[VoteRationale]) -> None:
            rows = [
                (r.vote_tx_hash, r.delegate_id, r.meta_url, r.rationale_text,
                 r.ai_summary, r.hash_verified, r.fetched_at)
                for r in chunk
            ]
            self._execute_values(sql, rows)
        return self._write_batches("rationales", rationales, write)

    def update_rationale_summary(self, vote_tx_hash: str, summary: str) -> None:
        self._execute(
            "UPDATE vote_rationales SET ai_summary = %s WHERE vote_tx_hash = %s", (summary, vote_tx_hash)
        )

    # ------------------------------------------------------------------
    # Profile link checks
    # ------------------------------------------------------------------

    def upsert_link_checks(self, checks: Sequence[SocialLinkCheck]) -> BatchResult:
        sql = """
            INSERT INTO social_link_checks (delegate_id, uri, status, http_status, last_checked_at) VALUES %s
            ON CONFLICT (delegate_id, uri) DO UPDATE SET
                status = EXCLUDED.status,
                http_status = EXCLUDED.http_status,
                last_checked_at = EXCLUDED.last_checked_at
        """

        def write(chunk: List[SocialLinkCheck]) -> None:
            rows = [(c.delegate_id, c.uri, c.status.value, c.http_status, c.last_checked_at) for c in chunk]
            self._execute_values(sql, rows)
        return self._write_batches("link checks", checks, write)

    def get_link_checks(self, delegate_id: Optional[str] = None) -> List[SocialLinkCheck]:
        if delegate_id is None:
            rows = self._fetch("SELECT * FROM social_link_checks ORDER BY delegate_id, uri")
        else:
            rows = self._fetch(
                "SELECT * FROM social_link_checks WHERE delegate_id = %s ORDER BY uri", (delegate_id,)
            )
        return [SocialLinkCheck.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Sync log & diagnostics
    # ------------------------------------------------------------------

    def start_sync_run(self, run: SyncRun) -> int:
        rows = self._fetch(
            "INSERT INTO sync_log (sync_type, started_at, metrics) VALUES (%s, %s, %s) RETURNING id",
            (run.sync_type.value, run.started_at, Json(run.metrics)),
        )
        return rows[0]["id"]

    def finish_sync_run(self, run: SyncRun) -> None:
        self._execute(
            """
            UPDATE sync_log SET finished_at = %s, duration_ms = %s, success = %s,
                                error_message = %s, metrics = %s
            WHERE id = %s
            """,
            (run.finished_at, run.duration_ms, run.success, run.error_message, Json(run.metrics), run.id),
        )

    def get_sync_runs(self, limit: int = 10) -> List[SyncRun]:
        rows = self._fetch("SELECT * FROM sync_log ORDER BY id DESC LIMIT %s", (limit,))
        return [SyncRun.model_validate(row) for row in rows]

    def get_coverage_counts(self) -> Dict[str, int]:
        rows = self._fetch(
            """
            SELECT
                (SELECT count(*) FROM votes) AS votes_total,
                (SELECT count(*) FROM votes WHERE power_source = 'exact') AS votes_power_exact,
                (SELECT count(*) FROM votes WHERE power_source = 'nearest') AS votes_power_nearest,
                (SELECT count(*) FROM vote_rationales WHERE hash_verified IS NOT NULL) AS rationales_hash_checked,
                (SELECT count(*) FROM vote_rationales WHERE hash_verified) AS rationales_hash_verified,
                (SELECT count(*) FROM vote_rationales WHERE rationale_text IS NOT NULL) AS rationales_with_text,
                (SELECT count(*) FROM vote_rationales
                    WHERE rationale_text IS NOT NULL AND ai_summary IS NOT NULL) AS rationales_summarized,
                (SELECT count(*) FROM proposals) AS proposals_total,
                (SELECT count(*) FROM proposals WHERE ai_summary IS NOT NULL) AS proposals_summarized
            """
        )
        return {key: int(value) for key, value in rows[0].items()}
