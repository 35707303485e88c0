"""
Run Ledger

SQLite record of every fusion run, its consensus and the model outputs
behind it.

PRINCIPLES:
===========
1. At most one pending, running or completed run per (subject, period),
   enforced by a partial unique index
2. Terminal state, consensus and outputs are written in one transaction
3. Terminal runs are never mutated
4. Consensus rows are never deleted; newer periods supersede older ones
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union
import json
import logging
import sqlite3
import threading

from models.contracts import (
    ConsensusResult, DuplicateRun, InvalidRunTransition, ModelKind, ModelOutput,
    PeriodKey, RunNotFound,
)
from models.escalation import REASON_COLD_START, SubjectEscalationHistory

from ..contracts.base import TimeRange
from ..contracts.runs import ALLOWED_TRANSITIONS, RunRecord, RunStatus, run_id_for

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = "('pending', 'running', 'completed')"
STALE_RUN_DETAIL = "stale_run_recovered"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RunLedger:
    """
    Persistent run ledger.

    One connection is shared by every caller and serialized by a lock,
    so the ledger works the same for a file path and for ":memory:".
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_conn() as conn:
            conn.executescript(f'''
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    period_start TEXT NOT NULL,
                    period_end TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    models_invoked TEXT NOT NULL DEFAULT '[]',
                    tokens_spent INTEGER NOT NULL DEFAULT 0,
                    escalated INTEGER NOT NULL DEFAULT 0,
                    escalation_reasons TEXT NOT NULL DEFAULT '[]',
                    degraded INTEGER NOT NULL DEFAULT 0,
                    error_detail TEXT
                );

                CREATE TABLE IF NOT EXISTS consensus_results (
                    run_id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL,
                    period_start TEXT NOT NULL,
                    period_end TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    aggregate_confidence REAL NOT NULL,
                    degraded INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    FOREIGN KEY (run_id) REFERENCES runs(run_id)
                );

                CREATE TABLE IF NOT EXISTS model_outputs (
                    run_id TEXT NOT NULL,
                    model_kind TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    tokens_consumed INTEGER NOT NULL,
                    checksum TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (run_id, model_kind),
                    FOREIGN KEY (run_id) REFERENCES runs(run_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_one_active
                    ON runs(subject_id, period_start)
                    WHERE status IN {_ACTIVE_STATUSES};
                CREATE INDEX IF NOT EXISTS idx_runs_subject ON runs(subject_id, period_start);
                CREATE INDEX IF NOT EXISTS idx_consensus_subject
                    ON consensus_results(subject_id, period_start);
            ''')

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        """Serialized transaction on the shared connection."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            self._conn.close()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def begin_run(
        self,
        subject_id: str,
        organization_id: str,
        period: PeriodKey,
        started_at: Optional[datetime] = None
    ) -> RunRecord:
        """
        Create a pending run.

        Raises:
            DuplicateRun: a pending, running or completed run exists for
                the same subject and period
        """
        started_at = started_at or _now()
        with self._get_conn() as conn:
            attempt = conn.execute(
                'SELECT COUNT(*) FROM runs WHERE subject_id = ? AND period_start = ?',
                (subject_id, period.start.isoformat())
            ).fetchone()[0] + 1
            run_id = run_id_for(subject_id, period, attempt)
            try:
                conn.execute('''
                    INSERT INTO runs
                    (run_id, subject_id, organization_id, period_start, period_end,
                     attempt, status, started_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    run_id,
                    subject_id,
                    organization_id,
                    period.start.isoformat(),
                    period.end.isoformat(),
                    attempt,
                    RunStatus.PENDING.value,
                    started_at.isoformat(),
                ))
            except sqlite3.IntegrityError:
                raise DuplicateRun(
                    "Run already active or completed for period",
                    subject_id=subject_id, period=period.label,
                )
        logger.debug("Run %s pending for %s", run_id, subject_id)
        return self.get_run(run_id)

    def mark_running(self, run_id: str) -> RunRecord:
        with self._get_conn() as conn:
            self._transition(conn, run_id, RunStatus.RUNNING)
        return self.get_run(run_id)

    def note_escalation(self, run_id: str, reasons: Iterable[str]) -> RunRecord:
        """Record that a run was eligible for escalation and why."""
        with self._get_conn() as conn:
            current = self._status(conn, run_id)
            if current.is_terminal:
                raise InvalidRunTransition(
                    "Run is terminal", run_id=run_id, status=current.value
                )
            conn.execute(
                'UPDATE runs SET escalated = 1, escalation_reasons = ? WHERE run_id = ?',
                (json.dumps(list(reasons)), run_id)
            )
        return self.get_run(run_id)

    def complete_run(
        self,
        run_id: str,
        consensus: ConsensusResult,
        outputs: Iterable[ModelOutput],
        tokens_spent: int = 0,
        completed_at: Optional[datetime] = None
    ) -> RunRecord:
        """Write terminal state, consensus and model outputs atomically."""
        completed_at = completed_at or _now()
        outputs = list(outputs)
        with self._get_conn() as conn:
            self._transition(conn, run_id, RunStatus.COMPLETED)
            row = conn.execute(
                'SELECT period_start, period_end FROM runs WHERE run_id = ?', (run_id,)
            ).fetchone()
            conn.execute('''
                UPDATE runs SET completed_at = ?, models_invoked = ?, tokens_spent = ?,
                    degraded = ?, error_detail = ?
                WHERE run_id = ?
            ''', (
                completed_at.isoformat(),
                json.dumps([m.value for m in consensus.contributing_models]),
                tokens_spent,
                int(consensus.degraded),
                consensus.degradation_reason,
                run_id,
            ))
            conn.execute('''
                INSERT INTO consensus_results
                (run_id, subject_id, period_start, period_end, created_at,
                 aggregate_confidence, degraded, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                run_id,
                consensus.subject_id,
                row['period_start'],
                row['period_end'],
                completed_at.isoformat(),
                consensus.aggregate_confidence,
                int(consensus.degraded),
                json.dumps(consensus.to_dict(), sort_keys=True),
            ))
            conn.executemany('''
                INSERT INTO model_outputs
                (run_id, model_kind, confidence, tokens_consumed, checksum, payload)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', [
                (
                    run_id,
                    o.model_kind.value,
                    o.confidence,
                    o.tokens_consumed,
                    o.checksum,
                    json.dumps(o.to_dict(), sort_keys=True),
                )
                for o in outputs
            ])
        return self.get_run(run_id)

    def fail_run(
        self,
        run_id: str,
        error_detail: str,
        models_invoked: Iterable[ModelKind] = (),
        tokens_spent: int = 0
    ) -> RunRecord:
        return self._finish(
            run_id, RunStatus.FAILED, error_detail, models_invoked, tokens_spent
        )

    def skip_run(
        self,
        run_id: str,
        status: RunStatus,
        detail: Optional[str] = None,
        models_invoked: Iterable[ModelKind] = (),
        tokens_spent: int = 0
    ) -> RunRecord:
        if status not in (RunStatus.SKIPPED_BUDGET, RunStatus.SKIPPED_NO_DATA):
            raise ValueError(f"Not a skip status: {status.value}")
        return self._finish(run_id, status, detail, models_invoked, tokens_spent)

    def _finish(
        self,
        run_id: str,
        status: RunStatus,
        detail: Optional[str],
        models_invoked: Iterable[ModelKind],
        tokens_spent: int
    ) -> RunRecord:
        with self._get_conn() as conn:
            self._transition(conn, run_id, status)
            conn.execute('''
                UPDATE runs SET completed_at = ?, error_detail = ?, models_invoked = ?,
                    tokens_spent = ?
                WHERE run_id = ?
            ''', (
                _now().isoformat(),
                detail,
                json.dumps([m.value for m in models_invoked]),
                tokens_spent,
                run_id,
            ))
        return self.get_run(run_id)

    def _status(self, conn: sqlite3.Connection, run_id: str) -> RunStatus:
        row = conn.execute('SELECT status FROM runs WHERE run_id = ?', (run_id,)).fetchone()
        if row is None:
            raise RunNotFound("Unknown run", run_id=run_id)
        return RunStatus(row['status'])

    def _transition(self, conn: sqlite3.Connection, run_id: str, target: RunStatus):
        current = self._status(conn, run_id)
        if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidRunTransition(
                f"Cannot move run from {current.value} to {target.value}",
                run_id=run_id,
            )
        conn.execute(
            'UPDATE runs SET status = ? WHERE run_id = ? AND status = ?',
            (target.value, run_id, current.value)
        )

    # =========================================================================
    # RECOVERY
    # =========================================================================

    def find_stale(self, older_than: datetime) -> List[RunRecord]:
        """Pending or running runs started before older_than."""
        with self._get_conn() as conn:
            rows = conn.execute('''
                SELECT * FROM runs
                WHERE status IN (?, ?) AND started_at < ?
                ORDER BY started_at
            ''', (
                RunStatus.PENDING.value, RunStatus.RUNNING.value, older_than.isoformat(),
            )).fetchall()
        return [self._row_to_run(r) for r in rows]

    def recover_stale(self, older_than: datetime) -> List[RunRecord]:
        """
        Fail every run left pending or running since before older_than.

        Frees the (subject, period) slot held by a run whose worker died
        between begin_run() and its terminal write.
        """
        recovered = []
        for run in self.find_stale(older_than):
            try:
                recovered.append(self.fail_run(run.run_id, STALE_RUN_DETAIL))
            except InvalidRunTransition:
                # finished between the scan and the update
                continue
            logger.warning("Recovered stale run %s for %s", run.run_id, run.subject_id)
        return recovered

    # =========================================================================
    # QUERIES
    # =========================================================================

    def attempt_count(self, subject_id: str, period: PeriodKey) -> int:
        with self._get_conn() as conn:
            return conn.execute(
                'SELECT COUNT(*) FROM runs WHERE subject_id = ? AND period_start = ?',
                (subject_id, period.start.isoformat())
            ).fetchone()[0]

    def status_counts(self) -> Dict[str, int]:
        with self._get_conn() as conn:
            rows = conn.execute(
                'SELECT status, COUNT(*) AS n FROM runs GROUP BY status'
            ).fetchall()
        return {r['status']: r['n'] for r in rows}

    def get_run(self, run_id: str) -> RunRecord:
        with self._get_conn() as conn:
            row = conn.execute('SELECT * FROM runs WHERE run_id = ?', (run_id,)).fetchone()
        if row is None:
            raise RunNotFound("Unknown run", run_id=run_id)
        return self._row_to_run(row)

    def find_active_run(self, subject_id: str, period: PeriodKey) -> Optional[RunRecord]:
        with self._get_conn() as conn:
            row = conn.execute(f'''
                SELECT * FROM runs
                WHERE subject_id = ? AND period_start = ? AND status IN {_ACTIVE_STATUSES}
            ''', (subject_id, period.start.isoformat())).fetchone()
        return self._row_to_run(row) if row else None

    def get_run_history(
        self,
        subject_id: str,
        time_range: Optional[TimeRange] = None
    ) -> List[RunRecord]:
        """Runs of a subject whose period starts inside time_range, oldest first."""
        query = 'SELECT * FROM runs WHERE subject_id = ?'
        params: Tuple = (subject_id,)
        if time_range is not None:
            query += ' AND period_start >= ? AND period_start <= ?'
            params += (time_range.start.to_iso(), time_range.end.to_iso())
        query += ' ORDER BY period_start, attempt'
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_run(r) for r in rows]

    def get_latest_consensus(self, subject_id: str) -> Optional[ConsensusResult]:
        with self._get_conn() as conn:
            row = conn.execute('''
                SELECT payload FROM consensus_results
                WHERE subject_id = ?
                ORDER BY period_start DESC, created_at DESC
                LIMIT 1
            ''', (subject_id,)).fetchone()
        return ConsensusResult.from_dict(json.loads(row['payload'])) if row else None

    def get_consensus_history(self, subject_id: str) -> List[Tuple[PeriodKey, ConsensusResult]]:
        """Every consensus of a subject with its period, oldest first."""
        with self._get_conn() as conn:
            rows = conn.execute('''
                SELECT period_start, period_end, payload FROM consensus_results
                WHERE subject_id = ?
                ORDER BY period_start, created_at
            ''', (subject_id,)).fetchall()
        return [
            (
                PeriodKey(_parse(r['period_start']), _parse(r['period_end'])),
                ConsensusResult.from_dict(json.loads(r['payload'])),
            )
            for r in rows
        ]

    def get_model_outputs(self, run_id: str) -> List[dict]:
        with self._get_conn() as conn:
            rows = conn.execute(
                'SELECT payload FROM model_outputs WHERE run_id = ? ORDER BY model_kind',
                (run_id,)
            ).fetchall()
        return [json.loads(r['payload']) for r in rows]

    def get_escalation_history(self, subject_id: str) -> SubjectEscalationHistory:
        with self._get_conn() as conn:
            completed = conn.execute(
                'SELECT COUNT(*) FROM runs WHERE subject_id = ? AND status = ?',
                (subject_id, RunStatus.COMPLETED.value)
            ).fetchone()[0]
            reason_rows = conn.execute(
                'SELECT escalation_reasons FROM runs WHERE subject_id = ? AND escalated = 1',
                (subject_id,)
            ).fetchall()
        cold_start_used = any(
            REASON_COLD_START in json.loads(r['escalation_reasons']) for r in reason_rows
        )
        return SubjectEscalationHistory(
            subject_id=subject_id,
            completed_periods=completed,
            cold_start_used=cold_start_used,
        )

    def _row_to_run(self, row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            run_id=row['run_id'],
            subject_id=row['subject_id'],
            organization_id=row['organization_id'],
            period=PeriodKey(_parse(row['period_start']), _parse(row['period_end'])),
            status=RunStatus(row['status']),
            started_at=_parse(row['started_at']),
            completed_at=_parse(row['completed_at']),
            models_invoked=tuple(ModelKind(m) for m in json.loads(row['models_invoked'])),
            tokens_spent=row['tokens_spent'],
            escalated=bool(row['escalated']),
            escalation_reasons=tuple(json.loads(row['escalation_reasons'])),
            degraded=bool(row['degraded']),
            error_detail=row['error_detail'],
            attempt=row['attempt'],
        )
