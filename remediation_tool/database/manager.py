"""
Run ledger backed by SQLite.

Stores every task attempt as an append-only run record, plus run metadata,
scan results and a snapshot of each run's targets. Target credentials in
the snapshot are encrypted at rest. Every record written for a run is also
mirrored to ``ledger.jsonl`` in that run's evidence directory.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from ..core.errors import LedgerWriteError
from ..core.models import Credentials, RunRecord, RunSummary, ScanResult, Target, TaskOutcome

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "remediation-tool"


class RunLedger:
    """
    Append-only record of every task attempt.

    All writes go through one writer section, so records appended
    concurrently by different target workers never interleave.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the ledger.

        Args:
            db_path: Path to SQLite database file (uses default if None)
        """
        if db_path:
            self.db_path = Path(db_path).expanduser()
        else:
            self.db_path = DEFAULT_DATA_DIR / "ledger.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._write_lock = threading.Lock()
        self._mirrors: Dict[str, Path] = {}

        # Encryption key for target credentials in run snapshots
        self.encryption_key = self._get_or_create_encryption_key()
        self.cipher = Fernet(self.encryption_key)

    def initialize(self) -> None:
        """Initialize database schema."""
        with self._connect() as conn:
            conn.executescript("""
                -- Pipeline runs
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    plan_name TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    resumed_from TEXT,
                    evidence_dir TEXT,
                    summary_json TEXT
                );

                -- One row per task attempt; never updated or deleted
                CREATE TABLE IF NOT EXISTS run_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    detail TEXT,
                    UNIQUE (run_id, target_id, task_id)
                );

                CREATE TRIGGER IF NOT EXISTS run_records_no_update
                BEFORE UPDATE ON run_records
                BEGIN SELECT RAISE(ABORT, 'run records are append-only'); END;

                CREATE TRIGGER IF NOT EXISTS run_records_no_delete
                BEFORE DELETE ON run_records
                BEGIN SELECT RAISE(ABORT, 'run records are append-only'); END;

                -- Scan payloads produced by external-scan tasks
                CREATE TABLE IF NOT EXISTS scan_results (
                    run_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    scan_json TEXT NOT NULL,
                    PRIMARY KEY (run_id, target_id, task_id)
                );

                -- Targets selected for a run
                CREATE TABLE IF NOT EXISTS run_targets (
                    run_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    target_id TEXT NOT NULL,
                    target_json TEXT NOT NULL,
                    credentials_encrypted BLOB,
                    PRIMARY KEY (run_id, target_id)
                );

                -- Indexes for ledger queries
                CREATE INDEX IF NOT EXISTS idx_records_run_id ON run_records(run_id);
                CREATE INDEX IF NOT EXISTS idx_records_target_id ON run_records(target_id);
                CREATE INDEX IF NOT EXISTS idx_records_stage ON run_records(stage);
                CREATE INDEX IF NOT EXISTS idx_runs_started_at ON runs(started_at);
            """)

    def start_run(self, summary: RunSummary) -> None:
        """
        Record the start of a run.

        Records appended for the run from now on are also mirrored to
        ``ledger.jsonl`` in the run's evidence directory.

        Args:
            summary: Run summary in its initial state

        Raises:
            LedgerWriteError: If the run cannot be recorded
        """
        if summary.evidence_dir:
            self._mirrors[summary.run_id] = Path(summary.evidence_dir) / "ledger.jsonl"

        with self._writer("start run"):
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO runs (run_id, plan_name, started_at, resumed_from, evidence_dir)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    summary.run_id,
                    summary.plan_name,
                    summary.started_at.isoformat(),
                    summary.resumed_from,
                    summary.evidence_dir
                ))

    def save_run_targets(self, run_id: str, targets: List[Target]) -> None:
        """
        Snapshot the targets selected for a run, credentials encrypted.

        Args:
            run_id: Run the targets belong to
            targets: Targets in dispatch order
        """
        with self._writer("save run targets"):
            with self._connect() as conn:
                for position, target in enumerate(targets):
                    credentials = target.credentials.model_dump_json()
                    conn.execute("""
                        INSERT INTO run_targets (run_id, position, target_id, target_json, credentials_encrypted)
                        VALUES (?, ?, ?, ?, ?)
                    """, (
                        run_id,
                        position,
                        target.id,
                        target.model_dump_json(exclude={'credentials'}),
                        self.cipher.encrypt(credentials.encode())
                    ))

    def finish_run(self, summary: RunSummary) -> None:
        """Store the final summary of a run."""
        with self._writer("finish run"):
            with self._connect() as conn:
                conn.execute("""
                    UPDATE runs SET finished_at = ?, summary_json = ? WHERE run_id = ?
                """, (
                    summary.finished_at.isoformat() if summary.finished_at else None,
                    summary.model_dump_json(),
                    summary.run_id
                ))

    def append(self, record: RunRecord) -> None:
        """
        Append one run record.

        Args:
            record: Task attempt to record

        Raises:
            LedgerWriteError: If the record cannot be persisted, including a
                second record for the same (run, target, task)
        """
        with self._writer(f"append record {record.run_id}/{record.target_id}/{record.task_id}"):
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO run_records (
                        run_id, target_id, stage, task_id, started_at, finished_at, outcome, detail
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.run_id,
                    record.target_id,
                    record.stage,
                    record.task_id,
                    record.started_at.isoformat(),
                    record.finished_at.isoformat(),
                    record.outcome.value,
                    record.detail
                ))
            mirror = self._mirrors.get(record.run_id)
            if mirror is not None:
                mirror.parent.mkdir(parents=True, exist_ok=True)
                with open(mirror, 'a', encoding='utf-8') as f:
                    f.write(record.model_dump_json() + "\n")

    def query(self, run_id: Optional[str] = None, target_id: Optional[str] = None,
              stage: Optional[str] = None) -> List[RunRecord]:
        """
        Query run records in append order.

        Args:
            run_id: Only records of this run
            target_id: Only records of this target
            stage: Only records of this stage

        Returns:
            List[RunRecord]: Matching records
        """
        clauses = []
        params = []
        for column, value in (("run_id", run_id), ("target_id", target_id), ("stage", stage)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM run_records {where} ORDER BY id", params).fetchall()
        return [self._build_record(row) for row in rows]

    def save_scan_result(self, run_id: str, task_id: str, scan: ScanResult) -> None:
        """Persist the scan payload of an external-scan task."""
        with self._writer(f"save scan {run_id}/{scan.target_id}/{task_id}"):
            with self._connect() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO scan_results (run_id, target_id, task_id, scan_json)
                    VALUES (?, ?, ?, ?)
                """, (run_id, scan.target_id, task_id, scan.model_dump_json()))

    def get_scan_result(self, run_id: str, target_id: str, task_id: str) -> Optional[ScanResult]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT scan_json FROM scan_results WHERE run_id = ? AND target_id = ? AND task_id = ?
            """, (run_id, target_id, task_id)).fetchone()
        if not row:
            return None
        return ScanResult.model_validate_json(row['scan_json'])

    def get_run(self, run_id: str) -> Optional[RunSummary]:
        """
        Retrieve a run summary by ID.

        Runs that never finished are returned with the metadata recorded at
        start and no target states.
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        if not row:
            return None
        return self._build_summary(row)

    def list_runs(self) -> List[RunSummary]:
        """All runs, most recent first."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM runs ORDER BY started_at DESC").fetchall()
        return [self._build_summary(row) for row in rows]

    def get_run_targets(self, run_id: str) -> List[Target]:
        """Targets snapshotted at the start of a run, credentials decrypted."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM run_targets WHERE run_id = ? ORDER BY position
            """, (run_id,)).fetchall()

        targets = []
        for row in rows:
            data = json.loads(row['target_json'])
            if row['credentials_encrypted']:
                try:
                    decrypted = self.cipher.decrypt(row['credentials_encrypted'])
                    data['credentials'] = Credentials.model_validate_json(decrypted)
                except InvalidToken:
                    logger.warning("Cannot decrypt stored credentials for target %s of run %s",
                                   row['target_id'], run_id)
            targets.append(Target.model_validate(data))
        return targets

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def _writer(self, action: str) -> Iterator[None]:
        """Single writer section; storage failures become LedgerWriteError."""
        with self._write_lock:
            try:
                yield
            except (sqlite3.Error, OSError) as e:
                logger.error("Ledger write failed (%s): %s", action, e)
                raise LedgerWriteError(f"Cannot {action}: {e}") from e

    def _build_record(self, row) -> RunRecord:
        return RunRecord(
            run_id=row['run_id'],
            target_id=row['target_id'],
            stage=row['stage'],
            task_id=row['task_id'],
            started_at=row['started_at'],
            finished_at=row['finished_at'],
            outcome=TaskOutcome(row['outcome']),
            detail=row['detail'] or ""
        )

    def _build_summary(self, row) -> RunSummary:
        if row['summary_json']:
            return RunSummary.model_validate_json(row['summary_json'])
        return RunSummary(
            run_id=row['run_id'],
            plan_name=row['plan_name'],
            started_at=row['started_at'],
            resumed_from=row['resumed_from'],
            evidence_dir=row['evidence_dir']
        )

    def _get_or_create_encryption_key(self) -> bytes:
        """Get existing encryption key or create a new one."""
        key_path = self.db_path.parent / ".encryption_key"

        if key_path.exists():
            return key_path.read_bytes()

        key = Fernet.generate_key()
        try:
            # Save key with restricted permissions
            key_path.touch(mode=0o600)
            key_path.write_bytes(key)
        except OSError as e:
            logger.warning("Cannot persist ledger encryption key (%s); stored credentials "
                           "will not be readable by later runs", e)
        return key
