import sqlite3
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

from models import CheckOutcome, IngestionRecord, RunSummary


@dataclass(frozen=True)
class Saved:
    record_id: int


@dataclass(frozen=True)
class Failed:
    reason: str


PersistResult = Union[Saved, Failed]


class ReportDB:
    """SQLite store for the product catalog, run bookkeeping and the
    per-ASIN daily availability reports.

    A single connection is held between `open()` and `close()`.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None

    def __enter__(self) -> "ReportDB":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def open(self) -> None:
        if self._connection is not None:
            return
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.row_factory = sqlite3.Row
            self._connection = conn
            self.ensure_schema()
        except sqlite3.Error:
            self._connection = None
            conn.close()
            raise

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("ReportDB is not open")
        return self._connection

    def ensure_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS products (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  asin TEXT UNIQUE NOT NULL,
                  comment TEXT,
                  created_at TEXT NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS runs (
                  run_id TEXT PRIMARY KEY,
                  started_at TEXT NOT NULL,
                  finished_at TEXT,
                  total INTEGER,
                  available INTEGER,
                  unavailable INTEGER,
                  errors INTEGER,
                  cancelled INTEGER NOT NULL DEFAULT 0,
                  failed INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS daily_reports (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  run_id TEXT,
                  asin TEXT NOT NULL,
                  header TEXT,
                  availability TEXT,
                  is_doggy INTEGER,
                  check_date TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_daily_reports_asin_date ON daily_reports(asin, check_date DESC);
                """
            )
            # Best-effort migration for stores created before runs.failed existed
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(runs)")}
            if "failed" not in columns:
                conn.execute("ALTER TABLE runs ADD COLUMN failed INTEGER NOT NULL DEFAULT 0")

    def add_asins(self, asins: Iterable[str]) -> Tuple[int, int]:
        """Insert ASINs into the catalog, ignoring ones already present.
        Returns (added, skipped)."""
        added = 0
        skipped = 0
        with self._conn() as conn:
            for asin in asins:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO products(asin) VALUES (?)",
                    (asin,),
                )
                if cur.rowcount > 0:
                    added += 1
                else:
                    skipped += 1
        return added, skipped

    def list_asins(self) -> List[str]:
        rows = self._conn().execute("SELECT asin FROM products ORDER BY id").fetchall()
        return [r["asin"] for r in rows]

    def begin_run(self, started_at_iso: str) -> str:
        run_id = str(uuid.uuid4())
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO runs(run_id, started_at) VALUES (?, ?)",
                (run_id, started_at_iso),
            )
        return run_id

    def finish_run(self, run_id: str, finished_at_iso: str, summary: Optional[RunSummary]) -> None:
        """Close out a run. Without a summary the run crashed: it is marked
        failed and its counters stay NULL."""
        if summary is None:
            with self._conn() as conn:
                conn.execute(
                    "UPDATE runs SET finished_at = ?, failed = 1 WHERE run_id = ?",
                    (finished_at_iso, run_id),
                )
            return
        with self._conn() as conn:
            conn.execute(
                """
                UPDATE runs SET
                  finished_at = ?,
                  total = ?,
                  available = ?,
                  unavailable = ?,
                  errors = ?,
                  cancelled = ?
                WHERE run_id = ?
                """,
                (
                    finished_at_iso,
                    summary.total,
                    summary.available,
                    summary.unavailable,
                    summary.errors,
                    1 if summary.cancelled else 0,
                    run_id,
                ),
            )

    def insert_report(
        self,
        outcome: CheckOutcome,
        check_date: str,
        *,
        run_id: Optional[str] = None,
    ) -> PersistResult:
        """Append one report row. Storage errors are returned as `Failed`
        so the caller can log them and move on."""
        availability = outcome.availability.value if outcome.availability is not None else None
        try:
            with self._conn() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO daily_reports(run_id, asin, header, availability, is_doggy, check_date)
                    VALUES(?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        outcome.asin,
                        outcome.header,
                        availability,
                        1 if outcome.is_blocked_page else 0,
                        check_date,
                    ),
                )
        except sqlite3.Error as e:
            return Failed(reason=str(e))
        return Saved(record_id=cur.lastrowid)

    def latest_reports(self, check_date: str) -> List[IngestionRecord]:
        """Most recent row per ASIN for one day; same-day re-runs append
        rows so older ones are shadowed here."""
        rows = self._conn().execute(
            """
            SELECT r.* FROM daily_reports r
            JOIN (
              SELECT asin, MAX(id) AS id FROM daily_reports
              WHERE check_date = ?
              GROUP BY asin
            ) latest ON r.id = latest.id
            ORDER BY r.asin
            """,
            (check_date,),
        ).fetchall()
        return [_to_record(r) for r in rows]

    def history(self, asin: str) -> List[IngestionRecord]:
        rows = self._conn().execute(
            "SELECT * FROM daily_reports WHERE asin = ? ORDER BY check_date ASC, id ASC",
            (asin,),
        ).fetchall()
        return [_to_record(r) for r in rows]


def _to_record(row: sqlite3.Row) -> IngestionRecord:
    return IngestionRecord(
        id=row["id"],
        run_id=row["run_id"],
        asin=row["asin"],
        header=row["header"],
        availability=row["availability"],
        is_doggy=None if row["is_doggy"] is None else bool(row["is_doggy"]),
        check_date=row["check_date"],
    )
