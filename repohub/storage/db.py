from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from repohub.sync.models import PackageInfo, PackageRecord, PlatformInfo
from repohub.sync.scopes import SyncScope

logger = logging.getLogger("store")

StoreProgress = Callable[[int, int], None]

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
UPSERT_PROGRESS_EVERY = 500


def to_db_ts(value: datetime) -> str:
    """Fixed-width UTC text so that SQL string comparison orders by time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_db_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    with closing(get_conn(db_path)) as conn:
        cur = conn.cursor()

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS platforms (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              package_manager TEXT DEFAULT '',
              description TEXT DEFAULT '',
              created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
              updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS packages (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              platform_id TEXT NOT NULL,
              repository TEXT,
              name TEXT NOT NULL,
              version TEXT DEFAULT '',
              description TEXT DEFAULT '',
              is_active INTEGER NOT NULL DEFAULT 1,
              last_seen_at TEXT,
              updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              scope TEXT,
              run_type TEXT,
              status TEXT,
              started_at TEXT,
              finished_at TEXT,
              summary_json TEXT
            )
            """
        )

        # One logical record per (platform, repository, name); NULL repository counts as a value.
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_packages_key "
            "ON packages(platform_id, IFNULL(repository, ''), name)"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_packages_scope ON packages(platform_id, repository, is_active)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_scope ON sync_runs(scope, id)")

        conn.commit()


def _scope_clause(scope: SyncScope) -> tuple[str, list]:
    platform = scope.platform_id.value
    if scope.platform_wide:
        return "platform_id = ?", [platform]
    if scope.repository is None:
        return "platform_id = ? AND repository IS NULL", [platform]
    return "platform_id = ? AND repository = ?", [platform, scope.repository]


def _package_from_row(row: sqlite3.Row) -> PackageInfo:
    return PackageInfo(
        id=row["id"],
        platform_id=row["platform_id"],
        repository=row["repository"],
        name=row["name"],
        version=row["version"] or "",
        description=row["description"] or "",
        is_active=bool(row["is_active"]),
        last_seen_at=from_db_ts(row["last_seen_at"]),
    )


def _platform_from_row(row: sqlite3.Row) -> PlatformInfo:
    return PlatformInfo(
        id=row["id"],
        name=row["name"],
        package_manager=row["package_manager"] or "",
        description=row["description"] or "",
    )


class SqlitePackageStore:
    """Package, platform and run-history persistence on a single SQLite file.

    A fresh connection is opened per operation so the store can be shared by
    background sync threads and request handlers.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        init_db(db_path)

    def _db(self):
        return get_conn(self.db_path)

    # packages ------------------------------------------------------------

    def upsert_packages(
        self,
        records: Sequence[PackageRecord],
        seen_at: datetime,
        progress: Optional[StoreProgress] = None,
    ) -> int:
        total = len(records)
        seen = to_db_ts(seen_at)
        with closing(self._db()) as conn:
            cur = conn.cursor()
            try:
                for i, rec in enumerate(records, start=1):
                    platform = rec.platform_id.value
                    cur.execute(
                        """
                        UPDATE packages
                        SET version = ?, description = ?, is_active = 1, last_seen_at = ?,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE platform_id = ? AND repository IS ? AND name = ?
                        """,
                        (rec.version, rec.description, seen, platform, rec.repository, rec.name),
                    )
                    if cur.rowcount == 0:
                        cur.execute(
                            """
                            INSERT INTO packages (platform_id, repository, name, version, description, is_active, last_seen_at)
                            VALUES (?, ?, ?, ?, ?, 1, ?)
                            """,
                            (platform, rec.repository, rec.name, rec.version, rec.description, seen),
                        )
                    if i % UPSERT_PROGRESS_EVERY == 0 or i == total:
                        # reported progress only ever counts committed rows
                        conn.commit()
                        if progress:
                            progress(i, total)
            except Exception:
                # no rollback: rows written before the failure stay
                conn.commit()
                logger.warning("upsert_interrupted total=%s", total)
                raise
        if progress and total == 0:
            progress(0, 0)
        return total

    def deactivate_unseen(self, scope: SyncScope, cutoff: datetime) -> int:
        clause, params = _scope_clause(scope)
        with closing(self._db()) as conn:
            cur = conn.execute(
                f"""
                UPDATE packages
                SET is_active = 0, updated_at = CURRENT_TIMESTAMP
                WHERE {clause}
                  AND is_active = 1
                  AND (last_seen_at IS NULL OR last_seen_at < ?)
                """,
                (*params, to_db_ts(cutoff)),
            )
            conn.commit()
            return cur.rowcount

    def delete_inactive(self, scope: SyncScope, cutoff: datetime) -> int:
        clause, params = _scope_clause(scope)
        with closing(self._db()) as conn:
            cur = conn.execute(
                f"""
                DELETE FROM packages
                WHERE {clause}
                  AND is_active = 0
                  AND last_seen_at IS NOT NULL AND last_seen_at < ?
                """,
                (*params, to_db_ts(cutoff)),
            )
            conn.commit()
            return cur.rowcount

    def list_packages(self, scope: SyncScope, include_inactive: bool = True) -> list[PackageInfo]:
        clause, params = _scope_clause(scope)
        if not include_inactive:
            clause += " AND is_active = 1"
        with closing(self._db()) as conn:
            rows = conn.execute(f"SELECT * FROM packages WHERE {clause} ORDER BY name", params).fetchall()
        return [_package_from_row(r) for r in rows]

    def count_packages(self, scope: SyncScope, active_only: bool = True) -> int:
        clause, params = _scope_clause(scope)
        if active_only:
            clause += " AND is_active = 1"
        with closing(self._db()) as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM packages WHERE {clause}", params).fetchone()
        return int(row["n"])

    def get_package(self, package_id: int) -> Optional[PackageInfo]:
        with closing(self._db()) as conn:
            row = conn.execute("SELECT * FROM packages WHERE id = ?", (package_id,)).fetchone()
        return _package_from_row(row) if row else None

    def update_package(self, package_id: int, fields: dict) -> Optional[PackageInfo]:
        allowed = {k: v for k, v in fields.items() if k in ("version", "description", "is_active") and v is not None}
        if allowed:
            if "is_active" in allowed:
                allowed["is_active"] = 1 if allowed["is_active"] else 0
            assignments = ", ".join(f"{k} = ?" for k in allowed)
            with closing(self._db()) as conn:
                conn.execute(
                    f"UPDATE packages SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*allowed.values(), package_id),
                )
                conn.commit()
        return self.get_package(package_id)

    def delete_package(self, package_id: int) -> bool:
        with closing(self._db()) as conn:
            cur = conn.execute("DELETE FROM packages WHERE id = ?", (package_id,))
            conn.commit()
            return cur.rowcount > 0

    # platforms -----------------------------------------------------------

    def ensure_platforms(self, rows: Iterable[dict]) -> int:
        inserted = 0
        with closing(self._db()) as conn:
            for row in rows:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO platforms (id, name, package_manager, description)
                    VALUES (?, ?, ?, ?)
                    """,
                    (row["id"], row["name"], row.get("package_manager", ""), row.get("description", "")),
                )
                inserted += cur.rowcount
            conn.commit()
        logger.info("platforms_ensured inserted=%s", inserted)
        return inserted

    def list_platforms(self) -> list[PlatformInfo]:
        with closing(self._db()) as conn:
            rows = conn.execute("SELECT * FROM platforms ORDER BY id").fetchall()
        return [_platform_from_row(r) for r in rows]

    def get_platform(self, platform_id: str) -> Optional[PlatformInfo]:
        with closing(self._db()) as conn:
            row = conn.execute("SELECT * FROM platforms WHERE id = ?", (platform_id,)).fetchone()
        return _platform_from_row(row) if row else None

    def create_platform(self, platform: PlatformInfo) -> Optional[PlatformInfo]:
        """Insert a platform row; returns None when the id already exists."""
        inserted = self.ensure_platforms([platform.model_dump()])
        return self.get_platform(platform.id) if inserted else None

    def update_platform(self, platform_id: str, fields: dict) -> Optional[PlatformInfo]:
        allowed = {
            k: v for k, v in fields.items() if k in ("name", "package_manager", "description") and v is not None
        }
        if allowed:
            assignments = ", ".join(f"{k} = ?" for k in allowed)
            with closing(self._db()) as conn:
                conn.execute(
                    f"UPDATE platforms SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*allowed.values(), platform_id),
                )
                conn.commit()
        return self.get_platform(platform_id)

    def delete_platform(self, platform_id: str) -> bool:
        with closing(self._db()) as conn:
            cur = conn.execute("DELETE FROM platforms WHERE id = ?", (platform_id,))
            conn.commit()
            return cur.rowcount > 0

    # run history ---------------------------------------------------------

    def record_run(
        self,
        scope: str,
        run_type: str,
        status: str,
        started_at: datetime,
        finished_at: datetime,
        summary: dict,
    ) -> int:
        with closing(self._db()) as conn:
            cur = conn.execute(
                """
                INSERT INTO sync_runs (scope, run_type, status, started_at, finished_at, summary_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    scope,
                    run_type,
                    status,
                    to_db_ts(started_at),
                    to_db_ts(finished_at),
                    json.dumps(summary, ensure_ascii=False, default=str),
                ),
            )
            conn.commit()
            return int(cur.lastrowid)

    def recent_runs(self, limit: int = 50, scope: Optional[str] = None) -> list[dict]:
        if limit <= 0:
            return []
        sql = "SELECT * FROM sync_runs"
        params: list = []
        if scope:
            sql += " WHERE scope = ?"
            params.append(scope)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with closing(self._db()) as conn:
            rows = conn.execute(sql, params).fetchall()

        out: list[dict] = []
        for row in rows:
            try:
                summary = json.loads(row["summary_json"] or "{}")
            except ValueError:
                summary = {"raw": row["summary_json"], "parse_error": True}
            out.append(
                {
                    "id": row["id"],
                    "scope": row["scope"],
                    "run_type": row["run_type"],
                    "status": row["status"],
                    "started_at": row["started_at"],
                    "finished_at": row["finished_at"],
                    "summary": summary,
                }
            )
        return out
