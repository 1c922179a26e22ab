"""
ProxyProbe - Database & Logging Manager
SQLite-based storage for HTTP exchanges (proxied and probed) and findings.
"""

import aiosqlite
import json
import time
from pathlib import Path
from typing import Optional, List, Dict

from proxyprobe.config import LOGS_DIR


DB_PATH = LOGS_DIR / "proxyprobe.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS http_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    method TEXT NOT NULL,
    scheme TEXT DEFAULT 'https',
    host TEXT,
    port INTEGER,
    path TEXT,
    query TEXT DEFAULT '',
    request_headers TEXT,
    request_body TEXT,
    status_code INTEGER,
    response_headers TEXT,
    response_body TEXT,
    content_type TEXT,
    content_length INTEGER,
    duration_ms REAL,
    source TEXT DEFAULT 'proxy'
);

CREATE TABLE IF NOT EXISTS findings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    title TEXT NOT NULL,
    severity TEXT DEFAULT 'info',
    reporter TEXT DEFAULT '',
    description TEXT DEFAULT '',
    dedupe_key TEXT UNIQUE,
    source_request_id INTEGER,
    FOREIGN KEY (source_request_id) REFERENCES http_log(id)
);

CREATE INDEX IF NOT EXISTS idx_http_log_host ON http_log(host);
CREATE INDEX IF NOT EXISTS idx_http_log_status ON http_log(status_code);
CREATE INDEX IF NOT EXISTS idx_findings_reporter ON findings(reporter);
"""

MAX_BODY_CHARS = 50000


class LoggerDB:
    """Async SQLite database manager for exchanges and findings."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or DB_PATH
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self):
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @staticmethod
    def _decode_row(row) -> Dict:
        entry = dict(row)
        for key in ("request_headers", "response_headers"):
            try:
                entry[key] = json.loads(entry.get(key) or "{}")
            except ValueError:
                entry[key] = {}
        return entry

    # ── HTTP Logging ────────────────────────────────────────────

    async def log_request(self, method: str, host: str = "", path: str = "/",
                          scheme: str = "https", port: Optional[int] = None,
                          query: str = "",
                          request_headers: Optional[Dict] = None,
                          request_body: Optional[str] = None,
                          status_code: Optional[int] = None,
                          response_headers: Optional[Dict] = None,
                          response_body: Optional[str] = None,
                          content_type: str = "",
                          content_length: int = 0,
                          duration_ms: float = 0,
                          source: str = "proxy") -> int:
        """Log an HTTP request/response pair."""
        now = time.time()
        cursor = await self._db.execute(
            """INSERT INTO http_log
               (timestamp, method, scheme, host, port, path, query,
                request_headers, request_body, status_code,
                response_headers, response_body,
                content_type, content_length, duration_ms, source)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (now, method, scheme, host, port, path, query,
             json.dumps(request_headers or {}),
             request_body,
             status_code,
             json.dumps(response_headers or {}),
             response_body[:MAX_BODY_CHARS] if response_body else response_body,
             content_type, content_length, duration_ms, source)
        )
        await self._db.commit()
        return cursor.lastrowid

    async def get_http_logs(self, limit: int = 200) -> List[Dict]:
        """Get HTTP logs, newest first."""
        async with self._db.execute(
            "SELECT * FROM http_log ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._decode_row(r) for r in rows]

    async def get_http_log_detail(self, log_id: int) -> Optional[Dict]:
        """Get detailed HTTP log entry."""
        async with self._db.execute("SELECT * FROM http_log WHERE id = ?", (log_id,)) as cursor:
            row = await cursor.fetchone()
            return self._decode_row(row) if row else None

    # ── Findings ────────────────────────────────────────────────

    async def add_finding(self, title: str, description: str = "",
                          reporter: str = "", severity: str = "info",
                          source_request_id: Optional[int] = None,
                          dedupe_key: Optional[str] = None) -> Optional[int]:
        """Add a security finding. Returns None when the dedupe key already exists."""
        now = time.time()
        cursor = await self._db.execute(
            """INSERT OR IGNORE INTO findings
               (timestamp, title, severity, reporter, description,
                dedupe_key, source_request_id)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (now, title, severity, reporter, description,
             dedupe_key, source_request_id)
        )
        await self._db.commit()
        return cursor.lastrowid if cursor.rowcount else None

    async def get_findings(self, limit: int = 100) -> List[Dict]:
        """Get findings, newest first, with the host/path of their evidence request."""
        async with self._db.execute(
            """SELECT f.*, h.host AS host, h.path AS path
               FROM findings f
               LEFT JOIN http_log h ON h.id = f.source_request_id
               ORDER BY f.id DESC LIMIT ?""",
            (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]
