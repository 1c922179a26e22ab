"""
ProxyProbe - Shared State
Allow-list gate, scan session table and intercept store.

Each registry is an explicitly owned object with its own lock: tool
operations run on the API event loop while intercept records arrive from
the mitmproxy thread.
"""

import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional
from urllib.parse import urlsplit


MAX_INTERCEPTED = 100
# Finished sessions kept for lookup; the oldest are pruned first
MAX_FINISHED_SCANS = 100

SCAN_RUNNING = "running"
SCAN_COMPLETED = "completed"
SCAN_FAILED = "failed"


class InvalidPatternError(ValueError):
    """Raised when an intercept pattern does not compile."""


def hostname_of(url: str) -> Optional[str]:
    """Lower-cased hostname of an absolute URL, None when it does not parse."""
    try:
        parsed = urlsplit(url)
        host = parsed.hostname
    except ValueError:
        return None
    if not parsed.scheme or not host:
        return None
    return host.lower()


# ── Target Gate ─────────────────────────────────────────────────

class TargetGate:
    """Allow-list of in-scope hosts. An empty list permits every target."""

    def __init__(self, targets: Optional[List[str]] = None):
        self._lock = threading.Lock()
        self._targets: List[str] = []
        if targets:
            self.set_targets(targets)

    def set_targets(self, targets: List[str]) -> List[str]:
        """Replace the allow-list wholesale and return the normalized entries."""
        normalized = [t.strip().lower() for t in targets if t and t.strip()]
        with self._lock:
            self._targets = normalized
        return list(normalized)

    def targets(self) -> List[str]:
        with self._lock:
            return list(self._targets)

    def is_allowed(self, url: str) -> bool:
        targets = self.targets()
        if not targets:
            return True

        host = hostname_of(url)
        if host is None:
            return False
        return any(host == t or host.endswith(f".{t}") for t in targets)


# ── Scan Registry ───────────────────────────────────────────────

@dataclass
class ScanSession:
    """One run of the vulnerability scanner."""
    id: str
    target_url: str
    scan_types: List[str]
    start_time: float = field(default_factory=time.time)
    status: str = SCAN_RUNNING
    progress: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.target_url,
            "scanTypes": list(self.scan_types),
            "startTime": self.start_time,
            "status": self.status,
            "progress": self.progress,
        }


class ScanRegistry:
    """In-flight and finished scan sessions, keyed by id."""

    def __init__(self, max_finished: int = MAX_FINISHED_SCANS):
        self._lock = threading.Lock()
        self._scans: Dict[str, ScanSession] = {}
        self._max_finished = max_finished

    def create(self, scan_id: str, url: str, scan_types: List[str]) -> ScanSession:
        scan = ScanSession(id=scan_id, target_url=url, scan_types=list(scan_types))
        with self._lock:
            self._scans[scan_id] = scan
        return scan

    def update_progress(self, scan_id: str, progress: int):
        with self._lock:
            scan = self._scans.get(scan_id)
            if scan and scan.status == SCAN_RUNNING:
                scan.progress = max(0, min(100, int(progress)))

    def complete(self, scan_id: str, status: str):
        """Move a session to its terminal status. Only the first call has effect."""
        if status not in (SCAN_COMPLETED, SCAN_FAILED):
            raise ValueError(f"Invalid terminal status: {status}")
        with self._lock:
            scan = self._scans.get(scan_id)
            if scan and scan.status == SCAN_RUNNING:
                scan.status = status
                scan.progress = 100
                self._prune()

    def _prune(self):
        # Caller holds the lock; dict order is creation order
        finished = [k for k, s in self._scans.items() if s.status != SCAN_RUNNING]
        for scan_id in finished[:max(0, len(finished) - self._max_finished)]:
            del self._scans[scan_id]

    def get(self, scan_id: str) -> Optional[ScanSession]:
        with self._lock:
            return self._scans.get(scan_id)

    def list_active(self) -> List[ScanSession]:
        with self._lock:
            return [s for s in self._scans.values() if s.status == SCAN_RUNNING]


# ── Intercept Registry ──────────────────────────────────────────

@dataclass
class InterceptPattern:
    """A regex rule matched against live `host + path` strings."""
    id: str
    pattern: str
    regex: "re.Pattern"
    modifications: Dict = field(default_factory=dict)
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "enabled": self.enabled,
            "modifications": dict(self.modifications),
        }


@dataclass
class InterceptedRequest:
    """One observed live request."""
    id: str
    timestamp: float
    host: str
    path: str
    method: str
    matched: bool

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "host": self.host,
            "path": self.path,
            "method": self.method,
            "matched": self.matched,
        }


class InterceptRegistry:
    """Intercept patterns plus a bounded newest-first buffer of observed requests."""

    def __init__(self, capacity: int = MAX_INTERCEPTED):
        self._lock = threading.Lock()
        self._patterns: Dict[str, InterceptPattern] = {}
        self._intercepted: Deque[InterceptedRequest] = deque(maxlen=capacity)

    def add_pattern(self, pattern_id: str, pattern: str,
                    modifications: Optional[Dict] = None,
                    enabled: bool = True) -> InterceptPattern:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise InvalidPatternError(f"Invalid regex pattern: {e}") from e

        entry = InterceptPattern(
            id=pattern_id,
            pattern=pattern,
            regex=regex,
            modifications=dict(modifications or {}),
            enabled=enabled,
        )
        with self._lock:
            self._patterns[pattern_id] = entry
        return entry

    def remove_pattern(self, pattern_id: str) -> bool:
        with self._lock:
            return self._patterns.pop(pattern_id, None) is not None

    def list_patterns(self) -> List[InterceptPattern]:
        with self._lock:
            return list(self._patterns.values())

    def record_intercepted(self, record: InterceptedRequest):
        # appendleft on a bounded deque drops the oldest record from the tail
        with self._lock:
            self._intercepted.appendleft(record)

    def list_intercepted(self, limit: Optional[int] = None) -> List[InterceptedRequest]:
        with self._lock:
            items = list(self._intercepted)
        return items[:limit] if limit is not None else items

    def count(self) -> int:
        with self._lock:
            return len(self._intercepted)


# ── Aggregate ───────────────────────────────────────────────────

class ProbeState:
    """Owner of the three registries shared by the tool operations."""

    def __init__(self, allowed_targets: Optional[List[str]] = None):
        self.gate = TargetGate(allowed_targets)
        self.scans = ScanRegistry()
        self.intercepts = InterceptRegistry()

    def status(self) -> dict:
        return {
            "activeScans": len(self.scans.list_active()),
            "interceptedRequests": self.intercepts.count(),
            "allowedTargets": self.gate.targets(),
            "interceptPatterns": len(self.intercepts.list_patterns()),
        }
