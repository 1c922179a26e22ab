"""
ProxyProbe - Finding Export
Queries stored findings and renders them as JSON, CSV or a Markdown report.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv", "markdown")
EXPORT_LIMIT = 100
DEFAULT_QUERY_LIMIT = 50

SEVERITY_ORDER = {
    "CRITICAL": 5,
    "HIGH": 4,
    "MEDIUM": 3,
    "LOW": 2,
    "INFO": 1,
}

CSV_HEADER = ("ID", "Title", "Description", "Reporter", "Host", "Path", "CreatedAt")
CSV_DESCRIPTION_CHARS = 200


def _iso(ts) -> str:
    if not ts:
        return ""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def normalize(row: Dict) -> Dict:
    return {
        "id": str(row.get("id", "")),
        "title": row.get("title") or "",
        "description": row.get("description") or "",
        "reporter": row.get("reporter") or "",
        "host": row.get("host") or "",
        "path": row.get("path") or "",
        "createdAt": _iso(row.get("timestamp")),
    }


def passes_severity(title: str, min_severity: str) -> bool:
    """Titles naming no severity always pass; otherwise one named severity must rank high enough."""
    threshold = SEVERITY_ORDER.get(min_severity, SEVERITY_ORDER["LOW"])
    named = [rank for word, rank in SEVERITY_ORDER.items() if word in title]
    if not named:
        return True
    return any(rank >= threshold for rank in named)


def _quoted(value: str, limit: Optional[int] = None) -> str:
    escaped = value.replace('"', '""')
    if limit is not None:
        escaped = escaped[:limit]
    return f'"{escaped}"'


def to_csv(findings: List[Dict]) -> str:
    lines = [",".join(CSV_HEADER)]
    for f in findings:
        lines.append(",".join([
            f["id"],
            _quoted(f["title"]),
            _quoted(f["description"], CSV_DESCRIPTION_CHARS),
            f["reporter"],
            f["host"],
            f["path"],
            f["createdAt"],
        ]))
    return "\n".join(lines)


def to_markdown(findings: List[Dict]) -> str:
    parts = [
        "# Security Findings Report\n\n",
        f"Generated: {datetime.now(timezone.utc).isoformat()}\n\n",
        f"Total Findings: {len(findings)}\n\n",
        "---\n\n",
    ]
    for f in findings:
        parts.append(f"## {f['title'] or 'Untitled Finding'}\n\n")
        parts.append(f"- **Reporter:** {f['reporter'] or 'Unknown'}\n")
        parts.append(f"- **Host:** {f['host'] or 'Unknown'}\n")
        parts.append(f"- **Path:** {f['path'] or '/'}\n")
        parts.append(f"- **Created:** {f['createdAt'] or 'Unknown'}\n\n")
        if f["description"]:
            parts.append(f"### Description\n\n{f['description']}\n\n")
        parts.append("---\n\n")
    return "".join(parts)


class FindingExporter:
    """Read side of the finding store."""

    def __init__(self, store):
        self.store = store

    async def query(self, limit: Optional[int] = None, reporter: Optional[str] = None,
                    severity: Optional[str] = None) -> dict:
        limit = min(limit or DEFAULT_QUERY_LIMIT, EXPORT_LIMIT)
        try:
            rows = await self.store.get_findings(limit=limit)
        except Exception as e:
            logger.error("[Export] Failed to get findings: %s", e)
            return {"success": False, "error": str(e), "count": 0, "findings": []}

        findings = [normalize(r) for r in rows]
        if reporter:
            findings = [f for f in findings if reporter.lower() in f["reporter"].lower()]
        if severity:
            findings = [f for f in findings if severity.lower() in f["title"].lower()]

        logger.info("[Export] Found %d findings", len(findings))
        return {"success": True, "count": len(findings), "findings": findings}

    async def export(self, fmt: Optional[str] = None, min_severity: Optional[str] = None) -> dict:
        fmt = fmt or "json"
        min_severity = (min_severity or "LOW").upper()
        logger.info("[Export] Exporting findings as %s (minimum severity %s)", fmt, min_severity)

        try:
            rows = await self.store.get_findings(limit=EXPORT_LIMIT)
        except Exception as e:
            logger.error("[Export] Export failed: %s", e)
            return {"success": False, "error": str(e), "format": fmt, "count": 0, "data": ""}

        findings = [f for f in (normalize(r) for r in rows)
                    if passes_severity(f["title"], min_severity)]

        if fmt == "csv":
            data = to_csv(findings)
        elif fmt == "markdown":
            data = to_markdown(findings)
        else:
            data = json.dumps(findings, indent=2)

        logger.info("[Export] Exported %d findings", len(findings))
        return {"success": True, "format": fmt, "count": len(findings), "data": data}
