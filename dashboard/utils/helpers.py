"""
Helper utilities for Pool Watchman.

Snapshot serialization shared by the API and the headless watcher.
"""

import json
from pathlib import Path
from typing import Any, Dict

from dashboard.models.schemas import (
    DocumentOut,
    FolderNodeOut,
    HealthCategoryOut,
    MergedPageResponse,
)
from domains.document_pool.engine import PoolSnapshot


def snapshot_payload(snapshot: PoolSnapshot) -> Dict[str, Any]:
    """JSON-ready representation of a full snapshot."""
    return {
        "cycle": snapshot.cycle,
        "loaded_at": snapshot.loaded_at.isoformat(),
        "document_count": snapshot.document_count,
        "page": MergedPageResponse.from_page(snapshot.page).model_dump(mode="json"),
        "folders": [FolderNodeOut.from_node(n).model_dump(mode="json") for n in snapshot.forest],
        "unfiled": [DocumentOut.from_document(d).model_dump(mode="json") for d in snapshot.unfiled],
        "health": [HealthCategoryOut.from_category(c).model_dump(mode="json") for c in snapshot.health],
    }


def dump_json(path: Path, payload: Dict[str, Any]) -> None:
    """Write ``payload`` as prettified JSON, replacing ``path`` atomically."""
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def summarize(snapshot: PoolSnapshot) -> str:
    """One-line summary for logs."""
    issues = sum(c.count for c in snapshot.health if not c.informational)
    degraded = [c.key for c in snapshot.health if c.degraded]
    summary = (
        f"page {snapshot.page.page_index}: {len(snapshot.page.items)} of "
        f"{snapshot.page.total_count} documents, {len(snapshot.forest)} root folders, "
        f"{len(snapshot.unfiled)} unfiled, {issues} health issues"
    )
    if degraded:
        summary += f" (degraded: {', '.join(degraded)})"
    return summary
