"""Declared folder records (folders that may exist without any documents)."""

from typing import Any, Dict, List, Optional

from domains.document_pool.cancellation import CancellationToken
from domains.document_pool.errors import SourceUnavailable
from domains.document_pool.sources.base import RowQuery, SourceCapability


def declared_path(row: Dict[str, Any]) -> Optional[str]:
    """Full path of a ``folders`` row, joining ``parent_folder`` when needed."""
    name = row.get("name")
    if not name:
        return None
    parent = row.get("parent_folder")
    if parent and not str(name).startswith(f"{parent}/"):
        return f"{parent}/{name}"
    return str(name)


class FolderCatalog:
    """Reads declared folders from the ``folders`` table."""

    def __init__(self, table: SourceCapability, limit: int = 10000):
        self.table = table
        self.limit = limit

    async def list_paths(self, token: CancellationToken) -> List[str]:
        token.raise_if_cancelled()
        try:
            rows = await self.table.fetch_range(
                RowQuery(order_by="name", descending=False), 0, self.limit
            )
        except SourceUnavailable:
            raise
        except Exception as e:
            raise SourceUnavailable("folders", f"list failed: {e}", e) from e
        token.raise_if_cancelled()

        paths = []
        for row in rows:
            path = declared_path(row)
            if path is not None:
                paths.append(path)
        return paths
