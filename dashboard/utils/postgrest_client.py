"""
PostgREST (Supabase) client with an explicit lifecycle.

Provides:
- Async connection management (connect at startup, close at shutdown)
- Exact counts via HEAD + Content-Range
- Ranged, ordered reads with PostgREST filter syntax
- Bulk delete by id
- Per-table change watchers (polling fingerprint)
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from loguru import logger

from dashboard.utils.config import Settings, get_settings
from domains.document_pool.sources.base import ChangeCallback, Condition, RowQuery, Unsubscribe


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _format_condition(condition: Condition) -> Tuple[str, str]:
    """Translate a condition into a PostgREST query parameter."""
    if condition.op == "in":
        values = ",".join(f'"{_format_value(v)}"' for v in condition.value)
        return condition.column, f"in.({values})"
    if condition.op in {"eq", "lt", "gte", "ilike", "is"}:
        return condition.column, f"{condition.op}.{_format_value(condition.value)}"
    raise ValueError(f"Unsupported operator: {condition.op}")


def build_params(query: RowQuery, select: str = "*") -> List[Tuple[str, str]]:
    """Build PostgREST query parameters for ``query``."""
    if query.missing_relation:
        select = f"{select},{query.missing_relation}(id)"
    params = [("select", select)]
    params.extend(_format_condition(c) for c in query.conditions)
    if query.missing_relation:
        params.append((query.missing_relation, "is.null"))
    if query.order_by:
        direction = "desc" if query.descending else "asc"
        params.append(("order", f"{query.order_by}.{direction}"))
    return params


def parse_content_range(header: Optional[str]) -> int:
    """Extract the total from ``Content-Range: 0-9/37`` or ``*/37``."""
    if not header or "/" not in header:
        raise ValueError(f"Missing total in Content-Range: {header!r}")
    total = header.rsplit("/", 1)[1]
    if total == "*":
        raise ValueError("Server did not return an exact count")
    return int(total)


class PostgrestClient:
    """Async PostgREST client."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize PostgREST client."""
        settings = get_settings()
        self.base_url = base_url or settings.get_rest_url()
        self.api_key = api_key if api_key is not None else settings.supabase_key
        self.timeout = timeout or settings.request_timeout_seconds
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self):
        """Open the HTTP connection pool."""
        if self._client is None:
            logger.info(f"Connecting to PostgREST at {self.base_url}...")
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["apikey"] = self.api_key
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )

    async def close(self):
        """Close the HTTP connection pool."""
        if self._client:
            logger.info("Closing PostgREST connection...")
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("PostgrestClient is not connected")
        return self._client

    async def ping(self) -> bool:
        """Check that the endpoint answers at all."""
        if self._client is None:
            return False
        try:
            response = await self.client.get("/")
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug(f"PostgREST ping failed: {e}")
            return False

    async def count(self, table: str, query: RowQuery) -> int:
        """Exact number of rows matching ``query``."""
        params = build_params(query, select="id")
        response = await self.client.head(
            f"/{table}",
            params=params,
            headers={"Prefer": "count=exact", "Range-Unit": "items", "Range": "0-0"},
        )
        response.raise_for_status()
        return parse_content_range(response.headers.get("Content-Range"))

    async def select(
        self,
        table: str,
        query: RowQuery,
        offset: int,
        limit: int,
        columns: str = "*",
    ) -> List[Dict[str, Any]]:
        """Rows ``[offset, offset + limit)`` matching ``query``."""
        params = build_params(query, select=columns)
        params.extend([("offset", str(offset)), ("limit", str(limit))])
        response = await self.client.get(f"/{table}", params=params)
        response.raise_for_status()
        rows = response.json()
        if query.missing_relation:
            for row in rows:
                row.pop(query.missing_relation, None)
        return rows

    async def delete_by_ids(self, table: str, ids: Sequence[str]) -> int:
        """Delete rows by primary key; returns the number of rows removed."""
        if not ids:
            return 0
        values = ",".join(f'"{i}"' for i in ids)
        response = await self.client.delete(
            f"/{table}",
            params=[("id", f"in.({values})")],
            headers={"Prefer": "return=representation"},
        )
        response.raise_for_status()
        return len(response.json() or [])

    def table(self, name: str, poll_interval: float = None) -> "PostgrestTable":
        """Capability object for one table."""
        if poll_interval is None:
            poll_interval = get_settings().change_poll_seconds
        return PostgrestTable(self, name, poll_interval)


class PostgrestTable:
    """Source capability backed by one PostgREST table."""

    def __init__(self, client: PostgrestClient, name: str, poll_interval: float = 5.0):
        self.client = client
        self.name = name
        self.poll_interval = poll_interval
        self.stamp_column = "updated_at"

    async def count(self, query: RowQuery) -> int:
        return await self.client.count(self.name, query)

    async def fetch_range(self, query: RowQuery, offset: int, limit: int) -> List[Dict[str, Any]]:
        return await self.client.select(self.name, query, offset, limit)

    async def delete_by_ids(self, ids: Sequence[str]) -> int:
        return await self.client.delete_by_ids(self.name, ids)

    async def fingerprint(self) -> Tuple[int, Optional[str]]:
        """
        Row count plus the newest change stamp; changes when the table does.

        Tables without ``updated_at`` (PostgREST answers 400) are
        fingerprinted on ``created_at`` from then on.
        """
        total = await self.client.count(self.name, RowQuery(order_by=None))
        try:
            newest = await self._newest_stamp()
        except httpx.HTTPStatusError as e:
            if self.stamp_column != "updated_at" or e.response.status_code != 400:
                raise
            logger.warning(f"{self.name} has no updated_at column, watching created_at instead")
            self.stamp_column = "created_at"
            newest = await self._newest_stamp()
        return total, newest

    async def _newest_stamp(self) -> Optional[str]:
        rows = await self.client.select(
            self.name,
            RowQuery(order_by=self.stamp_column, descending=True),
            0,
            1,
            columns=self.stamp_column,
        )
        return rows[0].get(self.stamp_column) if rows else None

    def subscribe_to_changes(self, callback: ChangeCallback) -> Unsubscribe:
        """Start a polling watcher; returns a callable that stops it."""
        task = asyncio.get_running_loop().create_task(
            self._watch(callback), name=f"watch-{self.name}"
        )
        logger.info(f"Watching {self.name} every {self.poll_interval}s")

        def unsubscribe() -> None:
            if not task.done():
                task.cancel()
                logger.debug(f"Stopped watching {self.name}")

        return unsubscribe

    async def _watch(self, callback: ChangeCallback) -> None:
        previous = None
        failing = False
        while True:
            try:
                current = await self.fingerprint()
            except (httpx.HTTPError, ValueError) as e:
                if failing:
                    logger.debug(f"Change watcher for {self.name} still failing: {e}")
                else:
                    logger.warning(f"Change watcher for {self.name} failed: {e}")
                failing = True
            else:
                if failing:
                    logger.info(f"Change watcher for {self.name} recovered")
                    failing = False
                if previous is not None and current != previous:
                    callback({"table": self.name, "count": current[0], "updated_at": current[1]})
                previous = current
            await asyncio.sleep(self.poll_interval)


def create_client(settings: Settings) -> PostgrestClient:
    """Build an unconnected client from settings."""
    return PostgrestClient(
        base_url=settings.get_rest_url(),
        api_key=settings.supabase_key,
        timeout=settings.request_timeout_seconds,
    )
