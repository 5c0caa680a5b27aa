"""
Link Cache - last known status of external/internal link targets.

Shared by every project so a URL checked for one site is not re-checked
for another within the TTL window.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from siteaudit.core.database import LinkCacheBase, SQLiteStore, utcnow
from siteaudit.models.models import LinkCacheEntry


@dataclass(frozen=True)
class CachedLinkResult:
    url: str
    status_code: int | None
    error: str | None
    checked_at: datetime
    is_valid: bool


@dataclass(frozen=True)
class LinkCacheStats:
    total_entries: int
    valid_entries: int
    expired_entries: int


class LinkCache(SQLiteStore):

    # Batches stay under SQLite's bound-parameter limit
    IN_CLAUSE_BATCH = 500
    UPSERT_BATCH = 200

    def __init__(self, path: Path, ttl_days: int = 7):
        super().__init__(path, LinkCacheBase)
        self.ttl = timedelta(days=ttl_days)

    def _cutoff(self) -> datetime:
        return utcnow() - self.ttl

    def _hydrate(self, row: LinkCacheEntry, cutoff: datetime) -> CachedLinkResult:
        return CachedLinkResult(
            url=row.url,
            status_code=row.status_code,
            error=row.error,
            checked_at=row.checked_at,
            is_valid=row.checked_at > cutoff,
        )

    def get(self, url: str) -> CachedLinkResult | None:
        with self.session() as session:
            row = session.get(LinkCacheEntry, url)
            return self._hydrate(row, self._cutoff()) if row else None

    def get_many(self, urls: Iterable[str]) -> dict[str, CachedLinkResult]:
        unique = list(dict.fromkeys(urls))
        cutoff = self._cutoff()
        found: dict[str, CachedLinkResult] = {}
        with self.session() as session:
            for i in range(0, len(unique), self.IN_CLAUSE_BATCH):
                batch = unique[i:i + self.IN_CLAUSE_BATCH]
                for row in session.scalars(select(LinkCacheEntry).where(LinkCacheEntry.url.in_(batch))):
                    found[row.url] = self._hydrate(row, cutoff)
        return found

    def set(self, url: str, status_code: int | None, error: str | None = None) -> None:
        self.set_many([(url, status_code, error)])

    def set_many(self, entries: Iterable[tuple[str, int | None, str | None]]) -> int:
        now = utcnow()
        values = [
            {"url": url, "status_code": status_code, "error": error, "checked_at": now}
            for url, status_code, error in entries
        ]
        if not values:
            return 0

        with self.transaction() as session:
            for i in range(0, len(values), self.UPSERT_BATCH):
                stmt = sqlite_insert(LinkCacheEntry).values(values[i:i + self.UPSERT_BATCH])
                stmt = stmt.on_conflict_do_update(
                    index_elements=[LinkCacheEntry.url],
                    set_={
                        "status_code": stmt.excluded.status_code,
                        "error": stmt.excluded.error,
                        "checked_at": stmt.excluded.checked_at,
                    },
                )
                session.execute(stmt)
        return len(values)

    def cleanup(self) -> int:
        """Delete expired entries; returns how many were removed."""
        with self.transaction() as session:
            result = session.execute(delete(LinkCacheEntry).where(LinkCacheEntry.checked_at <= self._cutoff()))
        return result.rowcount

    def stats(self) -> LinkCacheStats:
        with self.session() as session:
            total = session.scalar(select(func.count()).select_from(LinkCacheEntry)) or 0
            valid = session.scalar(
                select(func.count()).select_from(LinkCacheEntry).where(LinkCacheEntry.checked_at > self._cutoff())
            ) or 0
        return LinkCacheStats(total_entries=total, valid_entries=valid, expired_entries=total - valid)

    def clear(self) -> None:
        with self.transaction() as session:
            session.execute(delete(LinkCacheEntry))
