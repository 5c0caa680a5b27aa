"""
DatabaseHandles - the process's open stores, passed explicitly to the
crawler, the orchestration layer and the HTTP app.

One handle per database file: audits.db, link-cache.db and one
project.db per domain (opened lazily on first use).
"""

from __future__ import annotations

import threading
from pathlib import Path

import structlog

from siteaudit.core.config import Settings, get_settings
from siteaudit.storage.audits_db import AuditsDatabase
from siteaudit.storage.link_cache import LinkCache
from siteaudit.storage.paths import project_db_path
from siteaudit.storage.project_db import ProjectDatabase

logger = structlog.get_logger(__name__)


class DatabaseHandles:

    def __init__(self, data_dir: Path, link_cache_ttl_days: int = 7):
        self.data_dir = data_dir
        self.audits = AuditsDatabase(data_dir / "audits.db")
        self.link_cache = LinkCache(data_dir / "link-cache.db", ttl_days=link_cache_ttl_days)
        self._projects: dict[str, ProjectDatabase] = {}
        self._projects_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, settings: Settings | None = None) -> "DatabaseHandles":
        settings = settings or get_settings()
        handles = cls(settings.DATA_DIR, link_cache_ttl_days=settings.LINK_CACHE_TTL_DAYS)
        logger.info("Databases opened", data_dir=str(settings.DATA_DIR))
        return handles

    def project(self, domain: str) -> ProjectDatabase:
        with self._projects_lock:
            db = self._projects.get(domain)
            if db is None:
                db = ProjectDatabase(project_db_path(self.data_dir, domain), domain)
                self._projects[domain] = db
            return db

    def list_project_domains(self) -> list[str]:
        """Sanitized domain names that have a project database on disk."""
        projects_dir = self.data_dir / "projects"
        if not projects_dir.exists():
            return []
        return sorted(p.parent.name for p in projects_dir.glob("*/project.db"))

    def close(self) -> None:
        if self._closed:
            return
        self.audits.close()
        self.link_cache.close()
        with self._projects_lock:
            for db in self._projects.values():
                db.close()
            self._projects.clear()
        self._closed = True

    def __enter__(self) -> "DatabaseHandles":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
