"""Identifiers, URL hashing and on-disk layout of the stores."""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

LEGACY_DIR_NAME = ".siteaudit"

_DOMAIN_FALLBACK = re.compile(r"(?:https?://)?(?:www\.)?([^/\s:?#]+)", re.IGNORECASE)


def generate_id() -> str:
    """Time-sortable id: 20240123-154210-a1b2c3 (UTC)."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{secrets.token_hex(3)}"


def hash_url(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest()


def extract_domain(url: str) -> str:
    """Lower-cased host without a leading www."""
    host = urlparse(url).hostname if "://" in url else None
    if not host:
        match = _DOMAIN_FALLBACK.match(url.strip())
        host = match.group(1) if match else "unknown"
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def sanitize_domain(domain: str) -> str:
    """Domain made safe for use as a directory name."""
    value = re.sub(r"[^a-z0-9.-]", "_", domain.lower())
    value = re.sub(r"\.+", ".", value)
    value = re.sub(r"_+", "_", value)
    return re.sub(r"^[._-]+|[._-]+$", "", value)


def project_db_path(data_dir: Path, domain: str) -> Path:
    return data_dir / "projects" / sanitize_domain(domain) / "project.db"


def legacy_crawls_dir(base_dir: Path) -> Path:
    return base_dir / LEGACY_DIR_NAME / "crawls"


def legacy_reports_dir(base_dir: Path) -> Path:
    return base_dir / LEGACY_DIR_NAME / "reports"
