"""
Exception hierarchy for the audit pipeline.

Page and rule failures never surface as exceptions: they are folded into
result data. The classes below are the ones that reach a caller.
"""


class SiteAuditError(Exception):
    """Base exception for all siteaudit errors."""


class ConfigurationError(SiteAuditError):
    """Invalid run options, rejected before any network activity."""


class DuplicateRuleError(SiteAuditError):
    """A rule id was registered twice."""

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Rule '{rule_id}' is already registered")


class SeedUnreachableError(SiteAuditError):
    """The crawl's start URL could not be fetched at all."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Seed URL {url} is unreachable: {reason}")


class StorageError(SiteAuditError):
    """A database operation failed (constraint violation, disk I/O)."""


class AuditNotFoundError(SiteAuditError):
    """An audit or crawl lookup required a record that does not exist."""

    def __init__(self, resource: str, identifier: str | int):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} '{identifier}' not found")
