"""Create, delete, ban and modify redirections, then resynchronise the cache."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from ovh_redirections.provider import ApiError, RemoteClient, redirection_path
from ovh_redirections.snapshot import Redirection, RedirectionSyncer, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_TO_PLACEHOLDER = "{{alias}}"

# =============================================================================
# Validation
# =============================================================================

KIND_ID = "id"
KIND_EMAIL = "email"
KIND_LOCAL_OR_EMAIL = "localOrEmail"

ID_RE = re.compile(r"\d+")
EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
LOCAL_RE = re.compile(r"[^\s@]+")


class ValidationError(ValueError):
    """Operator input that does not match the expected kind."""

    def __init__(self, value: str, kind: str):
        super().__init__(f"'{value}' is not a valid {_KIND_LABELS.get(kind, kind)}")
        self.value = value
        self.kind = kind


_KIND_LABELS = {
    KIND_ID: "redirection id",
    KIND_EMAIL: "email address",
    KIND_LOCAL_OR_EMAIL: "local part or email address",
}


def is_valid(value: Any, kind: str) -> bool:
    if not isinstance(value, str):
        return False
    if kind == KIND_ID:
        return bool(ID_RE.fullmatch(value))
    if kind == KIND_EMAIL:
        return bool(EMAIL_RE.fullmatch(value))
    if kind == KIND_LOCAL_OR_EMAIL:
        return bool(LOCAL_RE.fullmatch(value) or EMAIL_RE.fullmatch(value))
    raise ValueError(f"Unknown validation kind '{kind}'")


def validate(value: Any, kind: str) -> str:
    if not is_valid(value, kind):
        raise ValidationError(str(value), kind)
    return value


def expand_address(value: str, domain: str) -> str:
    """Turn a bare local part into ``local@domain``; full addresses pass through."""
    return value if "@" in value else f"{value}@{domain}"


def find_by_from(
    records: Sequence[Redirection], value: str, domain: str
) -> Optional[Redirection]:
    """Linear scan for the live redirection whose ``from`` is value or value@domain."""
    candidates = (value, f"{value}@{domain}")
    for record in records:
        if record.from_addr in candidates:
            return record
    return None


# =============================================================================
# Reports
# =============================================================================


@dataclass(frozen=True)
class ItemError:
    item: str
    reason: str


@dataclass
class OperationReport:
    """What a mutation did, item by item, and the reconciliation that followed."""

    done: List[str] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)
    sync: Optional[SyncResult] = None
    stale: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def fail(self, item: str, reason: str) -> None:
        logger.warning(f"{item}: {reason}")
        self.errors.append(ItemError(item=item, reason=reason))


# =============================================================================
# Mutation Operations
# =============================================================================


class RedirectionManager:
    def __init__(
        self,
        *,
        client: RemoteClient,
        syncer: RedirectionSyncer,
        domain: str,
        spam_address: str,
        default_to: str = "",
    ):
        self.client = client
        self.syncer = syncer
        self.domain = domain
        self.spam_address = spam_address
        self.default_to = default_to

    def resolve(self, identifier: str) -> Optional[Redirection]:
        """Find a cached redirection by id, then by from-address or local part."""
        records = self.syncer.records
        if is_valid(identifier, KIND_ID):
            for record in records:
                if record.key == identifier:
                    return record
        return find_by_from(records, identifier, self.domain)

    def _resync(self, report: OperationReport) -> None:
        try:
            report.sync = self.syncer.sync_once()
        except ApiError as e:
            report.stale = True
            report.fail("update", f"reconciliation failed, cache is stale: {e}")

    def _create_one(self, report: OperationReport, source: str, target: str) -> bool:
        try:
            validate(source, KIND_LOCAL_OR_EMAIL)
            validate(target, KIND_EMAIL)
        except ValidationError as e:
            report.fail(e.value, str(e))
            return False

        source = expand_address(source, self.domain)
        try:
            self.client.request(
                "POST",
                redirection_path(self.domain),
                {"from": source, "to": target, "localCopy": False},
            )
        except ApiError as e:
            report.fail(source, f"create failed: {e}")
            return False
        report.done.append(f"{source} -> {target}")
        return True

    def create(self, source: str, target: str) -> OperationReport:
        report = OperationReport()
        if self._create_one(report, source, target):
            self._resync(report)
        return report

    def create_default(self, local_part: str) -> OperationReport:
        """Create ``local@domain`` towards the configured default destination."""
        report = OperationReport()
        if not self.default_to:
            report.fail(local_part, "no default destination configured (DEFAULT_TO)")
            return report
        if not is_valid(local_part, KIND_LOCAL_OR_EMAIL):
            report.fail(local_part, str(ValidationError(local_part, KIND_LOCAL_OR_EMAIL)))
            return report

        alias = local_part.split("@", 1)[0]
        target = self.default_to.replace(DEFAULT_TO_PLACEHOLDER, alias)
        if self._create_one(report, local_part, target):
            self._resync(report)
        return report

    def ban(self, *local_parts: str) -> OperationReport:
        """Route each local part to the spam sink, then reconcile once.

        Reconciliation is skipped when no redirection was created.
        """
        report = OperationReport()
        created = 0
        for local_part in local_parts:
            if self._create_one(report, local_part, self.spam_address):
                created += 1
        if created:
            self._resync(report)
        return report

    def delete(self, *identifiers: str) -> OperationReport:
        """Delete by id, from-address or local part; one reconciliation for the batch.

        A numeric id missing from the cache is still sent to the provider,
        since the cache may be behind.
        Reconciliation is skipped when no delete call was attempted.
        """
        report = OperationReport()
        attempted = 0
        for identifier in identifiers:
            if not (is_valid(identifier, KIND_ID) or is_valid(identifier, KIND_LOCAL_OR_EMAIL)):
                report.fail(identifier, str(ValidationError(identifier, KIND_LOCAL_OR_EMAIL)))
                continue

            record = self.resolve(identifier)
            if record is None and not is_valid(identifier, KIND_ID):
                report.fail(identifier, "redirection not found")
                continue
            rid = record.id if record else identifier
            label = record.from_addr if record else identifier

            attempted += 1
            try:
                self.client.request("DELETE", redirection_path(self.domain, rid))
            except ApiError as e:
                reason = "redirection not found" if e.not_found else f"delete failed: {e}"
                report.fail(label, reason)
                continue
            report.done.append(f"{label} ({rid})")

        if attempted:
            self._resync(report)
        return report

    def modify(self, source: str, target: str) -> OperationReport:
        """Point an existing redirection at a new destination."""
        report = OperationReport()
        try:
            validate(target, KIND_EMAIL)
            if not is_valid(source, KIND_ID):
                validate(source, KIND_LOCAL_OR_EMAIL)
        except ValidationError as e:
            report.fail(e.value, str(e))
            return report

        record = self.resolve(source)
        if record is None:
            report.fail(source, "redirection not found")
            return report

        try:
            self.client.request(
                "POST",
                f"{redirection_path(self.domain, record.id)}/changeRedirection",
                {"to": target},
            )
        except ApiError as e:
            report.fail(record.from_addr, f"change failed: {e}")
            return report

        report.done.append(f"{record.from_addr}: {record.to_addr} -> {target}")
        self._resync(report)
        return report
