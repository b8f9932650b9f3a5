"""Local snapshot of redirection records and its reconciliation with OVH.

The cache file is a JSON object keyed by domain name::

    {"example.com": {"redirections": [{"id": "123", "from": "a@example.com", "to": "b@example.org"}]}}

Only the active domain is ever rewritten; every other domain found in the
file is written back untouched.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from ovh_redirections.provider import ApiError, RemoteClient, redirection_path

logger = logging.getLogger(__name__)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Redirection:
    """A provider-side mail redirection."""

    id: Any
    from_addr: str
    to_addr: str

    @property
    def key(self) -> str:
        """Identity used for set arithmetic; ids may come back as str or int."""
        return str(self.id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Redirection":
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        rid = data.get("id")
        source = data.get("from")
        target = data.get("to")
        if rid is None or rid == "" or not isinstance(source, str) or not isinstance(target, str):
            raise ValueError(f"missing id/from/to in {data!r}")
        return cls(id=rid, from_addr=source, to_addr=target)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "from": self.from_addr, "to": self.to_addr}


@dataclass(frozen=True)
class SyncResult:
    """Counts reported after a reconciliation run."""

    remote_total: int
    added: int
    deleted: int
    failed: List[str] = field(default_factory=list)
    saved: bool = True


# =============================================================================
# Snapshot
# =============================================================================


class Snapshot:
    """In-memory copy of the cache file, tracking which domains were rewritten."""

    def __init__(self, domains: Optional[Dict[str, Any]] = None):
        self._domains: Dict[str, Any] = dict(domains or {})
        self._touched: Set[str] = set()

    @property
    def domains(self) -> Dict[str, Any]:
        return self._domains

    @property
    def touched(self) -> Set[str]:
        return set(self._touched)

    def ensure_domain(self, domain: str) -> None:
        entry = self._domains.get(domain)
        if not isinstance(entry, dict) or not isinstance(entry.get("redirections"), list):
            self._domains[domain] = {"redirections": []}

    def redirections(self, domain: str) -> List[Redirection]:
        entry = self._domains.get(domain)
        if not isinstance(entry, dict):
            return []
        records: List[Redirection] = []
        for raw in entry.get("redirections") or []:
            try:
                records.append(Redirection.from_dict(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed cached redirection for {domain}: {e}")
        return records

    def set_redirections(self, domain: str, records: Iterable[Redirection]) -> None:
        entry = self._domains.get(domain)
        if not isinstance(entry, dict):
            entry = {}
        entry = dict(entry)
        entry["redirections"] = [r.to_dict() for r in records]
        self._domains[domain] = entry
        self._touched.add(domain)


# =============================================================================
# Snapshot Store
# =============================================================================


class SnapshotStore:
    def __init__(self, path: str, domain: str):
        self.path = Path(path)
        self.domain = domain

    def load(self) -> Snapshot:
        """Read the cache file; a missing or unreadable file yields an empty domain."""
        if not self.path.exists():
            logger.info(f"No cache file at {self.path}, starting with an empty snapshot")
            snapshot = Snapshot()
        else:
            try:
                snapshot = Snapshot(self._read())
            except (OSError, ValueError) as e:
                logger.warning(f"Cache file {self.path} is unreadable, ignoring it: {e}")
                snapshot = Snapshot()
        snapshot.ensure_domain(self.domain)
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        """Write the snapshot, merging the domains it touched into the file on disk.

        Raises OSError when the file cannot be written.
        """
        try:
            merged = self._read() if self.path.exists() else {}
        except (OSError, ValueError) as e:
            logger.warning(f"Overwriting unreadable cache file {self.path}: {e}")
            merged = {}
        for name, entry in snapshot.domains.items():
            if name in snapshot.touched or name not in merged:
                merged[name] = entry

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(merged, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)

    def _read(self) -> Dict[str, Any]:
        data = json.loads(self.path.read_text("utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        # Single-domain layout written by older versions of the tool.
        if isinstance(data.get("redirections"), list):
            logger.info(f"Migrating single-domain cache layout to domain '{self.domain}'")
            legacy = data.pop("redirections")
            data.setdefault(self.domain, {"redirections": legacy})
        return data


# =============================================================================
# Reconciliation
# =============================================================================


class RedirectionSyncer:
    """Brings the active domain's snapshot in line with the provider's records."""

    def __init__(
        self,
        *,
        client: RemoteClient,
        store: SnapshotStore,
        snapshot: Snapshot,
        domain: str,
        max_workers: int = 8,
    ):
        self.client = client
        self.store = store
        self.snapshot = snapshot
        self.domain = domain
        self.max_workers = max(1, max_workers)

    @property
    def records(self) -> List[Redirection]:
        return self.snapshot.redirections(self.domain)

    def _fetch_remote_ids(self) -> List[Any]:
        ids = self.client.request("GET", redirection_path(self.domain))
        if not isinstance(ids, list):
            raise ApiError(
                f"Unexpected redirection list: expected list, got {type(ids).__name__}",
                path=redirection_path(self.domain),
            )
        return ids

    def _fetch_detail(self, redirection_id: Any) -> Redirection:
        data = self.client.request("GET", redirection_path(self.domain, redirection_id))
        try:
            return Redirection.from_dict(data)
        except ValueError as e:
            raise ApiError(
                f"Malformed redirection detail: {e}",
                path=redirection_path(self.domain, redirection_id),
            ) from e

    def _fetch_new(self, new_ids: List[Any]) -> tuple[List[Redirection], List[str]]:
        fetched: List[Redirection] = []
        failed: List[str] = []
        if not new_ids:
            return fetched, failed

        workers = min(self.max_workers, len(new_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._fetch_detail, rid): rid for rid in new_ids}
            for future in as_completed(futures):
                rid = futures[future]
                try:
                    fetched.append(future.result())
                except ApiError as e:
                    failed.append(str(rid))
                    logger.warning(f"Skipping redirection {rid}, detail fetch failed: {e}")
        return fetched, failed

    def sync_once(self) -> SyncResult:
        """Run one reconciliation and persist the result.

        A failure to list remote ids propagates and leaves the snapshot as it
        was. Failed detail fetches are skipped and reported; the next run
        picks them up again since they are still absent locally.
        """
        remote_ids = self._fetch_remote_ids()
        remote_keys = {str(rid) for rid in remote_ids}

        existing = self.records
        existing_keys = {r.key for r in existing}

        new_ids: List[Any] = []
        seen: Set[str] = set()
        for rid in remote_ids:
            key = str(rid)
            if key in existing_keys or key in seen:
                continue
            seen.add(key)
            new_ids.append(rid)

        fetched, failed = self._fetch_new(new_ids)
        deleted = [r for r in existing if r.key not in remote_keys]

        merged: List[Redirection] = []
        kept_keys: Set[str] = set()
        for record in [r for r in existing if r.key in remote_keys] + fetched:
            if record.key in kept_keys:
                continue
            kept_keys.add(record.key)
            merged.append(record)
        merged.sort(key=lambda r: r.from_addr)

        self.snapshot.set_redirections(self.domain, merged)

        saved = True
        try:
            self.store.save(self.snapshot)
        except OSError as e:
            saved = False
            logger.error(
                f"Failed to write cache file {self.store.path}: {e}. "
                "Remote changes are applied; the local cache is stale until the next update."
            )

        logger.info(
            f"Domain '{self.domain}': {len(remote_keys)} remote, {len(fetched)} new, "
            f"{len(deleted)} deleted"
        )
        return SyncResult(
            remote_total=len(remote_keys),
            added=len(fetched),
            deleted=len(deleted),
            failed=sorted(failed),
            saved=saved,
        )
