"""
Hot-reloadable policy table storage.

The active table lives in an immutable PolicySnapshot behind a single
reference. Writers validate a complete new table, persist it, then replace
the reference. Readers take the reference without locking.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Mapping, Protocol

import structlog

from routewise.core.errors import InvalidPolicyTableError, StaleReloadError
from routewise.policy.defaults import default_policy_table
from routewise.policy.models import PolicyRule, PolicyTable, parse_rule, parse_table
from routewise.utils.clock import Clock, SystemClock

logger = structlog.get_logger()


@dataclass(frozen=True)
class PolicySnapshot:
    """An immutable view of the active policy table."""

    table: PolicyTable
    ordered_rules: tuple[PolicyRule, ...]
    revision: int
    loaded_at: datetime
    source: str
    fingerprint: str | None = None

    @classmethod
    def build(
        cls,
        table: PolicyTable,
        revision: int,
        loaded_at: datetime,
        source: str,
        fingerprint: str | None = None,
    ) -> "PolicySnapshot":
        return cls(
            table=table,
            ordered_rules=tuple(table.ordered_rules()),
            revision=revision,
            loaded_at=loaded_at,
            source=source,
            fingerprint=fingerprint,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "version": self.table.version,
            "loaded_at": self.loaded_at.isoformat(),
            "source": self.source,
            "rule_count": len(self.ordered_rules),
            "table": self.table.to_dict(),
        }


@dataclass
class PolicyChange:
    """Audit entry for a table swap."""

    revision: int
    version: str
    actor: str
    source: str
    timestamp: datetime
    rule_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "version": self.version,
            "actor": self.actor,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "rule_ids": self.rule_ids,
        }


class PolicyBackend(Protocol):
    """Backing store for the policy table."""

    name: str

    def read(self) -> dict[str, Any] | None:
        """Return the stored table data, or None when nothing is stored."""
        ...

    def write(self, data: dict[str, Any]) -> str | None:
        """Persist table data and return the new fingerprint."""
        ...

    def fingerprint(self) -> str | None:
        """Cheap change marker for the stored data."""
        ...


class FilePolicyBackend:
    """JSON file backend. Writes go through a temp file and an atomic rename."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.name = f"file:{self.path}"

    def read(self) -> dict[str, Any] | None:
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None

    def write(self, data: dict[str, Any]) -> str | None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        return self.fingerprint()

    def fingerprint(self) -> str | None:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return f"{stat.st_mtime_ns}:{stat.st_size}"


class InMemoryPolicyBackend:
    """Process-local backend, mainly for tests and ephemeral deployments."""

    name = "memory"

    def __init__(self, data: dict[str, Any] | None = None):
        self._lock = Lock()
        self._data = data
        self._generation = 0 if data is None else 1

    def read(self) -> dict[str, Any] | None:
        with self._lock:
            return json.loads(json.dumps(self._data)) if self._data is not None else None

    def write(self, data: dict[str, Any]) -> str | None:
        with self._lock:
            self._data = json.loads(json.dumps(data))
            self._generation += 1
            return str(self._generation)

    def fingerprint(self) -> str | None:
        with self._lock:
            return str(self._generation) if self._data is not None else None


class PolicyStore:
    """
    Owns the active policy table.

    - ``load()`` reads the backing store at start, falling back to the
      built-in table when nothing valid is stored.
    - ``update_table()`` / ``update_rule()`` validate, persist and swap.
    - ``reconcile()`` picks up external edits to the backing store.
    """

    def __init__(
        self,
        backend: PolicyBackend | None = None,
        clock: Clock | None = None,
        history_size: int = 50,
    ):
        self._backend = backend or InMemoryPolicyBackend()
        self._clock = clock or SystemClock()
        self._write_lock = RLock()
        self._history: deque[PolicyChange] = deque(maxlen=history_size)
        self._revision = 0
        self._snapshot = PolicySnapshot.build(
            default_policy_table(),
            revision=0,
            loaded_at=self._clock.now(),
            source="default",
        )

    @property
    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    @property
    def table(self) -> PolicyTable:
        return self._snapshot.table

    @property
    def backend(self) -> PolicyBackend:
        return self._backend

    def load(self) -> PolicySnapshot:
        """Load the table from the backing store or fall back to defaults."""
        with self._write_lock:
            fingerprint = self._backend.fingerprint()
            try:
                data = self._backend.read()
                if data is None:
                    logger.info("No stored policy table, using defaults", backend=self._backend.name)
                    return self._swap(default_policy_table(), "system", "default", fingerprint)
                table = parse_table(data)
            except (OSError, ValueError, InvalidPolicyTableError) as e:
                logger.error(
                    "Failed to load policy table, using default policies",
                    backend=self._backend.name,
                    error=str(e),
                )
                return self._swap(default_policy_table(), "system", "default", fingerprint)

            snapshot = self._swap(table, "system", self._backend.name, fingerprint)
            logger.info(
                "Loaded policy table",
                version=table.version,
                rules=len(table.rules),
                backend=self._backend.name,
            )
            return snapshot

    def update_table(self, table: PolicyTable | Mapping[str, Any], actor: str) -> PolicySnapshot:
        """
        Validate, persist and activate a complete new table.

        Raises:
            InvalidPolicyTableError: The table is malformed. The active
                table is unchanged.
        """
        try:
            parsed = parse_table(table)
        except InvalidPolicyTableError as e:
            logger.warning("Rejected policy table update", actor=actor, errors=e.errors)
            raise

        with self._write_lock:
            now = self._clock.now()
            stamped = parsed.model_copy(
                update={
                    "last_updated": now,
                    "rules": [
                        rule if rule.last_modified is not None
                        else rule.model_copy(update={"last_modified": now, "modified_by": rule.modified_by or actor})
                        for rule in parsed.rules
                    ],
                }
            )
            fingerprint = self._backend.write(stamped.to_dict())
            snapshot = self._swap(stamped, actor, "update", fingerprint)

        logger.info(
            "Policy table updated",
            version=stamped.version,
            revision=snapshot.revision,
            actor=actor,
        )
        return snapshot

    def update_rule(self, rule: PolicyRule | Mapping[str, Any], actor: str) -> PolicySnapshot:
        """Insert or replace a single rule, then swap the whole table."""
        parsed = parse_rule(rule)
        with self._write_lock:
            stamped = parsed.model_copy(
                update={"last_modified": self._clock.now(), "modified_by": actor}
            )
            snapshot = self.update_table(self.table.with_rule(stamped), actor)
        logger.info("Policy rule updated", rule_id=stamped.id, actor=actor)
        return snapshot

    def reconcile(self) -> bool:
        """
        Reload the table if the backing store changed since the last swap.

        Returns:
            True if a new table was activated.

        Raises:
            StaleReloadError: The backing store could not be read or holds
                an invalid table. The last good table stays active.
        """
        with self._write_lock:
            try:
                fingerprint = self._backend.fingerprint()
            except OSError as e:
                raise StaleReloadError(f"Cannot stat policy store: {e}", self._backend.name) from e

            if fingerprint == self._snapshot.fingerprint:
                return False
            if fingerprint is None:
                raise StaleReloadError("Policy store is missing", self._backend.name)

            try:
                data = self._backend.read()
                if data is None:
                    raise StaleReloadError("Policy store is missing", self._backend.name)
                table = parse_table(data)
            except StaleReloadError:
                raise
            except (OSError, ValueError, InvalidPolicyTableError) as e:
                raise StaleReloadError(
                    f"Policy reload failed: {e}", self._backend.name
                ) from e

            self._swap(table, "reconcile", self._backend.name, fingerprint)

        logger.info("Policy table reloaded from store", version=table.version, backend=self._backend.name)
        return True

    def reconcile_safely(self) -> bool:
        """Scheduled form of ``reconcile``: failures are logged, not raised."""
        try:
            return self.reconcile()
        except StaleReloadError as e:
            logger.warning(
                "Policy reconciliation failed, keeping last good table",
                error=str(e),
                source=e.source,
                revision=self._snapshot.revision,
            )
            return False

    def history(self) -> list[dict[str, Any]]:
        return [change.to_dict() for change in self._history]

    def _swap(
        self,
        table: PolicyTable,
        actor: str,
        source: str,
        fingerprint: str | None,
    ) -> PolicySnapshot:
        self._revision += 1
        now = self._clock.now()
        snapshot = PolicySnapshot.build(
            table,
            revision=self._revision,
            loaded_at=now,
            source=source,
            fingerprint=fingerprint,
        )
        self._snapshot = snapshot
        self._history.append(
            PolicyChange(
                revision=self._revision,
                version=table.version,
                actor=actor,
                source=source,
                timestamp=now,
                rule_ids=[r.id for r in snapshot.ordered_rules],
            )
        )
        return snapshot
