"""PolicyStore — versioned home of the CoordinationPolicy.

Anyone may read the current policy. Exactly one PolicyWriter exists per
store; the adaptation loop claims it at construction, so no other
component can change the policy.
"""

from __future__ import annotations

import asyncio
import logging

from cohort.exceptions import PolicyWriteError
from cohort.persistence.journal import POLICY_VERSIONS, Journal
from cohort.policy.schema import (
    CoordinationPolicy,
    PolicyDelta,
    PolicyVersion,
    TUNABLE_PARAMETERS,
)

_logger = logging.getLogger(__name__)


class PolicyStore:
    """Holds every version of the policy; the last one is in effect."""

    def __init__(
        self,
        initial: CoordinationPolicy | None = None,
        journal: Journal | None = None,
    ) -> None:
        self._journal = journal
        self._versions: list[PolicyVersion] = [
            PolicyVersion(version=1, policy=initial or CoordinationPolicy(), reason="initial")
        ]
        self._writer: PolicyWriter | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> CoordinationPolicy:
        return self._versions[-1].policy

    @property
    def version(self) -> int:
        return self._versions[-1].version

    def get(self, version: int) -> PolicyVersion:
        for v in self._versions:
            if v.version == version:
                return v
        raise KeyError(f"No policy version {version}")

    def history(self) -> list[PolicyVersion]:
        return list(self._versions)

    async def initialize(self) -> bool:
        """Restore versions from the journal, or persist version 1.

        Returns True if an earlier history was restored.
        """
        if self._journal is None:
            return False
        stored = await self._journal.load(POLICY_VERSIONS, PolicyVersion)
        if stored:
            self._versions = stored
            _logger.info("Restored policy history: %d versions, current v%d",
                         len(stored), self.version)
            return True
        await self._journal.append(POLICY_VERSIONS, self._versions[0])
        return False

    def claim_writer(self) -> PolicyWriter:
        """Hand out the only write capability. Fails on a second claim."""
        if self._writer is not None:
            raise PolicyWriteError("Policy writer already claimed")
        self._writer = PolicyWriter(self)
        return self._writer

    async def _commit(
        self,
        writer: PolicyWriter,
        policy: CoordinationPolicy,
        deltas: list[PolicyDelta],
        reason: str,
    ) -> PolicyVersion:
        if writer is not self._writer:
            raise PolicyWriteError("Only the claimed writer may change the policy")
        async with self._lock:
            previous = self._versions[-1]
            entry = PolicyVersion(
                version=previous.version + 1,
                policy=policy,
                previous_version=previous.version,
                reason=reason,
                deltas=deltas,
            )
            if self._journal is not None:
                await self._journal.append(POLICY_VERSIONS, entry)
            self._versions.append(entry)
        _logger.info("Policy v%d -> v%d: %s", previous.version, entry.version, reason)
        return entry


class PolicyWriter:
    """The single capability allowed to mutate a PolicyStore."""

    def __init__(self, store: PolicyStore) -> None:
        self._store = store

    @property
    def store(self) -> PolicyStore:
        return self._store

    async def apply(self, deltas: list[PolicyDelta], reason: str = "") -> PolicyVersion:
        """Apply all deltas atomically as one new version.

        Raises PolicyBoundError if any delta leaves its bounds, and
        PolicyWriteError if a delta was planned against a stale value.
        """
        if not deltas:
            raise PolicyWriteError("No deltas to apply")
        current = self._store.current
        changes = {}
        for delta in deltas:
            spec = TUNABLE_PARAMETERS.get(delta.parameter)
            if spec is None:
                raise PolicyWriteError(f"Parameter '{delta.parameter}' is not tunable")
            if getattr(current, delta.parameter) != delta.old_value:
                raise PolicyWriteError(
                    f"Stale delta for '{delta.parameter}': planned from "
                    f"{delta.old_value!r}, current is {getattr(current, delta.parameter)!r}"
                )
            changes[delta.parameter] = spec.check(delta.new_value)
        policy = current.with_changes(changes)
        return await self._store._commit(self, policy, list(deltas), reason)

    async def rollback(self, to_version: int, reason: str = "") -> PolicyVersion:
        """Re-issue an earlier policy as a new version (history stays append-only)."""
        target = self._store.get(to_version)
        current = self._store.current
        deltas = [
            PolicyDelta(
                parameter=name,
                old_value=getattr(current, name),
                new_value=getattr(target.policy, name),
                reason=f"rollback to v{to_version}",
            )
            for name in TUNABLE_PARAMETERS
            if getattr(current, name) != getattr(target.policy, name)
        ]
        return await self._store._commit(
            self, target.policy, deltas, reason or f"rollback to v{to_version}",
        )
