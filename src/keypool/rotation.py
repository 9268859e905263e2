"""Round-robin tie breaking among equally ranked credentials."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """An eligible (credential, model) pair."""

    credential_id: str
    credential_priority: int
    model_id: str
    model_name: str
    model_priority: int = 1
    api_key: str = field(default="", repr=False)

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.credential_priority, self.credential_id)


class RoundRobinRotator:
    """
    Per-tenant rotation pointer.

    Given N equally ranked candidates, N consecutive calls return each of
    them once before any repeats. The pointer only affects fairness, so it
    lives in memory and starts over on restart.
    """

    def __init__(self) -> None:
        self._last_used: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, tenant_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if tenant_id not in self._locks:
                self._locks[tenant_id] = asyncio.Lock()
            return self._locks[tenant_id]

    async def choose(self, tenant_id: str, candidates: Sequence[Candidate]) -> Candidate:
        """
        Pick the candidate after the tenant's last used credential.

        Candidates are ordered by (credential priority, credential id). The
        first one is picked when the tenant has no pointer yet or the
        pointed-to credential is no longer among the candidates.

        Raises:
            ValueError: If candidates is empty
        """
        if not candidates:
            raise ValueError("No candidates to rotate over")

        ordered = sorted(candidates, key=lambda c: c.sort_key)
        if len(ordered) == 1:
            # Nothing to rotate, but keep the pointer current
            async with await self._get_lock(tenant_id):
                self._last_used[tenant_id] = ordered[0].credential_id
            return ordered[0]

        async with await self._get_lock(tenant_id):
            last = self._last_used.get(tenant_id)
            ids = [c.credential_id for c in ordered]
            if last in ids:
                chosen = ordered[(ids.index(last) + 1) % len(ordered)]
            else:
                chosen = ordered[0]
            self._last_used[tenant_id] = chosen.credential_id

        logger.debug(
            f"Round-robin for tenant {tenant_id}: {chosen.credential_id} "
            f"(after {last}, {len(ordered)} candidates)"
        )
        return chosen

    def last_used(self, tenant_id: str) -> str | None:
        return self._last_used.get(tenant_id)

    def reset(self, tenant_id: str | None = None) -> None:
        """Forget one tenant's pointer, or all of them."""
        if tenant_id is None:
            self._last_used.clear()
        else:
            self._last_used.pop(tenant_id, None)
