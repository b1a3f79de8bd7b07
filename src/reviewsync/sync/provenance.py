"""Provenance ledger — recognises change events caused by our own mutations.

Learn: Before an optimistic mutation the client mints a mutation id and
sends it with the RPC (X-Mutation-Id). The backend stamps it onto every
ChangeEvent the mutation produces. When such an event comes back over a
channel, the ledger confirms it and the registry skips the merge: the
cache already holds the speculative result, so applying the event again
would be a duplicate visible mutation.

Entries live until their TTL runs out, not until the first echo, because
one mutation can produce several events (an approval touches versions,
items and approvals).
"""

import time
import uuid
from typing import Callable, Iterable, Optional

import structlog

from reviewsync.config import settings
from reviewsync.realtime.events import ChangeEvent

logger = structlog.get_logger()


class ProvenanceLedger:
    def __init__(
        self,
        actor_id: str,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.actor_id = str(actor_id)
        self.ttl = ttl if ttl is not None else settings.provenance_ttl_seconds
        self._clock = clock
        # mutation id → (expires_at, entity types it may touch)
        self._pending: dict[str, tuple[float, frozenset[str]]] = {}

    def new_mutation(self, entity_types: Iterable[str]) -> str:
        """Record a mutation we are about to send. Returns its id."""
        self._expire()
        mutation_id = uuid.uuid4().hex
        self._pending[mutation_id] = (self._clock() + self.ttl, frozenset(entity_types))
        return mutation_id

    def discard(self, mutation_id: str) -> None:
        """Forget a mutation that failed; its events will never arrive."""
        self._pending.pop(mutation_id, None)

    def confirm(self, event: ChangeEvent) -> bool:
        """True if the event is the echo of one of our own pending mutations."""
        if not event.provenance or event.origin_actor_id != self.actor_id:
            return False
        self._expire()
        entry = self._pending.get(event.provenance)
        if entry is None:
            return False
        _, entity_types = entry
        if event.entity_type not in entity_types:
            return False
        logger.debug(
            "provenance.confirmed",
            mutation_id=event.provenance,
            entity_type=event.entity_type,
        )
        return True

    def __len__(self) -> int:
        self._expire()
        return len(self._pending)

    def _expire(self) -> None:
        now = self._clock()
        for mutation_id in [m for m, (exp, _) in self._pending.items() if exp <= now]:
            del self._pending[mutation_id]
