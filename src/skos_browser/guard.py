"""
Stale-result guard.

Each scope (e.g. "details of the selected concept") has a request epoch.
Starting a load bumps the epoch and hands out a token; a load may only
write shared state while its token is still the scope's latest. Superseded
loads are not cancelled on the network, their results are just dropped.

Long loads are written as async generators yielding mutation thunks, and
run_guarded() applies each thunk only while the token is current:

    async def load_details(uri):
        rows = await client.execute(details_query(uri))
        yield lambda: view.set_details(rows)
        labels = await resolver.query_all(related_uris(rows))
        yield lambda: view.set_labels(labels)

    token = epochs.begin_request("details")
    await epochs.run_guarded(token, load_details(uri))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EpochToken:
    scope: str
    epoch: int


class RequestEpochs:
    """Monotonic request counters, one per scope."""

    def __init__(self):
        self._epochs: dict[str, int] = {}

    def begin_request(self, scope: str) -> EpochToken:
        """Start a new request for a scope, superseding any earlier one."""
        epoch = self._epochs.get(scope, 0) + 1
        self._epochs[scope] = epoch
        return EpochToken(scope, epoch)

    def current(self, scope: str) -> int:
        return self._epochs.get(scope, 0)

    def is_current(self, token: EpochToken) -> bool:
        return self._epochs.get(token.scope, 0) == token.epoch

    def invalidate(self, scope: str) -> None:
        """Supersede the running request without starting a new one."""
        self._epochs[scope] = self._epochs.get(scope, 0) + 1

    async def run_guarded(self, token: EpochToken, chain: AsyncIterator[Callable[[], object]]) -> bool:
        """Drive a chain of mutations, applying each only while ``token`` is current.

        The chain is closed as soon as the token is superseded. Errors
        raised by a superseded chain are dropped with it.

        Returns:
            True if the chain ran to completion, False if it was superseded.
        """
        try:
            async for mutation in chain:
                if not self.is_current(token):
                    logger.debug("Dropping stale result for %s (epoch %d)", token.scope, token.epoch)
                    return False
                mutation()
        except Exception:
            if not self.is_current(token):
                logger.debug("Ignoring error from superseded request for %s", token.scope)
                return False
            raise
        finally:
            aclose = getattr(chain, "aclose", None)
            if aclose is not None:
                await aclose()
        return self.is_current(token)
