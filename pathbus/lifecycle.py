"""
Provider Lifecycle
==================

Reference counts provider activations per concrete path. For a fixed
(provider, canonical path) pair, on_activate runs only on the 0 -> 1
transition and on_deactivate only on 1 -> 0, so the two strictly alternate
starting with activation.

Walks go from the subscribed node up to the root (deepest ancestor first).
Each provider met on the way is counted under the key of the path that was
actually subscribed, not the key of the node it is attached to. A provider
at ["ideas"] therefore keeps one refcount for ["ideas", "a"] and another for
["ideas", "b"].

If on_activate raises, everything the failing walk already acquired is
released again and ProviderActivationError reaches the subscriber whose call
drove the activation. The error is also remembered on the subscribed node so
later callers can ask whether that path is healthy. A record whose activation
failed is dropped at once, so subscriptions that reentered the hook and
counted on it never trigger on_deactivate for it.

Every subscription keeps the list of records it incremented and releases
exactly those. A provider registered late holds a subscription only when
its retrofit activation for that path succeeded.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Tuple

from .errors import ProviderActivationError
from .node_store import ActiveProvider, Node
from .path import Segments
from .provider import ActivationContext, call_hook

if TYPE_CHECKING:
    from .bus import DataBus

logger = logging.getLogger(__name__)

# The (node, record) pairs one subscription incremented
Held = List[Tuple[Node, ActiveProvider]]


class ProviderLifecycle:
    """Owns the activate/deactivate bookkeeping stored on tree nodes."""

    def __init__(self, bus: "DataBus"):
        self._bus = bus

    # ========================================================================
    # SUBSCRIBE / DISPOSE WALKS
    # ========================================================================

    def acquire(self, chain: List[Node], key: str, path: Segments) -> Held:
        """
        Count one more subscription to path on every provider along chain.

        Returns the (node, record) pairs that were incremented; release()
        takes exactly that list back.

        Raises:
            ProviderActivationError: If a provider fails on its 0 -> 1 transition
        """
        acquired: Held = []
        leaf = chain[-1]
        for node in reversed(chain):
            for provider in list(node.providers):
                record = node.find_record(key, provider)
                if record is None:
                    record = ActiveProvider(
                        provider, 0, ActivationContext(path, self._bus, key)
                    )
                    node.add_record(key, record)
                # Counted before the hook: a reentrant subscribe sees count >= 1
                record.count += 1
                if record.count == 1:
                    try:
                        self._activate(record)
                    except Exception as e:
                        # Never activated, so nested holders must not deactivate it
                        record.count = 0
                        node.remove_record(key, record)
                        self.release(acquired)
                        error = ProviderActivationError(path, provider, e)
                        leaf.activation_error = error
                        raise error from e
                acquired.append((node, record))
        leaf.activation_error = None
        return acquired

    def release(self, held: Held) -> None:
        """Undo one acquire, deactivating providers that reach zero."""
        for node, record in reversed(held):
            if record.count <= 0:
                # Detached or failed since it was taken
                continue
            record.count -= 1
            if record.count == 0:
                node.remove_record(record.context.key, record)
                self._deactivate(record)

    # ========================================================================
    # LATE REGISTRATION
    # ========================================================================

    def attach(self, node: Node, provider: Any, live: Dict[str, Tuple[Node, List[Any]]]) -> int:
        """
        Activate a newly registered provider for subscriptions that already exist.

        live maps canonical path -> (subscribed node, live subscriptions) for
        every subscribed node at or beneath node. Each subscription holds the
        new record only if its activation succeeded. Failures are logged and
        stored on the subscribed node; the remaining paths still activate.
        Returns the number of paths activated.
        """
        activated = 0
        for key, (target, subs) in live.items():
            record = ActiveProvider(provider, 0, ActivationContext(target.path, self._bus, key))
            try:
                self._activate(record)
            except Exception as e:
                logger.error(
                    f"Provider {provider!r} failed to activate for {list(target.path)} "
                    f"during registration: {e!r}"
                )
                error = ProviderActivationError(target.path, provider, e)
                error.__cause__ = e
                target.activation_error = error
                continue
            record.count = len(subs)
            node.add_record(key, record)
            for sub in subs:
                sub._held.append((node, record))
            activated += 1
        return activated

    def detach(self, node: Node, provider: Any) -> int:
        """Deactivate every live record of provider on node. Returns how many."""
        records = node.records_for(provider)
        for key, record in records:
            record.count = 0
            node.remove_record(key, record)
            self._deactivate(record)
        return len(records)

    # ========================================================================
    # RESYNC
    # ========================================================================

    def resync(self, chain: List[Node], key: str) -> int:
        """Ask every provider active for key along chain to refresh it."""
        asked = 0
        for node in reversed(chain):
            for record in list(node.active_providers.get(key, ())):
                call_hook(record.provider, "on_resync", record.context)
                asked += 1
        return asked

    # ========================================================================
    # HOOKS
    # ========================================================================

    def _activate(self, record: ActiveProvider) -> None:
        logger.debug(f"Activating {record.provider!r} for {list(record.context.path)}")
        call_hook(record.provider, "on_activate", record.context)

    def _deactivate(self, record: ActiveProvider) -> None:
        ctx = record.context
        ctx.cancelled.set()
        logger.debug(f"Deactivating {record.provider!r} for {list(ctx.path)}")
        try:
            call_hook(record.provider, "on_deactivate", ctx)
        except Exception:
            # The record is already gone; the refcount stays consistent
            logger.exception(
                f"Provider {record.provider!r} failed to deactivate for {list(ctx.path)}"
            )


__all__ = ["ProviderLifecycle"]
