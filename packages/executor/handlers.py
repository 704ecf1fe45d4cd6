"""
Handler Queue - Deduplicated, fire-once-at-end activation actions

Directives that report ok_changed notify handlers by name. Notifications
only mark a handler pending; nothing fires eagerly. At the end of the
directive section each pending handler fires exactly once, in the order
it was first notified, no matter how many directives notified it.
"""

from collections import OrderedDict
from typing import Dict, Iterator, List, Mapping, Optional
import logging

from directives import Handler, RunContext

from .report import HandlerResult, Outcome

logger = logging.getLogger(__name__)


class HandlerQueue:
    """Pending handler names plus who notified them."""

    def __init__(self, handlers: Mapping[str, Handler]):
        self.handlers: Dict[str, Handler] = dict(handlers)
        self._pending: "OrderedDict[str, List[str]]" = OrderedDict()
        self._fired: List[str] = []

    def notify(self, name: str, source: Optional[str] = None) -> bool:
        """
        Mark a handler pending.

        Returns:
            True if this is the first notification of the handler

        Raises:
            KeyError: If no handler with that name is declared
        """
        if name not in self.handlers:
            raise KeyError(f"Unknown handler: {name}")

        first = name not in self._pending
        sources = self._pending.setdefault(name, [])
        if source is not None and source not in sources:
            sources.append(source)
        if first:
            logger.debug(f"Handler '{name}' pending (notified by {source})")
        return first

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    @property
    def fired(self) -> List[str]:
        return list(self._fired)

    def notified_by(self, name: str) -> List[str]:
        return list(self._pending.get(name, []))

    def drain(self) -> List[str]:
        """Clear and return pending names without firing them."""
        names = list(self._pending)
        self._pending.clear()
        return names

    def fire(self, executor, context: RunContext) -> Iterator[HandlerResult]:
        """
        Fire every pending handler once, in first-notification order.

        Yields each HandlerResult as soon as the handler has run. A failing
        handler does not stop the remaining ones. ConnectionLost propagates;
        handlers not yet fired stay pending so the caller can report them.
        """
        while self._pending:
            name, sources = next(iter(self._pending.items()))
            logger.info(f"Firing handler '{name}' (notified by {', '.join(sources) or 'n/a'})")
            result = executor.run_handler(self.handlers[name], context, notified_by=sources)
            del self._pending[name]
            self._fired.append(name)
            if result.outcome == Outcome.FAILED_FATAL:
                logger.error(f"Handler '{name}' failed: {result.message}")
            elif result.outcome == Outcome.FAILED_IGNORED:
                logger.warning(f"Handler '{name}' failed (ignored): {result.message}")
            yield result

    def flush(self, executor, context: RunContext) -> List[HandlerResult]:
        """Fire all pending handlers and return their results."""
        return list(self.fire(executor, context))
