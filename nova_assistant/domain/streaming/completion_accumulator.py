from typing import AsyncIterator, Callable, List, Optional
import time

import structlog
from pydantic import BaseModel

from nova_assistant.domain.context.conversation_store import ConversationStore, MessageHandle
from nova_assistant.domain.models.conversation import MessageKind, Suggestion
from nova_assistant.domain.streaming.stream_decoder import StreamEvent, StreamEventType
from nova_assistant.infrastructure.observability.logging import assistant_logger

logger = structlog.get_logger(__name__)

SnapshotCallback = Callable[[str], None]


class AccumulatedCompletion(BaseModel):
    """Outcome of one streamed reply"""
    text: str
    fragments: int
    stale: bool = False
    settled: bool = False


class CompletionAccumulator:
    """Folds stream events into a single growing assistant message"""

    def __init__(
        self,
        store: ConversationStore,
        handle: MessageHandle,
        on_snapshot: Optional[SnapshotCallback] = None
    ):
        self.store = store
        self.handle = handle
        self.on_snapshot = on_snapshot
        self.text = ""
        self.fragments = 0
        self.stale = False
        self.finished = False
        self._started = time.monotonic()

    def apply(self, event: StreamEvent) -> Optional[str]:
        """Apply one event; returns the new snapshot for content deltas"""

        if self.finished or event.type != StreamEventType.DELTA or not event.content:
            return None

        self.text += event.content
        self.fragments += 1

        if not self.stale and not self.store.update_message_at(self.handle, {"content": self.text}):
            # Conversation switched or a newer reply started
            self.stale = True
            logger.debug("Stream target is stale, discarding further updates", message_id=self.handle.message_id)

        if not self.stale and self.on_snapshot is not None:
            self.on_snapshot(self.text)

        return self.text

    async def consume(self, events: AsyncIterator[StreamEvent]) -> str:
        """Drain an event iterator until the terminator or transport close"""

        async for event in events:
            if event.type == StreamEventType.DONE:
                break
            self.apply(event)
        return self.text

    def finalize(self, suggestions: Optional[List[Suggestion]] = None) -> AccumulatedCompletion:
        """Settle the message, or remove the placeholder when nothing arrived"""

        if self.finished:
            return AccumulatedCompletion(text=self.text, fragments=self.fragments, stale=self.stale)
        self.finished = True

        settled = False
        if self.fragments == 0:
            self.store.discard_placeholder(self.handle)
        else:
            patch = {"suggestions": list(suggestions)} if suggestions else None
            if not self.stale:
                settled = self.store.settle_message(self.handle, patch)
            else:
                # Keep what was applied before the target went stale
                self.store.settle_message(self.handle)

        assistant_logger.log_completion_stream(
            fragments=self.fragments,
            characters=len(self.text),
            duration_ms=round((time.monotonic() - self._started) * 1000, 1),
            stale=self.stale
        )
        return AccumulatedCompletion(
            text=self.text,
            fragments=self.fragments,
            stale=self.stale,
            settled=settled
        )

    def abort(self, error: str, notice: Optional[str] = None) -> bool:
        """Drop the placeholder after a transport failure, or settle it as an error notice

        Returns whether the notice took the placeholder's place in the log.
        """

        if self.finished:
            return False
        self.finished = True

        shown = False
        if notice is not None:
            shown = self.store.settle_message(self.handle, {"content": notice, "kind": MessageKind.ERROR})
        if not shown:
            self.store.discard_placeholder(self.handle)
        assistant_logger.log_completion_stream(
            fragments=self.fragments,
            characters=len(self.text),
            stale=self.stale,
            error=error
        )
        return shown
