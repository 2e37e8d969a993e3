from __future__ import annotations
from typing import Protocol, Optional
from libs.contracts.fx_models import ClaimedJob


class QueueAdapter(Protocol):
    def enqueue(self, msg: ClaimedJob, *, timeout: float) -> str:
        """Put one message within ``timeout`` seconds; returns message_id. Raise QueueFull."""
        ...

    def pop(self, *, timeout: float) -> Optional[tuple[str, ClaimedJob]]:
        """Wait up to ``timeout`` for a message. Returns (message_id, msg) or None."""
        ...

    def ack(self, message_id: str) -> None:
        """Acknowledge processing; idempotent."""
        ...

    def depth(self) -> int:
        ...
