"""WhatsApp message models."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class EvolutionConfig:
    """Per-tenant Evolution API credentials (evolution_configs row)."""

    api_url: str
    api_key: str
    instance_name: str


@dataclass(frozen=True)
class NormalizedInbound:
    """Evolution messages.upsert payload, normalized.

    PII: `remote_jid`, `phone` and `text` are used in memory for one turn.
    NEVER log them.
    """

    message_id: str
    instance: str
    received_at: datetime
    kind: str
    remote_jid: str
    phone: str
    text: str | None
    from_me: bool = False
    is_group: bool = False

    @property
    def is_processable(self) -> bool:
        """Text sent by an end user in a direct chat."""
        return not self.from_me and not self.is_group and bool(self.text and self.text.strip())
