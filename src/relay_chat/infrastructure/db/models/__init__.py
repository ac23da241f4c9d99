"""Import all models so metadata.create_all can discover them via Base.metadata."""
from relay_chat.infrastructure.db.models.outbox import OutboxEntryModel

__all__ = [
    "OutboxEntryModel",
]
