from sqlalchemy import Column, String, Text, DateTime
from datetime import datetime, timezone
from secretbroker.models.base import Base

class KVEntry(Base):
    __tablename__ = "kv_entries"

    # "messages:<uuid>" or "attempts:<uuid>"
    key = Column(String(120), primary_key=True)

    # Envelope text or a decimal counter
    value = Column(Text, nullable=False)

    # NULL means the entry never expires (attempt counters)
    expires_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None))
