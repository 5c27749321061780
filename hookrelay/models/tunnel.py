"""
Tunnel model - read-only here. Tunnels are created and kept alive by the
tunnel server; forwarding only needs the owner, local port and status.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.database import Base


class Tunnel(Base):
    __tablename__ = "tunnels"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    subdomain: Mapped[str] = mapped_column(String(63), nullable=False, unique=True)
    local_port: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="connecting"
    )  # connecting, active, inactive, error
    public_url: Mapped[Optional[str]] = mapped_column(String(512))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<Tunnel {self.subdomain} port={self.local_port} status={self.status}>"
