"""API key database model."""
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func

from audit_engine.core.database import Base


class APIKey(Base):
    """Key issued to a scheduler, analyst tool or administrator. Only the salted hash is kept."""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True)
    key_hash = Column(String(64), unique=True, nullable=False, index=True)
    label = Column(String(255), nullable=True)
    role = Column(String(50), nullable=False, default="viewer")  # see core.roles
    is_active = Column(Boolean, default=True, nullable=False)  # False once revoked
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def masked(self) -> str:
        """Hash prefix shown in listings."""
        return f"{self.key_hash[:8]}..." if len(self.key_hash) > 8 else "***"

    def touch(self) -> None:
        self.last_used_at = datetime.now(timezone.utc)
