from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean
from models.base import Base


class RefreshToken(Base):
    """Server-side record of an issued refresh token, keyed by its jti."""
    __tablename__ = "refresh_tokens"

    id = Column(String(32), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)

    # Status
    is_revoked = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_used = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, user_id={self.user_id}, is_revoked={self.is_revoked})>"
