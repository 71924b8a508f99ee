from sqlalchemy import Column, Integer, String, DateTime, Boolean
from models.base import Base


class OTPCode(Base):
    __tablename__ = "otp_codes"

    id = Column(String(32), primary_key=True)
    email = Column(String(255), index=True, nullable=False)

    # Only the bcrypt hash is stored, never the plaintext code
    code_hash = Column(String(255), nullable=False)

    # Status
    is_used = Column(Boolean, default=False, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<OTPCode(id={self.id}, attempts={self.attempts}, is_used={self.is_used})>"
