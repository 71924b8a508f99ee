from sqlalchemy import Column, Integer, String, DateTime
from models.base import Base


class RateLimitRecord(Base):
    __tablename__ = "rate_limits"

    # e.g. otp_request:ip:<ip>, otp_cooldown:<email>
    key = Column(String(320), primary_key=True)
    count = Column(Integer, default=0, nullable=False)
    reset_time = Column(DateTime(timezone=True), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<RateLimitRecord(key='{self.key}', count={self.count})>"
