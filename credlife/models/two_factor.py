from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from credlife.database import Base


class TwoFactorConfigEntry(Base):
    __tablename__ = "user_2fa_config"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    is_enabled = Column(Boolean, nullable=False, default=False)
    method = Column(String(16), nullable=True)
    totp_secret = Column(String(64), nullable=True)
    phone_number = Column(String(20), nullable=True)
    phone_verified_at = Column(DateTime(timezone=True), nullable=True)
    last_totp_step = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
