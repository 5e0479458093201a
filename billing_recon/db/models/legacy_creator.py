"""LegacyCreator model: creators offering per-creator subscriptions."""

from sqlalchemy import Column, String

from billing_recon.db.base import Base


class LegacyCreator(Base):
    __tablename__ = "legacy_creators"

    id = Column(String(255), primary_key=True)
    display_name = Column(String(255), nullable=True)
    owner_user_id = Column(String(255), nullable=True, index=True)
    connect_account_id = Column(String(255), nullable=True)  # payout account
