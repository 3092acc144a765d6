"""ArtistProfile model: public artist handles, owned by the web frontend."""

from sqlalchemy import Column, Integer, String

from sunroad_billing.db.base import Base


class ArtistProfile(Base):
    __tablename__ = "artists_min"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(255), unique=True, nullable=False, index=True)
    handle = Column(String(255), unique=True, nullable=True)
