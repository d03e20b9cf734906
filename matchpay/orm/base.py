"""
Declarative base shared by the matchpay tables.
"""
from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import declarative_base

from matchpay.utils.time import utcnow

Base = declarative_base()


class BaseModel(Base):
    """Surrogate integer key plus naive-UTC audit timestamps."""
    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Settlement claims set this explicitly so abandoned claims can be aged out
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
