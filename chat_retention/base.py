"""SQLAlchemy declarative base for conversation and retention storage."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base for all chatbot storage models."""

    pass
