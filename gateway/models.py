"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from gateway.storage import Base


class ChatRecord(Base):
    """
    One completed question/answer exchange.

    Table: chat_records (append-only)
    """
    __tablename__ = "chat_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    created_at = Column(String, nullable=False, index=True)  # ISO-8601 UTC


class LoginState(Base):
    """
    Scan ticket to user binding recorded for SCAN events.

    Table: login_states
    Primary Key: ticket (a re-scan overwrites the binding)
    """
    __tablename__ = "login_states"

    ticket = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)
