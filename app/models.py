from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from database import Base
import datetime


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; serialized with a trailing 'Z'."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class UserSession(Base):
    """Anonymous user identified only by the client-held session token."""
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_active = Column(DateTime, default=utcnow, nullable=False)


class CommandRecord(Base):
    """One execution attempt. Written once the upstream outcome is known, never updated."""
    __tablename__ = "commands"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("user_sessions.id"), index=True, nullable=False)
    command = Column(Text, nullable=False)
    executed_at = Column(DateTime, default=utcnow, index=True, nullable=False)
    execution_time = Column(Integer, nullable=False)  # milliseconds
    success = Column(Boolean, nullable=False)


class ResultRecord(Base):
    """Outcome of a CommandRecord: exactly one of result_data / error_message is set."""
    __tablename__ = "results"

    id = Column(Integer, primary_key=True, index=True)
    command_id = Column(Integer, ForeignKey("commands.id"), index=True, nullable=False)
    result_data = Column(Text)  # JSON text
    error_message = Column(Text)
