# db.py
import os

from sqlmodel import Session, SQLModel, create_engine

# Creates labsync.db next to your code unless DATABASE_URL points elsewhere
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///labsync.db")


def make_engine(url: str = DATABASE_URL, echo: bool = False):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


engine = make_engine(DATABASE_URL, echo=os.environ.get("SQL_ECHO") == "1")


def init_db(bind=None):
    """
    Create all tables in the database.
    Call this once at application startup.
    """
    # registers the table on SQLModel.metadata
    import models.pending_sync  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session(bind=None):
    """
    Return a new SQLModel Session.
    Use this to read/write PendingSyncEntry records.
    """
    return Session(bind or engine)
