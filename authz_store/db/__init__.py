"""Database package exports."""

from authz_store.db.base import Base
from authz_store.db.session import dispose_engine, get_engine, get_session_factory

__all__ = ["Base", "dispose_engine", "get_engine", "get_session_factory"]
