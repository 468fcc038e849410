"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_pool_status, get_engine
from models.history_log import LogEntry
from models.history_entry import HistoryEntry
from models.page import Page
from models.content_element import ContentElement

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_pool_status",
    "get_engine",
    "LogEntry",
    "HistoryEntry",
    "Page",
    "ContentElement",
]
