"""
Registry of content tables the record history knows about.

The history only works for tables listed in TABLE_MODELS. One of them is
the container table: records of every table point at a container record
through their ``pid`` column.
"""

from __future__ import annotations

from config import settings
from models.content_element import ContentElement
from models.page import Page
from services.history_types import UnknownSchemaError

# Map of table names to model classes
TABLE_MODELS: dict[str, type] = {
    "pages": Page,
    "content_elements": ContentElement,
}

# Columns the history never writes back, whatever their configuration
SYSTEM_COLUMNS: frozenset[str] = frozenset({"id", "pid", "deleted", "updated_at"})


def is_known_table(table: str) -> bool:
    return table in TABLE_MODELS


def get_model(table: str) -> type:
    """Get the model class for ``table`` or raise UnknownSchemaError."""
    model_class = TABLE_MODELS.get(table)
    if model_class is None:
        raise UnknownSchemaError(table)
    return model_class


def is_container(table: str) -> bool:
    """Whether records of ``table`` can contain records of other tables."""
    return table == settings.HISTORY_CONTAINER_TABLE


def restorable_fields(table: str) -> frozenset[str]:
    """
    Columns of ``table`` a rollback may write.

    Excludes the system columns and every column flagged with
    ``info={"restorable": False}`` (file references).
    """
    model_class = get_model(table)
    return frozenset(
        column.key
        for column in model_class.__table__.columns
        if column.key not in SYSTEM_COLUMNS and column.info.get("restorable", True)
    )


def is_restorable(table: str, field_name: str) -> bool:
    """Default restorability predicate used when aggregating diffs."""
    if not is_known_table(table):
        return False
    return field_name in restorable_fields(table)
