"""Services package."""
from services.change_log import ChangeLogBuilder
from services.diff_aggregator import aggregate
from services.event_source import SqlEventSource
from services.record_history import HistoryViewState, RecordHistory
from services.rollback_executor import RollbackExecutor, SqlRollbackExecutor
from services.rollback_planner import plan

__all__ = [
    "ChangeLogBuilder",
    "aggregate",
    "SqlEventSource",
    "HistoryViewState",
    "RecordHistory",
    "RollbackExecutor",
    "SqlRollbackExecutor",
    "plan",
]
