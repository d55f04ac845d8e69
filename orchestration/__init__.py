"""
Card Logic Orchestration Layer

- query_engine: generation and named queries under a read/write lock
- governance: ActionGuard (calculated permissions)
- field_updater: FieldUpdater (calculated field values written back to cards)
- engine: ProjectSession, the per-project command handle
"""
from orchestration.query_engine import QueryEngine, QueryContractError, ReadWriteLock
from orchestration.governance import ActionGuard, Action, PermissionDeniedError
from orchestration.field_updater import FieldUpdater, FieldUpdateError
from orchestration.engine import ProjectSession

__all__ = [
    'QueryEngine',
    'QueryContractError',
    'ReadWriteLock',
    'ActionGuard',
    'Action',
    'PermissionDeniedError',
    'FieldUpdater',
    'FieldUpdateError',
    'ProjectSession',
]
