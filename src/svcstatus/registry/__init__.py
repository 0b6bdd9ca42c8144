"""
Service Status Registry

This package provides:
1. StatusRecord: the persisted state of one service instance
2. SqlStatusStore: relational store (PostgreSQL / SQLite) with atomic upserts
3. MemoryStatusStore: dict-backed store for single-process use
4. The error taxonomy shared by stores and clients
"""

from .errors import InvalidRecord, RegistryError, StoreUnavailable, WriteConflict
from .models import (
    RecordFilter,
    ServiceStatus,
    ServiceType,
    StatusRecord,
    make_service_id,
)
from .schema import create_schema
from .sql_store import SqlStatusStore
from .store import MemoryStatusStore, StatusStore

__all__ = [
    'InvalidRecord',
    'MemoryStatusStore',
    'RecordFilter',
    'RegistryError',
    'ServiceStatus',
    'ServiceType',
    'SqlStatusStore',
    'StatusRecord',
    'StatusStore',
    'StoreUnavailable',
    'WriteConflict',
    'create_schema',
    'make_service_id',
]
