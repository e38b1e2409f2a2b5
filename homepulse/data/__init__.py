"""Persistence and synthetic input data."""

from homepulse.data.record_store import JsonFileRecordStore, MemoryRecordStore, RecordKind, RecordStore
from homepulse.data.repository import EngineRepository

__all__ = ["JsonFileRecordStore", "MemoryRecordStore", "RecordKind", "RecordStore", "EngineRepository"]
