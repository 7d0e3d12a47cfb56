"""Local persistence for workflow and kanban records."""

from studio_automation.state.store import JsonRecordStore, Stores

__all__ = ["JsonRecordStore", "Stores"]
