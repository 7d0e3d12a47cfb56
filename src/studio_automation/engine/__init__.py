"""Automation engine: workflow executions driven by kanban board activity."""

__all__: list[str] = []
