"""Kanban boards: stage and card records, trigger evaluation and card moves."""

__all__: list[str] = []
