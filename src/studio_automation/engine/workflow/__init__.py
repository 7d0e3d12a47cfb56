"""Workflow execution domain.

This package holds:
- Persisted template and execution records
- The status transition tables and the execution state machine
- Step runners (the collaborators that perform step actions)
- The dispatcher that turns triggers into running executions

Submodules are imported explicitly; nothing is re-exported here so that the
records can be imported without pulling in the runner stack.
"""

__all__: list[str] = []
