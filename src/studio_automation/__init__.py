"""Studio Automation.

Workflow automation core for studio kanban boards:
- configuration loaded from the environment and `.env`
- structured JSON logging
- a workflow execution state machine with per-step retries
- stage triggers that dispatch executions when cards move or change
"""

__version__ = "0.1.0"

from studio_automation.core.config import EngineConfig

__all__ = ["__version__", "EngineConfig"]
