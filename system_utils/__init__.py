"""
System Utils Package

    state.py      - Process-wide background task registry
    helpers.py    - Executor and task helpers shared by recognizers and the orchestrator
"""

from .helpers import (
    run_in_daemon_executor,
    shutdown_daemon_executor,
    create_tracked_task,
    cancel_tracked_tasks,
    truncate,
)

__all__ = [
    'run_in_daemon_executor',
    'shutdown_daemon_executor',
    'create_tracked_task',
    'cancel_tracked_tasks',
    'truncate',
]
