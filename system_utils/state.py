"""
Shared State Module for system_utils package.

Holds the process-wide registry of background tasks so the entry point can
cancel them during cleanup. It imports NOTHING from the system_utils package
to prevent circular imports.
"""
from __future__ import annotations

import asyncio
from typing import Set

# Background tasks created via create_tracked_task() without an explicit registry
_background_tasks: Set[asyncio.Task] = set()
