"""
Environmental Consulting Operations Core
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - task_auto_lock: Locks tasks whose due date has passed without completion
"""

from __future__ import annotations

import logging
from typing import Any

from envcrm.services.core import get_core_services
from envcrm.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Task Auto-Lock
# ═══════════════════════════════════════════════════════════════════════════

@register_job("task_auto_lock")
def auto_lock_overdue_tasks(app) -> dict[str, Any]:
    """Lock every overdue task that is not done and not already locked."""
    result = get_core_services(app).lock_controller.auto_lock_sweep()
    logger.info("Task auto-lock: %s", result)
    return result
