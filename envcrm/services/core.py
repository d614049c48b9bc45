"""
Core service wiring.

``create_app`` builds one instance of each stateful service with the
notification dispatcher and clock passed through constructors, and stores
them on ``app.extensions["core_services"]``.  Tests call
``init_core_services`` again with doubles.

Usage:
    from envcrm.services.core import get_core_services

    services = get_core_services()
    services.lock_controller.auto_lock_sweep()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from flask import Flask, current_app

from envcrm.services.notification import InAppNotificationDispatcher, NotificationDispatcher
from envcrm.services.project_status_service import StatusEngine
from envcrm.services.sla import utcnow
from envcrm.services.task_lock_service import LockController
from envcrm.services.task_service import TaskService
from envcrm.services.unlock_workflow import UnlockWorkflow


@dataclass
class CoreServices:
    dispatcher: NotificationDispatcher
    clock: Callable
    status_engine: StatusEngine
    lock_controller: LockController
    unlock_workflow: UnlockWorkflow
    task_service: TaskService


def init_core_services(app: Flask, dispatcher=None, clock: Callable | None = None) -> CoreServices:
    dispatcher = dispatcher or InAppNotificationDispatcher()
    clock = clock or utcnow

    lock_controller = LockController(
        dispatcher=dispatcher,
        clock=clock,
        manage_permission=app.config["LOCK_MANAGE_PERMISSION"],
    )
    services = CoreServices(
        dispatcher=dispatcher,
        clock=clock,
        status_engine=StatusEngine(
            dispatcher=dispatcher,
            clock=clock,
            status_recipient=app.config.get("PROJECT_STATUS_RECIPIENT"),
        ),
        lock_controller=lock_controller,
        unlock_workflow=UnlockWorkflow(
            lock_controller,
            dispatcher=dispatcher,
            clock=clock,
            admin_recipient=app.config.get("LOCK_ADMIN_RECIPIENT"),
        ),
        task_service=TaskService(lock_controller, clock=clock),
    )
    app.extensions["core_services"] = services
    return services


def get_core_services(app: Flask | None = None) -> CoreServices:
    app = app or current_app
    return app.extensions["core_services"]
