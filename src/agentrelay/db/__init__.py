"""SQLite database layer.

All functions are async using aiosqlite.
Module-level connection, initialized by init_database().

This package is split into domain-specific submodules:
  _connection  schema, init, write lock
  tasks        scheduled task CRUD and run logging
  sessions     sessions, provider overrides, router state
  groups       registered groups
"""

from agentrelay.db._connection import (
    _init_test_database,
    atomic_write,
    close_database,
    init_database,
)
from agentrelay.db.groups import (
    get_all_registered_groups,
    set_registered_group,
)
from agentrelay.db.sessions import (
    clear_session,
    delete_provider_override,
    get_all_sessions,
    get_provider_overrides,
    get_router_state,
    set_provider_override,
    set_router_state,
    set_session,
)
from agentrelay.db.tasks import (
    create_task,
    delete_task,
    get_all_tasks,
    get_due_tasks,
    get_task_by_id,
    get_task_run_logs,
    get_tasks_for_group,
    record_task_run,
    set_task_status,
)

__all__ = [
    "_init_test_database",
    "atomic_write",
    "clear_session",
    "close_database",
    "create_task",
    "delete_provider_override",
    "delete_task",
    "get_all_registered_groups",
    "get_all_sessions",
    "get_all_tasks",
    "get_due_tasks",
    "get_provider_overrides",
    "get_router_state",
    "get_task_by_id",
    "get_task_run_logs",
    "get_tasks_for_group",
    "init_database",
    "record_task_run",
    "set_provider_override",
    "set_registered_group",
    "set_router_state",
    "set_session",
    "set_task_status",
]
