"""
Cache key builders.

Namespaces:
    user:<id>                       auth view of a user
    task:<id>                       single task
    tasks:<caller>:<digest>         filtered task page
    mytasks:<user>:<digest>         assignee-scoped task page
    dashboard:<user>                dashboard statistics
    blacklist:<token>               revoked token
"""

import hashlib
import json
from typing import Any

ALL_TASK_LISTS = "tasks:*"

# Derived entries dropped when Redis comes back after an outage. Revocations
# (blacklist:*) are kept.
VOLATILE_PATTERNS = ("user:*", "task:*", "tasks:*", "mytasks:*", "dashboard:*")


def digest(params: Any) -> str:
    """Deterministic hash of a query: same filters, sort and page give the same key."""
    if hasattr(params, "model_dump"):
        params = params.model_dump(mode="json")
    canonical = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha1(canonical.encode()).hexdigest()


def user(user_id: int) -> str:
    return f"user:{user_id}"


def task(task_id: int) -> str:
    return f"task:{task_id}"


def task_list(caller_id: int, query: Any) -> str:
    return f"tasks:{caller_id}:{digest(query)}"


def my_tasks(user_id: int, query: Any) -> str:
    return f"mytasks:{user_id}:{digest(query)}"


def my_tasks_pattern(user_id: int) -> str:
    return f"mytasks:{user_id}:*"


def dashboard(user_id: int) -> str:
    return f"dashboard:{user_id}"


def blacklist(token: str) -> str:
    return f"blacklist:{token}"
