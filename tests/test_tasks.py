from datetime import datetime, timedelta, timezone

from conftest import API, auth_header, create_task, register


def future(days=3) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


# ========== CREATE ==========
def test_manager_creates_task(client, manager, member):
    task = create_task(
        client,
        manager,
        member,
        description="Crash on save",
        priority="high",
        tags=["Bug", " backend ", "bug"],
        dueDate=future(),
    )
    assert task["title"] == "Fix bug"
    assert task["createdBy"]["id"] == manager["id"]
    assert task["createdBy"]["name"] == "Alice Manager"
    assert task["assignedTo"]["id"] == member["id"]
    assert task["assignedTo"]["name"] == "Bob Member"
    assert task["assignedTo"]["email"] == member["email"]
    assert "passwordHash" not in task["assignedTo"]
    assert task["status"] == "todo"
    assert task["priority"] == "high"
    assert task["tags"] == ["bug", "backend"]
    assert task["isCompleted"] is False
    assert task["isOverdue"] is False


def test_plain_user_cannot_create_task(client, member):
    response = client.post(
        f"{API}/tasks",
        json={"title": "Not allowed", "assignedTo": member["id"]},
        headers=auth_header(member),
    )
    assert response.status_code == 403
    assert response.json()["message"] == "Not authorized to access this route"


def test_create_task_unknown_assignee(client, manager):
    response = client.post(
        f"{API}/tasks",
        json={"title": "Orphan task", "assignedTo": 9999},
        headers=auth_header(manager),
    )
    assert response.status_code == 404
    assert response.json()["message"] == "Assigned user not found"


def test_create_task_validation(client, manager, member):
    response = client.post(
        f"{API}/tasks",
        json={
            "title": "ab",
            "assignedTo": member["id"],
            "dueDate": (datetime.now(timezone.utc) - timedelta(days=1)).isoformat(),
            "tags": ["x" * 21],
        },
        headers=auth_header(manager),
    )
    assert response.status_code == 400
    messages = {err["field"]: err["message"] for err in response.json()["errors"]}
    assert "title" in messages
    assert messages["dueDate"] == "Due date must be in the future"
    assert messages["tags"] == "Tag cannot exceed 20 characters"


def test_create_task_as_done_is_completed(client, manager, member):
    task = create_task(client, manager, member, status="done")
    assert task["isCompleted"] is True
    assert task["completedAt"] is not None


# ========== COMPLETION FLAG ==========
def test_completion_follows_status(client, manager, member):
    task = create_task(client, manager, member)
    url = f"{API}/tasks/{task['id']}"

    done = client.patch(url, json={"status": "done"}, headers=auth_header(manager)).json()["data"]["task"]
    assert done["isCompleted"] is True
    assert done["completedAt"] is not None

    reopened = client.patch(url, json={"status": "in_progress"}, headers=auth_header(manager)).json()["data"]["task"]
    assert reopened["isCompleted"] is False
    assert reopened["completedAt"] is None


def test_complete_endpoint(client, manager, member):
    task = create_task(client, manager, member)
    response = client.post(f"{API}/tasks/{task['id']}/complete", headers=auth_header(manager))
    assert response.status_code == 200
    completed = response.json()["data"]["task"]
    assert completed["status"] == "done"
    assert completed["isCompleted"] is True


# ========== READ ==========
def test_get_task_by_creator_and_assignee(client, manager, member):
    task = create_task(client, manager, member)
    for user in (manager, member):
        response = client.get(f"{API}/tasks/{task['id']}", headers=auth_header(user))
        assert response.status_code == 200
        assert response.json()["data"]["task"]["id"] == task["id"]


def test_task_views_show_user_summaries(client, manager, member):
    task = create_task(client, manager, member)

    listed = client.get(f"{API}/tasks", headers=auth_header(manager)).json()["data"]["items"][0]
    assert listed["assignedTo"]["name"] == "Bob Member"
    assert listed["createdBy"]["name"] == "Alice Manager"

    # second read comes from the task cache
    for _ in range(2):
        fetched = client.get(f"{API}/tasks/{task['id']}", headers=auth_header(member))
        assert fetched.status_code == 200
        assert fetched.json()["data"]["task"]["assignedTo"]["name"] == "Bob Member"
        assert fetched.json()["data"]["task"]["createdBy"]["id"] == manager["id"]


def test_get_task_forbidden_for_outsider(client, manager, member):
    outsider = register(client, name="Eve Outsider")
    task = create_task(client, manager, member)
    response = client.get(f"{API}/tasks/{task['id']}", headers=auth_header(outsider))
    assert response.status_code == 403
    assert response.json()["message"] == "You do not have permission to view this task"


def test_get_missing_task(client, manager):
    response = client.get(f"{API}/tasks/424242", headers=auth_header(manager))
    assert response.status_code == 404
    assert response.json()["message"] == "Task not found"


def test_get_task_not_served_stale_after_update(client, manager, member):
    task = create_task(client, manager, member)
    url = f"{API}/tasks/{task['id']}"

    # prime the cache
    assert client.get(url, headers=auth_header(manager)).json()["data"]["task"]["title"] == "Fix bug"

    client.patch(url, json={"title": "Fix the crash"}, headers=auth_header(manager))
    fresh = client.get(url, headers=auth_header(manager)).json()["data"]["task"]
    assert fresh["title"] == "Fix the crash"


# ========== UPDATE / DELETE OWNERSHIP ==========
def test_only_creator_can_update(client, manager, member):
    task = create_task(client, manager, member, priority="high")
    response = client.patch(
        f"{API}/tasks/{task['id']}", json={"status": "done"}, headers=auth_header(member)
    )
    assert response.status_code == 403
    assert response.json()["message"] == "You can only update tasks you created"


def test_only_creator_can_delete(client, manager, member):
    task = create_task(client, manager, member)
    response = client.delete(f"{API}/tasks/{task['id']}", headers=auth_header(member))
    assert response.status_code == 403
    assert response.json()["message"] == "You can only delete tasks you created"


def test_update_rejects_unknown_fields(client, manager, member):
    task = create_task(client, manager, member)
    response = client.patch(
        f"{API}/tasks/{task['id']}", json={"createdBy": member["id"]}, headers=auth_header(manager)
    )
    assert response.status_code == 400


def test_reassign_to_missing_user(client, manager, member):
    task = create_task(client, manager, member)
    response = client.patch(
        f"{API}/tasks/{task['id']}", json={"assignedTo": 9999}, headers=auth_header(manager)
    )
    assert response.status_code == 404
    assert response.json()["message"] == "Assigned user not found"


def test_soft_deleted_task_is_hidden(client, manager, member):
    task = create_task(client, manager, member)
    url = f"{API}/tasks/{task['id']}"
    client.get(url, headers=auth_header(manager))

    response = client.delete(url, headers=auth_header(manager))
    assert response.status_code == 200
    assert response.json()["data"] is None

    assert client.get(url, headers=auth_header(manager)).status_code == 404
    listing = client.get(f"{API}/tasks", headers=auth_header(manager)).json()["data"]
    assert listing["total"] == 0
    assert client.delete(url, headers=auth_header(manager)).status_code == 404


# ========== COMMENTS ==========
def test_assignee_can_comment(client, manager, member):
    task = create_task(client, manager, member)
    response = client.post(
        f"{API}/tasks/{task['id']}/comments", json={"text": "On it"}, headers=auth_header(member)
    )
    assert response.status_code == 201
    comments = response.json()["data"]["task"]["comments"]
    assert len(comments) == 1
    assert comments[0]["user"]["id"] == member["id"]
    assert comments[0]["user"]["name"] == "Bob Member"
    assert comments[0]["text"] == "On it"


def test_outsider_cannot_comment(client, manager, member):
    outsider = register(client, name="Eve Outsider")
    task = create_task(client, manager, member)
    response = client.post(
        f"{API}/tasks/{task['id']}/comments", json={"text": "Hi"}, headers=auth_header(outsider)
    )
    assert response.status_code == 403
    assert response.json()["message"] == "You cannot comment on this task"


# ========== LISTING ==========
def test_priority_filter_scenario(client, manager, member):
    task = create_task(client, manager, member, priority="high")
    create_task(client, manager, member, title="Write docs", priority="low")

    response = client.get(f"{API}/tasks", params={"priority": "high"}, headers=auth_header(manager))
    assert response.status_code == 200
    page = response.json()["data"]
    assert [item["id"] for item in page["items"]] == [task["id"]]

    denied = client.patch(
        f"{API}/tasks/{task['id']}", json={"title": "Hijacked"}, headers=auth_header(member)
    )
    assert denied.status_code == 403


def test_list_pagination(client, manager, member):
    for i in range(5):
        create_task(client, manager, member, title=f"Task number {i}")

    page = client.get(
        f"{API}/tasks", params={"page": 2, "limit": 2}, headers=auth_header(manager)
    ).json()["data"]
    assert page["total"] == 5
    assert page["pages"] == 3
    assert page["page"] == 2
    assert len(page["items"]) == 2
    assert page["hasNext"] is True
    assert page["hasPrev"] is True


def test_list_limit_out_of_range(client, manager):
    response = client.get(f"{API}/tasks", params={"limit": 500}, headers=auth_header(manager))
    assert response.status_code == 400


def test_list_filters_tags_search_and_sort(client, manager, member):
    create_task(client, manager, member, title="Refactor parser", tags=["backend"], priority="low")
    create_task(client, manager, member, title="Polish navbar", tags=["frontend"], priority="critical")
    create_task(client, manager, member, title="Parser docs", tags=["docs", "backend"], priority="medium")

    by_tag = client.get(
        f"{API}/tasks", params={"tags": "backend"}, headers=auth_header(manager)
    ).json()["data"]
    assert {item["title"] for item in by_tag["items"]} == {"Refactor parser", "Parser docs"}

    by_search = client.get(
        f"{API}/tasks", params={"search": "PARSER"}, headers=auth_header(manager)
    ).json()["data"]
    assert by_search["total"] == 2

    by_priority = client.get(
        f"{API}/tasks", params={"sortBy": "priority", "order": "desc"}, headers=auth_header(manager)
    ).json()["data"]
    assert [item["priority"] for item in by_priority["items"]] == ["critical", "medium", "low"]


def test_list_cache_invalidated_by_create(client, manager, member):
    create_task(client, manager, member)
    first = client.get(f"{API}/tasks", headers=auth_header(manager)).json()["data"]
    assert first["total"] == 1

    create_task(client, manager, member, title="Second task")
    second = client.get(f"{API}/tasks", headers=auth_header(manager)).json()["data"]
    assert second["total"] == 2


def test_my_tasks_only_returns_assigned(client, manager, member):
    other = register(client, name="Other Member")
    mine = create_task(client, manager, member)
    create_task(client, manager, other, title="Someone else's")

    page = client.get(f"{API}/tasks/my-tasks", headers=auth_header(member)).json()["data"]
    assert [item["id"] for item in page["items"]] == [mine["id"]]

    # reassignment drops the cached page of the previous assignee
    client.patch(
        f"{API}/tasks/{mine['id']}", json={"assignedTo": other["id"]}, headers=auth_header(manager)
    )
    page = client.get(f"{API}/tasks/my-tasks", headers=auth_header(member)).json()["data"]
    assert page["total"] == 0


def test_unknown_route_is_enveloped(client):
    response = client.get(f"{API}/nope")
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["message"] == f"Route not found: GET {API}/nope"
