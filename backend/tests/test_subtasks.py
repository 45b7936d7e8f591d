import app as app_module
from db import Role, TaskPriority


async def test_suggest_subtasks(client, factory, headers, monkeypatch):
    user = await factory.user("Dev")
    calls = []

    async def fake_generate(title, description=None):
        calls.append((title, description))
        return [{"title": "Design", "description": "Sketch the flow"}]

    monkeypatch.setattr(app_module, "generate_subtasks", fake_generate)
    res = await client.post("/api/subtasks/suggest", json={"title": " Login page ", "description": "OAuth"}, headers=headers(user))
    assert res.status_code == 200
    assert res.json() == {"subtasks": [{"title": "Design", "description": "Sketch the flow"}]}
    assert calls == [("Login page", "OAuth")]


async def test_suggest_needs_title(client, factory, headers):
    user = await factory.user("Dev")
    res = await client.post("/api/subtasks/suggest", json={"title": "  "}, headers=headers(user))
    assert res.status_code == 400
    assert res.json()["detail"] == "Title is required"


async def test_suggest_degrades_to_empty_list(client, factory, headers, monkeypatch):
    user = await factory.user("Dev")

    async def nothing(title, description=None):
        return []

    monkeypatch.setattr(app_module, "generate_subtasks", nothing)
    res = await client.post("/api/subtasks/suggest", json={"title": "Login"}, headers=headers(user))
    assert res.json() == {"subtasks": []}


async def test_create_subtask_inherits_from_parent(client, factory, headers):
    lead = await factory.user("Lead", role=Role.Lead)
    dev = await factory.user("Dev")
    team = await factory.team("Alpha", lead, members=[dev])
    project = await factory.project("Site", team, lead)
    parent = await factory.task("Parent", dev, lead, team, project_id=project.id, priority=TaskPriority.High)

    res = await client.post(f"/api/subtasks/{parent.id}", json={"title": "Step one"}, headers=headers(dev))
    assert res.status_code == 201
    sub = res.json()
    assert sub["is_subtask"] is True
    assert sub["parent_task_id"] == parent.id
    assert sub["assignee_id"] == dev.id
    assert sub["team_id"] == team.id
    assert sub["project_id"] == project.id
    assert sub["priority"] == "High"
    assert sub["status"] == "TODO"


async def test_create_subtask_errors(client, factory, headers):
    lead = await factory.user("Lead", role=Role.Lead)
    dev = await factory.user("Dev")
    peer = await factory.user("Peer")
    team = await factory.team("Alpha", lead, members=[dev, peer])
    parent = await factory.task("Parent", dev, lead, team)

    missing = await client.post("/api/subtasks/999", json={"title": "x"}, headers=headers(dev))
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Parent task not found"
    assert (await client.post(f"/api/subtasks/{parent.id}", json={"title": "x"}, headers=headers(peer))).status_code == 403
    assert (await client.post(f"/api/subtasks/{parent.id}", json={"title": ""}, headers=headers(dev))).status_code == 400


async def test_list_subtasks_in_creation_order(client, factory, headers):
    lead = await factory.user("Lead", role=Role.Lead)
    team = await factory.team("Alpha", lead)
    parent = await factory.task("Parent", lead, lead, team)
    for title in ("First", "Second", "Third"):
        await client.post(f"/api/subtasks/{parent.id}", json={"title": title}, headers=headers(lead))

    res = await client.get(f"/api/subtasks/{parent.id}", headers=headers(lead))
    assert [t["title"] for t in res.json()] == ["First", "Second", "Third"]
    assert (await client.get("/api/subtasks/999", headers=headers(lead))).status_code == 404
