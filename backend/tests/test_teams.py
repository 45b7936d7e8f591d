from db import (
    Role, Task, TaskStatus, User, Team, Project, JoinRequest, JoinRequestStatus,
    AssignRequest, AssignRequestStatus,
)


async def test_list_users_and_users_without_team(client, factory, headers):
    lead = await factory.user("Lead", role=Role.Lead)
    loner = await factory.user("Loner")
    await factory.user("Retired", is_active=False)
    await factory.team("Alpha", lead)

    res = await client.get("/api/users", headers=headers(lead))
    assert res.status_code == 200
    assert len(res.json()) == 3

    res = await client.get("/api/users/without-team", headers=headers(lead))
    assert [u["id"] for u in res.json()["users"]] == [loner.id]


class TestCreateTeam:
    async def test_creator_becomes_first_member(self, client, factory, headers, reload):
        lead = await factory.user("Lead", role=Role.Lead)
        res = await client.post("/api/teams", json={"name": "  Alpha  ", "description": "core"}, headers=headers(lead))
        assert res.status_code == 201
        team = res.json()["team"]
        assert team["name"] == "Alpha"
        assert team["created_by"] == lead.id

        assert (await reload(User, lead.id)).team_id == team["id"]
        members = await client.get(f"/api/teams/{team['id']}/members", headers=headers(lead))
        assert [m["id"] for m in members.json()["members"]] == [lead.id]

    async def test_admin_creates_without_joining(self, client, factory, headers, reload):
        admin = await factory.user("Admin", role=Role.Admin)
        res = await client.post("/api/teams", json={"name": "Ops"}, headers=headers(admin))
        assert res.status_code == 201
        assert (await reload(User, admin.id)).team_id is None

    async def test_blank_name(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        res = await client.post("/api/teams", json={"name": "   "}, headers=headers(lead))
        assert res.status_code == 400

    async def test_duplicate_name(self, client, factory, headers):
        admin = await factory.user("Admin", role=Role.Admin)
        await client.post("/api/teams", json={"name": "Alpha"}, headers=headers(admin))
        res = await client.post("/api/teams", json={"name": "Alpha"}, headers=headers(admin))
        assert res.status_code == 409

    async def test_user_with_team_cannot_create_another(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        await factory.team("Alpha", lead)
        res = await client.post("/api/teams", json={"name": "Beta"}, headers=headers(lead))
        assert res.status_code == 400


async def test_list_teams_has_member_counts(client, factory, headers):
    lead = await factory.user("Lead", role=Role.Lead)
    dev = await factory.user("Dev")
    outsider = await factory.user("Outsider")
    team = await factory.team("Alpha", lead, members=[dev])

    res = await client.get("/api/teams", headers=headers(outsider))
    assert res.status_code == 200
    teams = res.json()["teams"]
    assert teams[0]["id"] == team.id
    assert teams[0]["member_count"] == 2


async def test_get_team_visibility(client, factory, headers):
    lead = await factory.user("Lead", role=Role.Lead)
    admin = await factory.user("Admin", role=Role.Admin)
    outsider = await factory.user("Outsider")
    team = await factory.team("Alpha", lead)

    assert (await client.get(f"/api/teams/{team.id}", headers=headers(lead))).status_code == 200
    assert (await client.get(f"/api/teams/{team.id}", headers=headers(admin))).status_code == 200
    assert (await client.get(f"/api/teams/{team.id}", headers=headers(outsider))).status_code == 403
    assert (await client.get("/api/teams/999", headers=headers(lead))).status_code == 404
    assert (await client.get(f"/api/teams/{team.id}/members", headers=headers(outsider))).status_code == 403


class TestUpdateTeam:
    async def test_manager_renames(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        team = await factory.team("Alpha", lead)
        res = await client.put(f"/api/teams/{team.id}", json={"name": "Alpha Prime"}, headers=headers(lead))
        assert res.status_code == 200
        assert res.json()["team"]["name"] == "Alpha Prime"

    async def test_plain_member_cannot(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        dev = await factory.user("Dev")
        team = await factory.team("Alpha", lead, members=[dev])
        res = await client.put(f"/api/teams/{team.id}", json={"name": "Mine"}, headers=headers(dev))
        assert res.status_code == 403

    async def test_lead_of_other_team_cannot(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        other = await factory.user("Other Lead", role=Role.Lead)
        team = await factory.team("Alpha", lead)
        await factory.team("Beta", other)
        res = await client.put(f"/api/teams/{team.id}", json={"description": "x"}, headers=headers(other))
        assert res.status_code == 403

    async def test_duplicate_name(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        other = await factory.user("Other Lead", role=Role.Lead)
        team = await factory.team("Alpha", lead)
        await factory.team("Beta", other)
        res = await client.put(f"/api/teams/{team.id}", json={"name": "Beta"}, headers=headers(lead))
        assert res.status_code == 409


class TestDeleteTeam:
    async def test_cascades(self, client, factory, headers, reload):
        lead = await factory.user("Lead", role=Role.Lead)
        dev = await factory.user("Dev")
        applicant = await factory.user("Applicant")
        team = await factory.team("Alpha", lead, members=[dev])
        project = await factory.project("Site", team, lead)
        task = await factory.task("Build", dev, lead, team, project_id=project.id)
        sub = await factory.task("Part", dev, lead, team, parent_task_id=task.id, is_subtask=True)
        jr = await factory.join_request(applicant, team)
        ar = await factory.assign_request(task, dev, team)

        res = await client.delete(f"/api/teams/{team.id}", headers=headers(lead))
        assert res.status_code == 200

        assert await reload(Team, team.id) is None
        assert await reload(Project, project.id) is None
        assert await reload(Task, task.id) is None
        assert await reload(Task, sub.id) is None
        assert await reload(JoinRequest, jr.id) is None
        assert await reload(AssignRequest, ar.id) is None
        assert (await reload(User, dev.id)).team_id is None
        assert (await reload(User, lead.id)).team_id is None

    async def test_only_admin_or_creator(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        co_lead = await factory.user("Co Lead", role=Role.Lead)
        admin = await factory.user("Admin", role=Role.Admin)
        team = await factory.team("Alpha", lead, members=[co_lead])

        assert (await client.delete(f"/api/teams/{team.id}", headers=headers(co_lead))).status_code == 403
        assert (await client.delete(f"/api/teams/{team.id}", headers=headers(admin))).status_code == 200


class TestAddMember:
    async def test_adds_and_rejects_other_join_requests(self, client, factory, headers, reload):
        lead = await factory.user("Lead", role=Role.Lead)
        other_lead = await factory.user("Other Lead", role=Role.Lead)
        dev = await factory.user("Dev")
        team = await factory.team("Alpha", lead)
        other = await factory.team("Beta", other_lead)
        jr = await factory.join_request(dev, other)

        res = await client.post(f"/api/teams/{team.id}/members", json={"member_id": dev.id}, headers=headers(lead))
        assert res.status_code == 200
        assert res.json() == {"message": "Member added"}
        assert (await reload(User, dev.id)).team_id == team.id
        assert (await reload(JoinRequest, jr.id)).status == JoinRequestStatus.rejected

    async def test_errors(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        other_lead = await factory.user("Other Lead", role=Role.Lead)
        dev = await factory.user("Dev")
        team = await factory.team("Alpha", lead, members=[dev])
        taken = await factory.user("Taken")
        await factory.team("Beta", other_lead, members=[taken])

        url = f"/api/teams/{team.id}/members"
        assert (await client.post(url, json={"member_id": 999}, headers=headers(lead))).status_code == 404
        assert (await client.post(url, json={"member_id": dev.id}, headers=headers(lead))).status_code == 400
        assert (await client.post(url, json={"member_id": taken.id}, headers=headers(lead))).status_code == 400
        assert (await client.post(url, json={}, headers=headers(lead))).status_code == 400
        assert (await client.post("/api/teams/999/members", json={"member_id": dev.id}, headers=headers(lead))).status_code == 404

    async def test_requires_manager(self, client, factory, headers):
        lead = await factory.user("Lead", role=Role.Lead)
        dev = await factory.user("Dev")
        newbie = await factory.user("Newbie")
        team = await factory.team("Alpha", lead, members=[dev])
        res = await client.post(f"/api/teams/{team.id}/members", json={"member_id": newbie.id}, headers=headers(dev))
        assert res.status_code == 403


class TestRemoveMember:
    async def test_reassigns_open_work_to_acting_lead(self, client, factory, headers, reload):
        creator = await factory.user("Creator", role=Role.Lead)
        lead = await factory.user("Lead", role=Role.Lead)
        dev = await factory.user("Dev")
        peer = await factory.user("Peer")
        team = await factory.team("Alpha", creator, members=[lead, dev, peer])
        open_task = await factory.task("Open", dev, creator, team, status=TaskStatus.IN_PROGRESS)
        done_task = await factory.task("Done", dev, creator, team, status=TaskStatus.DONE)
        helped = await factory.task("Peer work", peer, creator, team, helpers=[dev])
        pending = await factory.assign_request(open_task, dev, team)

        res = await client.delete(f"/api/teams/{team.id}/members/{dev.id}", headers=headers(lead))
        assert res.status_code == 200
        body = res.json()
        assert body["message"] == "Member removed"
        assert body["reassigned_tasks"] == [open_task.id]

        moved = await reload(Task, open_task.id)
        assert moved.assignee_id == lead.id
        assert "Dev" in moved.updates[-1].note
        assert (await reload(Task, done_task.id)).assignee_id == dev.id
        assert (await reload(Task, helped.id)).helper_ids == []
        assert (await reload(AssignRequest, pending.id)).status == AssignRequestStatus.rejected
        assert (await reload(User, dev.id)).team_id is None

        members = await client.get(f"/api/teams/{team.id}/members", headers=headers(lead))
        assert dev.id not in [m["id"] for m in members.json()["members"]]

    async def test_admin_outside_team_hands_work_to_creator(self, client, factory, headers, reload):
        creator = await factory.user("Creator", role=Role.Lead)
        admin = await factory.user("Admin", role=Role.Admin)
        dev = await factory.user("Dev")
        team = await factory.team("Alpha", creator, members=[dev])
        task = await factory.task("Open", dev, creator, team)

        res = await client.delete(f"/api/teams/{team.id}/members/{dev.id}", headers=headers(admin))
        assert res.status_code == 200
        assert (await reload(Task, task.id)).assignee_id == creator.id

    async def test_lead_removing_themselves_hands_work_to_creator(self, client, factory, headers, reload):
        creator = await factory.user("Creator", role=Role.Lead)
        lead = await factory.user("Lead", role=Role.Lead)
        team = await factory.team("Alpha", creator, members=[lead])
        task = await factory.task("Open", lead, creator, team, status=TaskStatus.IN_PROGRESS)

        res = await client.delete(f"/api/teams/{team.id}/members/{lead.id}", headers=headers(lead))
        assert res.status_code == 200
        assert res.json()["reassigned_tasks"] == [task.id]
        moved = await reload(Task, task.id)
        assert moved.assignee_id == creator.id
        assert moved.updates[-1].note == "Task reassigned from Lead to Creator after Lead left the team"
        assert (await reload(User, lead.id)).team_id is None

    async def test_creator_cannot_be_removed(self, client, factory, headers):
        creator = await factory.user("Creator", role=Role.Lead)
        admin = await factory.user("Admin", role=Role.Admin)
        team = await factory.team("Alpha", creator)
        res = await client.delete(f"/api/teams/{team.id}/members/{creator.id}", headers=headers(admin))
        assert res.status_code == 400

    async def test_non_member_is_404(self, client, factory, headers):
        creator = await factory.user("Creator", role=Role.Lead)
        stranger = await factory.user("Stranger")
        team = await factory.team("Alpha", creator)
        res = await client.delete(f"/api/teams/{team.id}/members/{stranger.id}", headers=headers(creator))
        assert res.status_code == 404
