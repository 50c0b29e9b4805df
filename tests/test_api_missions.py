from io import BytesIO

import pandas as pd
import pytest

from constat import building_store, main, material_store, mission_store, settings

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


@pytest.fixture
def expert_building(team):
    return building_store.create_building(created_by=team["expert"]["id"], designation="Entrepôt nord")


@pytest.fixture
def mission(client, team, login, expert_building):
    response = client.post(
        "/api/missions",
        json={
            "title": "Constat entrepôt",
            "scheduled_start_date": "2025-03-10",
            "assigned_to": team["constateur"]["id"],
            "building_ids": [expert_building["id"]],
        },
        headers=login(team["expert"]),
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestCreate:
    def test_created_as_draft_with_links(self, mission, team, expert_building):
        assert mission["status"] == "draft"
        assert mission["mission_type"] == "inspection"
        assert mission["priority"] == "medium"
        assert mission["created_by"] == team["expert"]["id"]
        assert mission["assigned_to_name"] == team["constateur"]["full_name"]
        assert mission["building_ids"] == [expert_building["id"]]

    def test_assignee_rules(self, client, team, login):
        headers = login(team["expert"])
        other = client.post(
            "/api/missions", json={"title": "X", "assigned_to": team["other_constateur"]["id"]}, headers=headers
        )
        assert other.status_code == 403
        not_field = client.post("/api/missions", json={"title": "X", "assigned_to": team["admin"]["id"]}, headers=headers)
        assert not_field.status_code == 400
        admin = client.post(
            "/api/missions", json={"title": "X", "assigned_to": team["other_constateur"]["id"]}, headers=login(team["admin"])
        )
        assert admin.status_code == 201

    def test_buildings_must_be_visible(self, client, team, login):
        foreign = building_store.create_building(created_by=team["other_expert"]["id"], designation="Ailleurs")
        response = client.post(
            "/api/missions", json={"title": "X", "building_ids": [foreign["id"]]}, headers=login(team["expert"])
        )
        assert response.status_code == 400

    def test_validation_errors(self, client, team, login):
        headers = login(team["expert"])
        response = client.post(
            "/api/missions",
            json={"title": "X", "scheduled_start_date": "2025-03-10", "scheduled_end_date": "2025-03-01"},
            headers=headers,
        )
        assert response.status_code == 400
        assert client.post("/api/missions", json={"title": "X", "priority": "asap"}, headers=headers).status_code == 422

    def test_constateur_cannot_create(self, client, team, login):
        response = client.post("/api/missions", json={"title": "X"}, headers=login(team["constateur"]))
        assert response.status_code == 403


class TestReadAndList:
    def test_visibility(self, client, team, login, mission):
        url = f"/api/missions/{mission['id']}"
        assert client.get(url, headers=login(team["constateur"])).status_code == 200
        assert client.get(url, headers=login(team["admin"])).status_code == 200
        assert client.get(url, headers=login(team["other_expert"])).status_code == 404
        assert client.get(url, headers=login(team["other_constateur"])).status_code == 404

    def test_list_filters(self, client, team, login, mission):
        headers = login(team["expert"])
        client.post("/api/missions", json={"title": "Audit toiture", "status": "completed"}, headers=headers)
        assert len(client.get("/api/missions", headers=headers).json()) == 2
        completed = client.get("/api/missions", params={"status": "completed"}, headers=headers).json()
        assert [m["title"] for m in completed] == ["Audit toiture"]
        found = client.get("/api/missions", params={"q": "entrepôt"}, headers=headers).json()
        assert [m["id"] for m in found] == [mission["id"]]
        assert client.get("/api/missions", headers=login(team["other_expert"])).json() == []


class TestUpdateAndStatus:
    def test_field_workflow(self, client, team, login, mission):
        url = f"/api/missions/{mission['id']}"
        field = login(team["constateur"])
        assert client.post(f"{url}/status", json={"status": "in_progress"}, headers=field).status_code == 403

        assert client.patch(url, json={"status": "assigned"}, headers=login(team["expert"])).status_code == 200
        started = client.post(f"{url}/status", json={"status": "in_progress"}, headers=field)
        assert started.status_code == 200
        assert started.json()["actual_start_date"]
        assert client.post(f"{url}/status", json={"status": "cancelled"}, headers=field).status_code == 403
        done = client.post(f"{url}/status", json={"status": "completed"}, headers=field)
        assert done.status_code == 200
        assert done.json()["actual_end_date"]

    def test_constateur_cannot_edit_details(self, client, team, login, mission):
        response = client.patch(f"/api/missions/{mission['id']}", json={"title": "Nouveau"}, headers=login(team["constateur"]))
        assert response.status_code == 403

    def test_expert_updates_and_relinks(self, client, team, login, mission):
        other = building_store.create_building(created_by=team["expert"]["id"], designation="Bureau")
        response = client.patch(
            f"/api/missions/{mission['id']}",
            json={"title": "Constat révisé", "priority": "high", "building_ids": [other["id"]], "assigned_to": None},
            headers=login(team["expert"]),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["title"] == "Constat révisé"
        assert body["priority"] == "high"
        assert body["building_ids"] == [other["id"]]
        assert body["assigned_to"] is None

    def test_null_does_not_reset_status_or_priority(self, client, team, login):
        headers = login(team["expert"])
        created = client.post(
            "/api/missions", json={"title": "Relevé", "status": "in_progress", "priority": "urgent"}, headers=headers
        ).json()
        response = client.patch(
            f"/api/missions/{created['id']}",
            json={"status": None, "priority": None, "mission_type": None, "description": None},
            headers=headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "in_progress"
        assert body["priority"] == "urgent"
        assert body["mission_type"] == "inspection"
        assert body["actual_start_date"] == created["actual_start_date"]

    def test_delete(self, client, team, login, mission):
        url = f"/api/missions/{mission['id']}"
        assert client.delete(url, headers=login(team["other_expert"])).status_code == 404
        assert client.delete(url, headers=login(team["constateur"])).status_code == 403
        assert client.delete(url, headers=login(team["expert"])).status_code == 204
        assert mission_store.get_mission(mission["id"]) is None


class TestMissionBuildings:
    def test_constateur_adds_building_to_open_mission(self, client, team, login, mission):
        url = f"/api/missions/{mission['id']}/buildings"
        field = login(team["constateur"])
        response = client.post(url, json={"designation": "Annexe", "ground_floor_area_sqm": 40}, headers=field)
        assert response.status_code == 201
        created = response.json()
        assert created["total_area"] == 40
        assert created["created_by"] == team["constateur"]["id"]
        listed = client.get(url, headers=field).json()
        assert {b["designation"] for b in listed} == {"Entrepôt nord", "Annexe"}

        assert client.delete(f"{url}/{created['id']}", headers=field).status_code == 204
        assert client.delete(f"{url}/{created['id']}", headers=field).status_code == 404

    def test_link_existing_building(self, client, team, login, mission):
        own = building_store.create_building(created_by=team["expert"]["id"], designation="Garage")
        headers = login(team["expert"])
        url = f"/api/missions/{mission['id']}/buildings/{own['id']}"
        assert client.put(url, headers=headers).json()["message"] == "Building linked."
        assert client.put(url, headers=headers).json()["message"] == "Building already linked."
        foreign = building_store.create_building(created_by=team["other_expert"]["id"], designation="Ailleurs")
        assert client.put(f"/api/missions/{mission['id']}/buildings/{foreign['id']}", headers=headers).status_code == 404

    def test_closed_mission_is_read_only_for_constateur(self, client, team, login, mission):
        mission_store.set_status(mission["id"], "completed")
        response = client.post(
            f"/api/missions/{mission['id']}/buildings", json={"designation": "Tard"}, headers=login(team["constateur"])
        )
        assert response.status_code == 403

    def test_materials_and_progress(self, client, team, login, mission, expert_building):
        material_store.create_material(
            created_by=team["constateur"]["id"], building_id=expert_building["id"], name="Extincteur", brand="Sicli"
        )
        headers = login(team["constateur"])
        materials = client.get(f"/api/missions/{mission['id']}/materials", headers=headers).json()
        assert [m["name"] for m in materials] == ["Extincteur"]
        assert materials[0]["progress"] == 50
        progress = client.get(f"/api/missions/{mission['id']}/progress", headers=headers).json()
        assert progress["status"] == "draft"
        assert progress["buildings"][0]["progress"] == 29
        # 29 * 0.6 + 50 * 0.4
        assert progress["overall"] == 37
        assert progress["materials_validation"]["label"] == "En attente"


class TestPlanDeMasse:
    def _upload(self, client, mission_id, headers, *, name="plan.pdf", content=PDF_BYTES, ctype="application/pdf"):
        return client.post(
            f"/api/missions/{mission_id}/plan-de-masse",
            files={"file": (name, content, ctype)},
            headers=headers,
        )

    def test_upload_download_delete(self, client, team, login, mission):
        expert = login(team["expert"])
        response = self._upload(client, mission["id"], expert)
        assert response.status_code == 200
        body = response.json()
        assert body["plan_de_masse_url"] == f"/artifacts/missions/{mission['id']}/plan-de-masse.pdf"
        assert body["plan_de_masse_filename"] == "plan.pdf"
        assert body["plan_de_masse_size"] == len(PDF_BYTES)

        field = login(team["constateur"])
        download = client.get(f"/api/missions/{mission['id']}/plan-de-masse", headers=field)
        assert download.status_code == 200
        assert download.content == PDF_BYTES
        artifact = client.get(body["plan_de_masse_url"], headers=field)
        assert artifact.status_code == 200
        assert client.get(body["plan_de_masse_url"], headers=login(team["other_expert"])).status_code == 404

        assert client.delete(f"/api/missions/{mission['id']}/plan-de-masse", headers=expert).status_code == 204
        assert client.get(f"/api/missions/{mission['id']}/plan-de-masse", headers=field).status_code == 404

    def test_rejections(self, client, team, login, mission):
        assert self._upload(client, mission["id"], login(team["constateur"])).status_code == 403
        expert = login(team["expert"])
        bad_type = self._upload(client, mission["id"], expert, name="plan.docx", ctype="application/msword")
        assert bad_type.status_code == 400
        empty = self._upload(client, mission["id"], expert, content=b"")
        assert empty.status_code == 400

    def test_size_limit_is_enforced_while_reading(self, client, team, login, mission, monkeypatch):
        monkeypatch.setattr(main, "UPLOAD_CHUNK_BYTES", 4)
        monkeypatch.setattr(settings, "PLAN_MAX_BYTES", 10)
        expert = login(team["expert"])
        too_big = self._upload(client, mission["id"], expert, content=b"x" * 11)
        assert too_big.status_code == 400
        assert "MB limit" in too_big.json()["detail"]
        assert mission_store.get_mission(mission["id"])["plan_de_masse_path"] is None
        at_limit = self._upload(client, mission["id"], expert, content=b"y" * 10)
        assert at_limit.status_code == 200
        assert at_limit.json()["plan_de_masse_size"] == 10

    def test_replacing_plan_changes_extension(self, client, team, login, mission, isolated_db):
        expert = login(team["expert"])
        self._upload(client, mission["id"], expert)
        response = self._upload(client, mission["id"], expert, name="plan.png", content=b"\x89PNG\r\n", ctype="image/png")
        assert response.status_code == 200
        assert response.json()["plan_de_masse_url"].endswith(".png")
        folder = isolated_db / "artifacts" / "missions" / mission["id"]
        assert [p.name for p in folder.iterdir() if p.is_file()] == ["plan-de-masse.png"]


class TestReportsAndExport:
    def test_generate_report(self, client, team, login, mission):
        headers = login(team["constateur"])
        response = client.post(f"/api/missions/{mission['id']}/report", headers=headers)
        assert response.status_code == 200
        body = response.json()
        assert body["filename"] == "rapport_constat-entrep-t.pdf"
        assert body["path"].startswith(f"missions/{mission['id']}/reports/rapport_constat-entrep-t_")
        stored = client.get(body["url"], headers=headers)
        assert stored.status_code == 200
        assert stored.content.startswith(b"%PDF")

    def test_download_report_is_not_stored(self, client, team, login, mission, isolated_db):
        response = client.get(f"/api/missions/{mission['id']}/report", headers=login(team["expert"]))
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert "rapport_constat-entrep-t.pdf" in response.headers["content-disposition"]
        assert response.content.startswith(b"%PDF")
        assert not (isolated_db / "artifacts" / "missions" / mission["id"] / "reports").exists()
        assert client.get(f"/api/missions/{mission['id']}/report", headers=login(team["other_expert"])).status_code == 404

    def test_export(self, client, team, login, mission):
        response = client.get("/api/missions/export", headers=login(team["expert"]))
        assert response.status_code == 200
        assert response.headers["content-type"].startswith(
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        )
        frame = pd.read_excel(BytesIO(response.content), engine="openpyxl")
        assert list(frame["Titre"]) == ["Constat entrepôt"]
        assert frame.loc[0, "Statut"] == "Brouillon"
        assert frame.loc[0, "Bâtiments"] == "Entrepôt nord"
        assert frame.loc[0, "Constateur"] == team["constateur"]["full_name"]
        assert frame.loc[0, "Plan de masse"] == "Non"

    def test_export_requires_staff(self, client, team, login, mission):
        assert client.get("/api/missions/export", headers=login(team["constateur"])).status_code == 403
