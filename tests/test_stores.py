from datetime import date, datetime

import pytest

from constat import building_store, db, material_store, mission_store, settings, storage, user_store


class TestUserStore:
    def test_create_and_verify(self, make_user):
        user = make_user("expert", email="Expert@Example.com")
        assert user["email"] == "expert@example.com"
        assert user["role"] == "expert"
        assert user_store.verify_credentials("EXPERT@example.com", "secret123")["id"] == user["id"]
        assert user_store.verify_credentials("expert@example.com", "wrong") is None
        assert "password_hash" not in user_store.public_profile(user)

    def test_duplicate_email(self, make_user):
        make_user(email="dup@example.com")
        with pytest.raises(db.INTEGRITY_ERRORS):
            make_user(email="dup@example.com")

    def test_validation(self):
        with pytest.raises(ValueError):
            user_store.create_user(email="not-an-email", password="secret123")
        with pytest.raises(ValueError):
            user_store.create_user(email="short@example.com", password="123")
        with pytest.raises(ValueError):
            user_store.create_user(email="role@example.com", password="secret123", role="owner")

    def test_disable_revokes_session(self, make_user):
        user = make_user()
        user_store.set_session_token(user["id"])
        user_store.disable_user(user["id"])
        record = user_store.get_user_by_id(user["id"])
        assert record["is_active"] is False
        assert record["session_token"] is None
        assert user_store.verify_credentials(user["email"], "secret123") is None
        assert user_store.verify_credentials(user["email"], "secret123", include_disabled=True)

    def test_list_filters(self, team):
        constateurs = user_store.list_users(role="constateur")
        assert {u["email"] for u in constateurs} == {"field@example.com", "other-field@example.com"}
        mine = user_store.list_users(created_by=team["expert"]["id"])
        assert [u["id"] for u in mine] == [team["constateur"]["id"]]


class TestBuildingStore:
    def test_derived_values(self, team):
        building = building_store.create_building(
            created_by=team["expert"]["id"],
            designation="  Atelier  ",
            basement_area_sqm=50,
            ground_floor_area_sqm=120.5,
            first_floor_area_sqm="",
            new_value_mad=200000,
            obsolescence_percentage=25,
            technical_elements={"toiture": ["Zinc"], "sol": "Béton"},
            miscellaneous_elements=["Stores", "Stores", "Rideaux"],
        )
        assert building["designation"] == "Atelier"
        assert building["total_area"] == 170.5
        assert building["depreciated_value_mad"] == 50000
        assert building["technical_elements"] == {"toiture": ["Zinc"], "sol": ["Béton"]}
        assert building["miscellaneous_elements"] == ["Stores", "Rideaux"]
        assert building["contiguity"] == "neant"

        updated = building_store.update_building(building["id"], obsolescence_percentage=None)
        assert updated["depreciated_value_mad"] is None
        updated = building_store.update_building(building["id"], first_floor_area_sqm=29.5)
        assert updated["total_area"] == 200

    @pytest.mark.parametrize(
        "fields",
        [
            {"designation": " "},
            {"designation": "X", "basement_area_sqm": -1},
            {"designation": "X", "obsolescence_percentage": 101},
            {"designation": "X", "technical_elements": {"piscine": ["oui"]}},
            {"designation": "X", "contiguity": "peut-être"},
        ],
    )
    def test_rejects_invalid_fields(self, fields):
        with pytest.raises(ValueError):
            building_store.create_building(created_by=None, **fields)

    def test_delete_cascades(self, team):
        building = building_store.create_building(created_by=None, designation="Silo")
        mission = mission_store.create_mission(created_by=team["expert"]["id"], title="M")
        mission_store.link_building(mission["id"], building["id"])
        material = material_store.create_material(created_by=None, building_id=building["id"], name="Vanne")
        assert building_store.delete_building(building["id"])
        assert material_store.get_material(material["id"]) is None
        assert mission_store.list_building_ids(mission["id"]) == []
        assert not building_store.delete_building(building["id"])

    def test_list_by_ids(self):
        first = building_store.create_building(created_by=None, designation="A")
        building_store.create_building(created_by=None, designation="B")
        assert building_store.list_buildings(ids=[]) == []
        assert [b["id"] for b in building_store.list_buildings(ids=[first["id"]])] == [first["id"]]
        assert len(building_store.list_buildings()) == 2

    def test_catalogue(self):
        catalogue = building_store.catalogue()
        assert len(catalogue["technical_elements"]) == 13
        assert catalogue["technical_elements"][0]["key"] == "semelles"
        assert len(catalogue["miscellaneous_elements"]) == 24

    def test_null_keeps_required_columns(self):
        building = building_store.create_building(
            created_by=None, designation="Silo", contiguity="oui", technical_elements={"toiture": ["Zinc"]}, new_value_mad=100
        )
        updated = building_store.update_building(
            building["id"], designation=None, contiguity=None, technical_elements=None, is_active=None, new_value_mad=None
        )
        assert updated["designation"] == "Silo"
        assert updated["contiguity"] == "oui"
        assert updated["technical_elements"]["toiture"] == ["Zinc"]
        assert updated["is_active"] is True
        assert updated["new_value_mad"] is None


class TestMaterialStore:
    @pytest.fixture
    def building(self):
        return building_store.create_building(created_by=None, designation="Hangar")

    def test_defaults(self, building):
        material = material_store.create_material(created_by=None, building_id=building["id"], name="Pompe")
        assert material["category"] == "general"
        assert material["quantity"] == 1
        assert material["status"] == "operational"
        assert material["condition"] == "bon"
        assert material["specifications"] == {}
        assert material["depreciated_value_mad"] is None

    def test_valuation_follows_updates(self, building):
        material = material_store.create_material(
            created_by=None, building_id=building["id"], name="Pompe", new_value_mad=1000, obsolescence_percentage=10
        )
        assert material["depreciated_value_mad"] == 100
        updated = material_store.update_material(material["id"], obsolescence_percentage=50)
        assert updated["depreciated_value_mad"] == 500

    def test_null_keeps_required_columns(self, building):
        material = material_store.create_material(
            created_by=None, building_id=building["id"], name="Pompe", quantity=4, condition="vetuste", new_value_mad=800
        )
        updated = material_store.update_material(
            material["id"], is_active=None, quantity=None, condition=None, status=None, name=None, new_value_mad=None
        )
        assert updated["is_active"] is True
        assert updated["quantity"] == 4
        assert updated["condition"] == "vetuste"
        assert updated["name"] == "Pompe"
        assert updated["new_value_mad"] is None

    @pytest.mark.parametrize(
        "fields",
        [
            {"building_id": "missing"},
            {"quantity": -1},
            {"manufacturing_year": 1700},
            {"installation_date": "31/12/2020"},
            {"status": "lost"},
            {"condition": "neuf"},
        ],
    )
    def test_rejects_invalid_fields(self, building, fields):
        values = {"building_id": building["id"], "name": "Pompe"}
        values.update(fields)
        with pytest.raises(ValueError):
            material_store.create_material(created_by=None, **values)

    def test_list_by_building(self, building):
        other = building_store.create_building(created_by=None, designation="Autre")
        material_store.create_material(created_by=None, building_id=building["id"], name="A")
        material_store.create_material(created_by=None, building_id=other["id"], name="B", is_active=False)
        assert [m["name"] for m in material_store.list_materials(building_ids=[building["id"]])] == ["A"]
        assert material_store.list_materials(building_ids=[]) == []
        assert [m["name"] for m in material_store.list_materials(include_inactive=False)] == ["A"]

    def test_warranty_state(self):
        today = date(2025, 6, 1)
        assert material_store.warranty_state({"warranty_end_date": "2025-05-31"}, today=today) == "expired"
        assert material_store.warranty_state({"warranty_end_date": "2025-06-01"}, today=today) == "active"
        assert material_store.warranty_state({}, today=today) is None


class TestMissionStore:
    def test_create_defaults(self, team):
        mission = mission_store.create_mission(created_by=team["expert"]["id"], title="Visite")
        assert mission["status"] == "draft"
        assert mission["priority"] == "medium"
        assert mission["mission_type"] == "inspection"
        assert mission["attachments"] == []
        assert not mission_store.has_plan(mission)

    def test_validation(self, team):
        with pytest.raises(ValueError):
            mission_store.create_mission(created_by=None, title="X", assigned_to="ghost")
        with pytest.raises(ValueError):
            mission_store.create_mission(created_by=None, title="X", priority="critical")
        with pytest.raises(ValueError):
            mission_store.create_mission(
                created_by=None, title="X", scheduled_start_date="2025-03-10", scheduled_end_date="2025-03-01"
            )
        mission = mission_store.create_mission(created_by=None, title="X", scheduled_start_date="2025-03-10")
        with pytest.raises(ValueError):
            mission_store.update_mission(mission["id"], scheduled_end_date="2025-03-01")

    def test_status_dates_are_stamped_once(self, team):
        mission = mission_store.create_mission(created_by=None, title="X", status="assigned")
        started = mission_store.set_status(mission["id"], "in_progress")
        assert started["actual_start_date"] == datetime.utcnow().date().isoformat()
        back = mission_store.set_status(mission["id"], "assigned")
        again = mission_store.set_status(mission["id"], "in_progress")
        assert again["actual_start_date"] == started["actual_start_date"]
        assert back["actual_end_date"] is None
        done = mission_store.set_status(mission["id"], "completed")
        assert done["actual_end_date"] == datetime.utcnow().date().isoformat()

    def test_null_keeps_required_columns(self, team):
        mission = mission_store.create_mission(created_by=None, title="X", status="in_progress", priority="high")
        updated = mission_store.update_mission(mission["id"], status=None, priority=None, title=None, description=None)
        assert updated["status"] == "in_progress"
        assert updated["priority"] == "high"
        assert updated["title"] == "X"
        assert updated["description"] is None

    def test_links(self, team):
        mission = mission_store.create_mission(created_by=team["expert"]["id"], title="X", assigned_to=team["constateur"]["id"])
        a = building_store.create_building(created_by=None, designation="A")
        b = building_store.create_building(created_by=None, designation="B")
        assert mission_store.link_building(mission["id"], a["id"])
        assert not mission_store.link_building(mission["id"], a["id"])
        assert mission_store.replace_buildings(mission["id"], [b["id"], a["id"], b["id"]]) == [b["id"], a["id"]]
        assert set(mission_store.list_building_ids(mission["id"])) == {a["id"], b["id"]}
        assert mission_store.list_mission_ids_for_building(a["id"], assigned_to=team["constateur"]["id"]) == [mission["id"]]
        assert mission_store.list_mission_ids_for_building(a["id"], created_by=team["other_expert"]["id"]) == []
        assert mission_store.list_mission_ids_for_building(a["id"], statuses=["completed"]) == []
        assert mission_store.unlink_building(mission["id"], a["id"])
        assert not mission_store.unlink_building(mission["id"], a["id"])

    def test_search_and_limit(self, team):
        mission_store.create_mission(created_by=None, title="Audit dépôt", description="Toiture")
        mission_store.create_mission(created_by=None, title="Inspection", description="Audit annuel")
        mission_store.create_mission(created_by=None, title="Autre")
        assert len(mission_store.list_missions(query="audit")) == 2
        assert len(mission_store.list_missions(limit=1)) == 1
        assert mission_store.list_missions(ids=[]) == []

    def test_plan_fields(self, team):
        mission = mission_store.create_mission(created_by=None, title="X")
        updated = mission_store.set_plan_de_masse(
            mission["id"], url="/artifacts/p.pdf", path="missions/x/p.pdf", filename="p.pdf", size=10
        )
        assert mission_store.has_plan(updated)
        assert updated["plan_de_masse_size"] == 10
        cleared = mission_store.clear_plan_de_masse(mission["id"])
        assert cleared["plan_de_masse_url"] is None
        assert not mission_store.has_plan(cleared)


class TestStorage:
    def test_save_plan_replaces_previous_file(self, isolated_db):
        first = storage.save_plan("m1", filename="plan.pdf", content_type="application/pdf", data=b"%PDF-1.4")
        assert first["url"] == "/artifacts/missions/m1/plan-de-masse.pdf"
        assert first["size"] == 8
        second = storage.save_plan("m1", filename="Plan.PNG", content_type=None, data=b"\x89PNG")
        assert second["path"] == "missions/m1/plan-de-masse.png"
        folder = isolated_db / "artifacts" / "missions" / "m1"
        assert sorted(p.name for p in folder.iterdir()) == ["plan-de-masse.png"]

    def test_rejected_uploads(self, monkeypatch):
        with pytest.raises(storage.ArtifactError):
            storage.save_plan("m1", filename="plan.pdf", content_type="application/pdf", data=b"")
        with pytest.raises(storage.ArtifactError):
            storage.save_plan("m1", filename="plan.docx", content_type="application/msword", data=b"x")
        monkeypatch.setattr(settings, "PLAN_MAX_BYTES", 4)
        with pytest.raises(storage.ArtifactError):
            storage.save_plan("m1", filename="plan.pdf", content_type="application/pdf", data=b"12345")

    def test_content_type_fallback(self):
        assert storage.plan_extension("scan", "image/jpeg") == "jpg"
        assert storage.plan_extension("scan.jpeg", None) == "jpeg"

    def test_paths_cannot_escape_root(self):
        with pytest.raises(storage.ArtifactError):
            storage.safe_path("../outside.txt")
        with pytest.raises(FileNotFoundError):
            storage.resolve_artifact("missions/none/plan-de-masse.pdf")

    def test_report_paths(self):
        relative = storage.report_relative_path("m1", "Audit Été 2025!", now=datetime(2025, 3, 1, 8, 0, 0))
        assert relative == "missions/m1/reports/rapport_audit-t-2025_20250301T080000.pdf"
        assert storage.slugify("***") == "mission"
