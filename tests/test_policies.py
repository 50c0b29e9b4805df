import pytest

from constat import building_store, material_store, mission_store, policies
from constat.roles import permissions_for


@pytest.fixture
def survey(team):
    """An expert's mission assigned to its constateur, with one building and one material."""
    expert, constateur = team["expert"], team["constateur"]
    mission = mission_store.create_mission(
        created_by=expert["id"], title="Audit entrepôt", status="assigned", assigned_to=constateur["id"]
    )
    building = building_store.create_building(created_by=constateur["id"], designation="Hangar A")
    mission_store.link_building(mission["id"], building["id"])
    material = material_store.create_material(created_by=constateur["id"], building_id=building["id"], name="Compresseur")
    return {"mission": mission, "building": building, "material": material}


class TestProfiles:
    def test_creatable_roles(self, team):
        assert policies.creatable_roles(team["super_admin"]) == {"admin", "expert", "constateur"}
        assert policies.creatable_roles(team["admin"]) == {"expert", "constateur"}
        assert policies.creatable_roles(team["expert"]) == {"constateur"}
        assert policies.creatable_roles(team["constateur"]) == set()
        assert not policies.can_create_user(team["admin"], "super_admin")

    def test_manage_profile(self, team):
        assert policies.can_manage_profile(team["super_admin"], team["admin"])
        assert not policies.can_manage_profile(team["admin"], team["super_admin"])
        assert policies.can_manage_profile(team["admin"], team["expert"])
        assert policies.can_manage_profile(team["expert"], team["constateur"])
        assert not policies.can_manage_profile(team["expert"], team["other_constateur"])
        assert not policies.can_manage_profile(team["super_admin"], team["super_admin"])

    def test_self_update_but_not_role_change(self, team):
        expert = team["expert"]
        assert policies.can_update_profile(expert, expert)
        assert policies.can_change_role(expert, expert, "expert")
        assert not policies.can_change_role(expert, expert, "admin")
        assert not policies.can_change_role(team["admin"], team["expert"], "super_admin")
        assert policies.can_change_role(team["admin"], team["expert"], "constateur")

    def test_visible_users(self, team):
        users = list(team.values())
        expert_view = policies.visible_users(team["expert"], users)
        assert [u["id"] for u in expert_view] == [team["constateur"]["id"]]
        assert len(policies.visible_users(team["admin"], users)) == len(users)
        assert policies.visible_users(team["constateur"], users) == [team["constateur"]]

    def test_disabled_users_never_pass(self, make_user):
        disabled = make_user("super_admin", is_active=False)
        assert not policies.can_create_user(disabled, "constateur")
        assert not policies.can_list_users(disabled)
        assert not any(permissions_for(disabled).values())


class TestMissions:
    def test_visibility(self, team, survey):
        mission = survey["mission"]
        assert policies.can_view_mission(team["admin"], mission)
        assert policies.can_view_mission(team["expert"], mission)
        assert policies.can_view_mission(team["constateur"], mission)
        assert not policies.can_view_mission(team["other_expert"], mission)
        assert not policies.can_view_mission(team["other_constateur"], mission)

    def test_constateur_status_moves(self, team, survey):
        mission = survey["mission"]
        constateur = team["constateur"]
        assert policies.can_change_mission_status(constateur, mission, "in_progress")
        assert not policies.can_change_mission_status(constateur, mission, "completed")
        assert not policies.can_change_mission_status(constateur, mission, "cancelled")
        started = mission_store.set_status(mission["id"], "in_progress")
        assert policies.can_change_mission_status(constateur, started, "completed")
        assert policies.can_change_mission_status(constateur, started, "assigned")
        assert not policies.can_update_mission(constateur, started)

    def test_listing_scope(self, team, survey):
        mission_store.create_mission(created_by=team["other_expert"]["id"], title="Autre")
        assert [m["id"] for m in policies.visible_missions(team["expert"])] == [survey["mission"]["id"]]
        assert [m["id"] for m in policies.visible_missions(team["constateur"])] == [survey["mission"]["id"]]
        assert len(policies.visible_missions(team["admin"])) == 2
        assert policies.visible_missions(team["other_constateur"]) == []

    def test_linking_buildings(self, team, survey):
        mission = survey["mission"]
        assert policies.can_link_building(team["constateur"], mission)
        assert not policies.can_link_building(team["other_expert"], mission)
        closed = mission_store.set_status(mission["id"], "completed")
        assert not policies.can_link_building(team["constateur"], closed)
        assert policies.can_link_building(team["expert"], closed)

    def test_documents_are_staff_only(self, team, survey):
        mission = survey["mission"]
        assert policies.can_manage_documents(team["expert"], mission)
        assert not policies.can_manage_documents(team["constateur"], mission)
        assert policies.can_read_documents(team["constateur"], mission)
        assert not policies.can_read_documents(team["other_expert"], mission)


class TestBuildingsAndMaterials:
    def test_building_visibility(self, team, survey):
        building = survey["building"]
        assert policies.can_view_building(team["constateur"], building)
        # linked to a mission the expert created
        assert policies.can_view_building(team["expert"], building)
        assert not policies.can_view_building(team["other_expert"], building)
        assert not policies.can_view_building(team["other_constateur"], building)
        assert policies.visible_building_ids(team["admin"]) is None
        assert policies.visible_building_ids(team["constateur"]) == [building["id"]]

    def test_constateur_edits_only_in_open_missions(self, team, survey):
        building, mission = survey["building"], survey["mission"]
        constateur = team["constateur"]
        assert policies.can_update_building(constateur, building)
        assert policies.can_create_material(constateur, building["id"])
        mission_store.set_status(mission["id"], "completed")
        assert not policies.can_update_building(constateur, building)
        assert not policies.can_create_material(constateur, building["id"])
        assert not policies.can_delete_material(constateur, survey["material"])

    def test_expert_building_ownership(self, team, survey):
        building = survey["building"]
        assert not policies.can_update_building(team["expert"], building)
        own = building_store.create_building(created_by=team["expert"]["id"], designation="Bureau")
        assert policies.can_update_building(team["expert"], own)
        assert own["id"] in policies.visible_building_ids(team["expert"])

    def test_material_visibility(self, team, survey):
        material = survey["material"]
        assert policies.can_view_material(team["other_constateur"], material)
        hidden = material_store.update_material(material["id"], is_active=False)
        assert not policies.can_view_material(team["other_constateur"], hidden)
        assert policies.can_view_material(team["constateur"], hidden)
        assert policies.can_view_material(team["other_expert"], hidden)
        assert policies.visible_materials(team["other_constateur"]) == []

    def test_material_delete_rules(self, team, survey):
        material = survey["material"]
        assert policies.can_delete_material(team["admin"], material)
        assert not policies.can_delete_material(team["expert"], material)
        assert policies.can_delete_material(team["constateur"], material)
        assert policies.can_update_material(team["expert"], material)
