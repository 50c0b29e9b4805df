from datetime import date, datetime

import pytest

from constat import dashboard, mission_store


NOW = datetime(2025, 3, 15, 10, 30)


class TestDateRanges:
    def test_current_month(self):
        current, previous = dashboard.date_ranges("ce_mois", now=NOW)
        assert current == (datetime(2025, 3, 1), datetime(2025, 3, 31, 23, 59, 59, 999999))
        assert previous == (datetime(2025, 2, 1), datetime(2025, 2, 28, 23, 59, 59, 999999))

    def test_january_previous_month_is_december(self):
        _, previous = dashboard.date_ranges("ce_mois", now=datetime(2025, 1, 4))
        assert previous[0] == datetime(2024, 12, 1)

    def test_three_months(self):
        current, previous = dashboard.date_ranges("3_mois", now=NOW)
        assert current[0] == datetime(2025, 1, 1)
        assert current[1].date() == date(2025, 3, 31)
        assert previous[0] == datetime(2024, 10, 1)
        assert previous[1].date() == date(2024, 12, 31)

    def test_years(self):
        current, previous = dashboard.date_ranges("annee_courante", now=NOW)
        assert current[0] == datetime(2025, 1, 1)
        assert previous[0] == datetime(2024, 1, 1)
        current, previous = dashboard.date_ranges("annee_precedente", now=NOW)
        assert current[0] == datetime(2024, 1, 1)
        assert previous[1].date() == date(2023, 12, 31)

    def test_custom_period_previous_window_has_same_length(self):
        current, previous = dashboard.date_ranges(
            "personnalise", start=date(2025, 1, 10), end=date(2025, 1, 19), now=NOW
        )
        assert current[0] == datetime(2025, 1, 10)
        assert current[1].date() == date(2025, 1, 19)
        assert previous[0] == datetime(2024, 12, 31)
        assert previous[1].date() == date(2025, 1, 9)

    @pytest.mark.parametrize(
        "period, start, end",
        [
            ("personnalise", None, date(2025, 1, 1)),
            ("personnalise", date(2025, 2, 1), date(2025, 1, 1)),
            ("semaine", None, None),
        ],
    )
    def test_invalid_periods(self, period, start, end):
        with pytest.raises(ValueError):
            dashboard.date_ranges(period, start=start, end=end, now=NOW)


class TestIndicators:
    def test_variation(self):
        assert dashboard.calculate_variation(5, 0) == 100
        assert dashboard.calculate_variation(0, 0) == 0
        assert dashboard.calculate_variation(3, 2) == 50
        assert dashboard.calculate_variation(1, 3) == -67

    def test_kpis(self):
        current = [
            {"status": "draft"},
            {"status": "in_progress", "plan_de_masse_url": "/artifacts/x.pdf"},
            {"status": "completed"},
        ]
        previous = [{"status": "completed"}]
        kpis = dashboard.compute_kpis(current, previous)
        assert kpis["total"] == 3
        assert kpis["en_cours"] == 2
        assert kpis["cloturees"] == 1
        assert kpis["sans_plan"] == 2
        assert kpis["total_variation"] == 200
        assert kpis["cloturees_variation"] == 0
        assert kpis["en_cours_variation"] == 100

    def test_status_table(self):
        table = dashboard.status_table({"en_cours": 1, "cloturees": 2})
        assert table[0] == {"statut": "En cours", "count": 1, "percent": 33}
        assert table[1]["percent"] == 67
        assert dashboard.status_table({"en_cours": 0, "cloturees": 0})[0]["percent"] == 0

    def test_labels(self):
        assert dashboard.month_label(datetime(2025, 1, 5)) == "janv. 25"
        current, _ = dashboard.date_ranges("ce_mois", now=NOW)
        assert dashboard.period_display("ce_mois", current) == "mars 2025"
        current, _ = dashboard.date_ranges("3_mois", now=NOW)
        assert dashboard.period_display("3_mois", current) == "janv. - mars 2025"
        current, _ = dashboard.date_ranges("annee_courante", now=NOW)
        assert dashboard.period_display("annee_courante", current) == "Année 2025"

    def test_parse_timestamp_normalises_to_naive_utc(self):
        assert dashboard.parse_timestamp("2025-03-01T12:00:00+02:00") == datetime(2025, 3, 1, 10, 0)
        assert dashboard.parse_timestamp("2025-03-01T12:00:00Z") == datetime(2025, 3, 1, 12, 0)
        assert dashboard.parse_timestamp("not a date") is None
        assert dashboard.parse_timestamp(None) is None

    def test_monthly_stats_covers_twelve_months(self):
        missions = [
            {"created_at": "2025-03-02T08:00:00Z", "status": "completed"},
            {"created_at": "2025-03-03T08:00:00Z", "status": "draft"},
            {"created_at": "2024-04-10T08:00:00Z", "status": "draft"},
            {"created_at": "2024-01-10T08:00:00Z", "status": "draft"},
        ]
        stats = dashboard.monthly_stats(missions, now=NOW)
        assert len(stats["labels"]) == 12
        assert stats["labels"][0] == "avr. 24"
        assert stats["labels"][-1] == "mars 25"
        assert stats["creees"][-1] == 2
        assert stats["cloturees"][-1] == 1
        assert stats["creees"][0] == 1
        assert sum(stats["creees"]) == 3


class TestBuildDashboard:
    def test_scoped_to_visible_missions(self, team):
        expert, other = team["expert"], team["other_expert"]
        mission_store.create_mission(
            created_by=expert["id"],
            title="Mine",
            status="in_progress",
            scheduled_start_date="2025-03-10",
            assigned_to=team["constateur"]["id"],
        )
        mission_store.create_mission(created_by=expert["id"], title="Done", status="completed", scheduled_start_date="2025-03-11")
        mission_store.create_mission(created_by=other["id"], title="Theirs", scheduled_start_date="2025-03-12")

        result = dashboard.build_dashboard(expert, "ce_mois", now=NOW)
        assert result["kpis"]["total"] == 2
        assert result["kpis"]["cloturees"] == 1
        assert [row["title"] for row in result["missions"]] == ["Mine"]
        row = result["missions"][0]
        assert row["constateur_name"] == team["constateur"]["full_name"]
        assert row["lieu"] == dashboard.NO_LOCATION
        assert row["progress"] == 50
        assert result["period"] == "mars 2025"

        admin_view = dashboard.build_dashboard(team["admin"], "ce_mois", now=NOW)
        assert admin_view["kpis"]["total"] == 3

    def test_unknown_period_raises(self, team):
        with pytest.raises(ValueError):
            dashboard.build_dashboard(team["admin"], "hier", now=NOW)
