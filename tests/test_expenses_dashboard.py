"""
Expense CRUD, expense analytics and the dashboard rollups.
"""
from datetime import date
from zoneinfo import ZoneInfo

import pytest

import main
import works
from conftest import bill_payload


def expense(**overrides) -> dict:
    payload = {
        "date": "2024-01-15",
        "description": "Ink cartridges",
        "category": "Equipment",
        "amount": 100,
        "type": "Professional",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def spending(client, headers):
    client.post("/expenses", json=expense(), headers=headers)
    client.post("/expenses", json=expense(category="Food", amount=40, type="Personal", date="2024-01-20"), headers=headers)
    client.post("/expenses", json=expense(category="Travel", amount=300, date="2024-02-03"), headers=headers)


class TestExpenseCrud:

    def test_create_and_get(self, client, headers) -> None:
        r = client.post("/expenses", json=expense(), headers=headers)

        assert r.status_code == 201
        created = r.json()
        assert created["date"] == "2024-01-15"
        assert client.get(f"/expenses/{created['id']}", headers=headers).json()["amount"] == 100

    def test_amount_must_be_positive(self, client, headers) -> None:
        assert client.post("/expenses", json=expense(amount=0), headers=headers).status_code == 400

    def test_unknown_category(self, client, headers) -> None:
        assert client.post("/expenses", json=expense(category="Rent"), headers=headers).status_code == 400

    def test_update_and_delete(self, client, headers) -> None:
        created = client.post("/expenses", json=expense(), headers=headers).json()

        updated = client.put(f"/expenses/{created['id']}", json=expense(amount=250), headers=headers).json()
        assert updated["amount"] == 250

        assert client.delete(f"/expenses/{created['id']}", headers=headers).status_code == 200
        assert client.get(f"/expenses/{created['id']}", headers=headers).status_code == 404

    def test_list_window(self, client, headers, spending) -> None:
        rows = client.get("/expenses", params={"startDate": "2024-01-01", "endDate": "2024-01-31"}, headers=headers).json()
        assert [r["date"] for r in rows] == ["2024-01-20", "2024-01-15"]


class TestExpenseAnalytics:

    def test_summary(self, client, headers, spending) -> None:
        summary = client.get("/expenses/summary", headers=headers).json()

        assert summary["totalPersonal"] == 40
        assert summary["totalProfessional"] == 400
        assert summary["highestCategory"] == "Travel"

    def test_summary_window(self, client, headers, spending) -> None:
        summary = client.get(
            "/expenses/summary", params={"startDate": "2024-01-01", "endDate": "2024-01-31"}, headers=headers
        ).json()
        assert summary["highestCategory"] == "Equipment"
        assert summary["totalProfessional"] == 100

    def test_over_time_monthly(self, client, headers, spending) -> None:
        rows = client.get("/expenses/over-time", params={"timeFrame": "monthly"}, headers=headers).json()

        assert rows == [
            {"period": "2024-01", "personal": 40, "professional": 100},
            {"period": "2024-02", "personal": 0, "professional": 300},
        ]

    def test_categories(self, client, headers, spending) -> None:
        rows = client.get("/expenses/categories", headers=headers).json()
        assert rows[0] == {"name": "Travel", "value": 300}
        assert len(rows) == 3

    def test_transactions_filter_and_sort(self, client, headers, spending) -> None:
        rows = client.get(
            "/expenses/transactions",
            params={"type": "Professional", "sortBy": "amount", "order": "asc"},
            headers=headers,
        ).json()
        assert [r["amount"] for r in rows] == [100, 300]

    def test_reversed_window(self, client, headers) -> None:
        r = client.get("/expenses/summary", params={"startDate": "2024-02-01", "endDate": "2024-01-01"}, headers=headers)
        assert r.status_code == 400


class TestDashboard:

    def test_summary(self, client, headers, spending) -> None:
        client.post("/bills", json=bill_payload(status="paid"), headers=headers)
        client.post("/bills", json=bill_payload(partyName="Globex"), headers=headers)

        summary = client.get("/dashboard/summary", headers=headers).json()

        assert summary == {"totalRevenue": 100, "totalExpenses": 440, "pendingInvoices": 1, "activeClients": 2}

    def test_revenue_trend_is_zero_filled(self, client, headers) -> None:
        today = date.today()
        client.post("/earnings", json={"date": today.isoformat(), "amount": 500, "type": "Sales"}, headers=headers)

        trend = client.get("/dashboard/revenue-trend", params={"months": 3}, headers=headers).json()

        assert len(trend) == 3
        assert trend[-1] == {"month": today.strftime("%b %y"), "revenue": 500}
        assert [t["revenue"] for t in trend[:2]] == [0, 0]

    def test_budget_windows(self, client, headers, spending) -> None:
        client.post("/earnings", json={"date": "2024-01-15", "amount": 1000, "type": "Sales", "source": "Work"}, headers=headers)
        client.post("/earnings", json={"date": "2024-01-15", "amount": 70, "type": "Other"}, headers=headers)

        work_only = client.get("/dashboard/budget", params={"date": "2024-01-15"}, headers=headers).json()["data"]
        everything = client.get("/dashboard/budget", params={"date": "2024-01-15", "source": "all"}, headers=headers).json()["data"]

        assert work_only["daily"] == {"period": "2024-01-15", "totalEarnings": 1000, "totalExpenses": 100, "budget": 900}
        assert work_only["monthly"]["period"] == "January 2024"
        assert work_only["monthly"]["totalExpenses"] == 140
        assert work_only["yearly"]["totalExpenses"] == 440
        assert everything["daily"]["totalEarnings"] == 1070

    def test_budget_with_negative_utc_offset(self, client, headers, monkeypatch) -> None:
        new_york = ZoneInfo("America/New_York")
        monkeypatch.setattr(main, "BUSINESS_TIMEZONE", new_york)
        monkeypatch.setattr(works, "BUSINESS_TIMEZONE", new_york)
        client.post("/clients", json={"name": "Acme Corp", "email": "billing@acme.com", "phone": "9876543210"}, headers=headers)
        client.post("/works", json={
            "particulars": "Flyers", "type": "Flyer", "size": "A5", "party": "Acme Corp",
            "dateAndTime": "2024-01-15T22:00:00", "quantity": 2, "rate": 10, "paid": True,
        }, headers=headers)
        client.post("/earnings", json={"date": "2024-01-31", "amount": 50, "type": "Other"}, headers=headers)
        client.post("/expenses", json=expense(), headers=headers)
        client.post("/expenses", json=expense(date="2024-01-01", amount=7), headers=headers)
        client.post("/expenses", json=expense(date="2024-02-01", amount=9), headers=headers)

        data = client.get("/dashboard/budget", params={"date": "2024-01-15", "source": "all"}, headers=headers).json()["data"]

        assert data["daily"]["totalExpenses"] == 100
        assert data["daily"]["totalEarnings"] == 20
        assert data["monthly"]["totalExpenses"] == 107
        assert data["monthly"]["totalEarnings"] == 70
        assert data["yearly"]["totalExpenses"] == 116
