from datetime import time, timedelta
from decimal import Decimal

import pytest

from conftest import place
from database import db, store_today, OrderLine


@pytest.fixture
def history(app, seed):
    """Three lines today at fixed times plus one a week back."""
    tea = seed.menu_item("Classic Milk Tea", price="5.00")
    taro = seed.menu_item("Taro Milk Tea", price="4.00")
    today = store_today()
    rows = [
        (1, today, time(23, 30), tea, "5.00", 7),
        (2, today, time(1, 15), taro, "4.00", 8),
        (3, today, time(12, 0), tea, "5.00", 7),
        (4, today - timedelta(days=7), time(12, 0), taro, "4.00", 8),
    ]
    with app.app_context():
        for order_id, day, at, item, price, employee in rows:
            db.session.add(OrderLine(
                order_id=order_id, order_date=day, order_time=at,
                menu_item_id=item, price=Decimal(price), employee=employee,
            ))
        db.session.commit()
    return tea, taro


class TestTrends:

    def test_daily_series_with_estimated_cost(self, client, manager_client, seed):
        tea = seed.ingredient("Black Tea", price="0.50")
        milk = seed.ingredient("Milk", price="0.25")
        item = seed.menu_item("Classic Milk Tea", ingredient_ids=[tea, milk])
        place(client, {"id": item, "price": 5}, {"id": item, "price": 5})

        r = manager_client.get("/api/trends")
        assert r.status_code == 200
        body = r.get_json()
        assert body["group"] == "day"
        assert body["series"] == [{
            "bucket": store_today().isoformat(),
            "orders": 2,
            "revenue": 10.0,
            "est_cost": 1.5,
            "profit": 8.5,
        }]
        assert body["top"][0]["name"] == "Classic Milk Tea"
        assert body["top"][0]["units"] == 2
        assert body["debug"]["detected"]["date"] == "order_date"

    def test_week_and_month_buckets(self, manager_client, history):
        today = store_today()
        start = (today - timedelta(days=7)).isoformat()

        series = manager_client.get(f"/api/trends?group=week&start={start}").get_json()["series"]
        year, week, _ = today.isocalendar()
        assert f"{year}-{week:02d}" in [s["bucket"] for s in series]
        assert sum(s["orders"] for s in series) == 4

        series = manager_client.get(f"/api/trends?group=month&start={start}").get_json()["series"]
        assert today.strftime("%Y-%m") in [s["bucket"] for s in series]

    def test_bad_group(self, manager_client):
        assert manager_client.get("/api/trends?group=year").status_code == 400


class TestOrderHistoryQuery:

    def test_defaults_to_last_week(self, manager_client, history):
        body = manager_client.get("/api/trends/orders").get_json()
        assert body["ok"] is True
        assert body["count"] == 3
        assert body["revenue"] == 14.0
        assert body["timeStart"] == "00:00"
        assert body["timeEnd"] == "23:59"

    def test_wrapping_time_window(self, manager_client, history):
        body = manager_client.get("/api/trends/orders?timeStart=23:00&timeEnd=02:00").get_json()
        assert body["wrap"] is True
        assert sorted(i["order_id"] for i in body["items"]) == [1, 2]

    def test_filters_and_paging(self, manager_client, history):
        tea, _taro = history
        body = manager_client.get(f"/api/trends/orders?menu={tea}&employee=7&limit=1").get_json()
        assert body["count"] == 2
        assert len(body["items"]) == 1
        assert body["items"][0]["menu_item_name"] == "Classic Milk Tea"

    @pytest.mark.parametrize("query, field", [
        ("start=2025/01/01", "start"),
        ("timeStart=7:00", "timeStart"),
        ("timeEnd=24:00", "timeEnd"),
        ("limit=0", "limit"),
        ("limit=501", "limit"),
        ("offset=-1", "offset"),
        ("employee=abc", "employee"),
        ("menu=0", "menu"),
    ])
    def test_rejects_bad_params(self, manager_client, query, field):
        r = manager_client.get(f"/api/trends/orders?{query}")
        assert r.status_code == 400
        body = r.get_json()
        assert body["ok"] is False
        assert body["field"] == field

    def test_rejects_bad_ranges(self, manager_client):
        today = store_today()
        future = (today + timedelta(days=1)).isoformat()
        r = manager_client.get(f"/api/trends/orders?end={future}")
        assert r.get_json()["field"] == "end"

        r = manager_client.get(f"/api/trends/orders?start={today.isoformat()}&end={(today - timedelta(days=1)).isoformat()}")
        assert r.get_json()["error"] == "Start date cannot be after end date"

        r = manager_client.get(f"/api/trends/orders?start={(today - timedelta(days=400)).isoformat()}")
        assert r.get_json()["error"] == "Date range cannot exceed 365 days"
