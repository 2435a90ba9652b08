from conftest import place
from database import store_today


class TestInventoryCrud:

    def test_create_update_adjust_delete(self, manager_client):
        r = manager_client.post("/api/inventory", json={"name": "Oat Milk", "quantity": 12, "price": 0.4})
        assert r.status_code == 200
        item = r.get_json()["item"]
        assert item["name"] == "Oat Milk"
        assert item["quantity"] == 12

        r = manager_client.put(f"/api/inventory/{item['id']}", json={"price": 0.55})
        assert r.status_code == 200
        assert r.get_json()["item"]["price"] == 0.55

        r = manager_client.patch(f"/api/inventory/{item['id']}", json={"delta": -5})
        assert r.get_json()["item"]["quantity"] == 7

        r = manager_client.delete(f"/api/inventory/{item['id']}")
        assert r.status_code == 200
        assert manager_client.delete(f"/api/inventory/{item['id']}").status_code == 404

    def test_ordered_topping_cannot_be_deleted(self, client, manager_client, seed):
        jelly = seed.ingredient("Lychee Jelly", istopping=1)
        item = seed.menu_item("Classic Milk Tea")
        place(client, {"id": item, "price": 5, "toppings": [jelly]})

        r = manager_client.delete(f"/api/inventory/{jelly}")
        assert r.status_code == 400
        assert seed.quantity(jelly) == 10

    def test_create_validation(self, manager_client):
        assert manager_client.post("/api/inventory", data="x").status_code == 415
        r = manager_client.post("/api/inventory", json={"name": "", "quantity": 1, "price": 1})
        assert r.get_json()["error"] == "Name required"
        r = manager_client.post("/api/inventory", json={"name": "Ice", "quantity": -1, "price": 1})
        assert r.get_json()["error"] == "Quantity must be non-negative"
        r = manager_client.post("/api/inventory", json={"name": "Ice", "quantity": 1, "price": -2})
        assert r.get_json()["error"] == "Price must be non-negative"

    def test_search_and_low_filter(self, manager_client, seed):
        seed.ingredient("Black Tea", quantity=3)
        seed.ingredient("Green Tea", quantity=30)
        seed.ingredient("Milk", quantity=2)

        names = [i["name"] for i in manager_client.get("/api/inventory?q=tea").get_json()["items"]]
        assert names == ["Black Tea", "Green Tea"]

        names = [i["name"] for i in manager_client.get("/api/inventory?low=5").get_json()["items"]]
        assert names == ["Black Tea", "Milk"]

    def test_manager_only(self, employee_client):
        assert employee_client.get("/api/inventory").status_code == 403


class TestInventoryReports:

    def test_low_stock_report_lists_affected_menu_items(self, manager_client, seed):
        pearls = seed.ingredient("Tapioca Pearls", quantity=2)
        milk = seed.ingredient("Milk", quantity=2)
        cup = seed.ingredient("Cup", quantity=100)
        seed.menu_item("Brown Sugar Boba", ingredient_ids=[pearls, milk, cup])
        seed.menu_item("Plain Tea", ingredient_ids=[cup])

        r = manager_client.get("/api/inventory/report?threshold=5")
        assert r.status_code == 200
        report = r.get_json()["report"]
        assert {i["name"] for i in report["lowStockItems"]} == {"Tapioca Pearls", "Milk"}
        assert report["affectedMenuItems"] == [{
            "id": report["affectedMenuItems"][0]["id"],
            "name": "Brown Sugar Boba",
            "price": 5.0,
            "missing_ingredients": ["Milk", "Tapioca Pearls"],
        }]
        assert report["summary"] == {"totalLowStock": 2, "totalAffectedMenuItems": 1}

    def test_threshold_is_required_and_non_negative(self, manager_client):
        assert manager_client.get("/api/inventory/report").status_code == 400
        assert manager_client.get("/api/inventory/report?threshold=-1").status_code == 400
        assert manager_client.get("/api/inventory/report?threshold=abc").status_code == 400

    def test_usage_counts_recipe_units_and_toppings(self, client, manager_client, seed):
        tea = seed.ingredient("Black Tea", quantity=50)
        jelly = seed.ingredient("Lychee Jelly", quantity=50, istopping=1)
        item = seed.menu_item("Classic Milk Tea", ingredient_ids=[tea])
        place(client, {"id": item, "price": 5, "size": 2, "toppings": [jelly]})
        place(client, {"id": item, "price": 5})

        day = store_today().isoformat()
        r = manager_client.get(f"/api/inventory/usage?start={day}&end={day}")
        assert r.status_code == 200
        usage = {u["name"]: u["total_used"] for u in r.get_json()["usage"]}
        assert usage == {"Black Tea": 3, "Lychee Jelly": 1}

    def test_usage_requires_dates(self, manager_client):
        assert manager_client.get("/api/inventory/usage?start=2025-01-01").status_code == 400


class TestIngredients:

    def test_toppings_are_public(self, client, seed):
        seed.ingredient("Black Tea")
        seed.ingredient("Lychee Jelly", istopping=1)
        toppings = client.get("/api/ingredients/toppings").get_json()["toppings"]
        assert [t["name"] for t in toppings] == ["Lychee Jelly"]

    def test_ingredient_list_requires_login(self, client, employee_client, seed):
        seed.ingredient("Black Tea")
        assert client.get("/api/ingredients").status_code == 401
        assert len(employee_client.get("/api/ingredients").get_json()["ingredients"]) == 1
