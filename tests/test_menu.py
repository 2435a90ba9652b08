from conftest import place


class TestMenu:

    def test_list_is_public(self, client, seed):
        seed.menu_item("Classic Milk Tea", price="5.50")
        items = client.get("/api/menu").get_json()["items"]
        assert items[0]["name"] == "Classic Milk Tea"
        assert items[0]["price"] == 5.5

    def test_manager_updates_item(self, manager_client, seed):
        item = seed.menu_item("Classic Milk Tea")
        r = manager_client.put("/api/menu", json={"id": item, "price": 6.25, "seasonal": True})
        assert r.status_code == 200
        assert r.get_json()["item"] == {"id": item, "name": "Classic Milk Tea", "price": 6.25, "seasonal": 1}

    def test_update_requires_fields_and_item(self, manager_client, seed):
        item = seed.menu_item("Classic Milk Tea")
        assert manager_client.put("/api/menu", json={"id": item}).status_code == 400
        assert manager_client.put("/api/menu", json={"id": 999, "name": "x"}).status_code == 404

    def test_employee_cannot_update(self, employee_client, seed):
        item = seed.menu_item("Classic Milk Tea")
        assert employee_client.put("/api/menu", json={"id": item, "name": "x"}).status_code == 403


class TestRecipes:

    def test_replace_recipe(self, client, manager_client, seed):
        tea = seed.ingredient("Black Tea")
        milk = seed.ingredient("Milk")
        item = seed.menu_item("Classic Milk Tea", ingredient_ids=[tea])

        r = manager_client.put("/api/menu-item-ingredients", json={
            "menu_item_id": item, "ingredient_ids": [milk, tea, milk],
        })
        assert r.status_code == 200

        r = client.get(f"/api/menu-item-ingredients?menu_item_id={item}")
        assert r.get_json()["ingredientIds"] == [tea, milk]

    def test_unknown_ingredient_leaves_recipe_alone(self, client, manager_client, seed):
        tea = seed.ingredient("Black Tea")
        item = seed.menu_item("Classic Milk Tea", ingredient_ids=[tea])

        r = manager_client.put("/api/menu-item-ingredients", json={
            "menu_item_id": item, "ingredient_ids": [404],
        })
        assert r.status_code == 400
        assert client.get(f"/api/menu-item-ingredients?menu_item_id={item}").get_json()["ingredientIds"] == [tea]

    def test_missing_menu_item_id(self, client):
        assert client.get("/api/menu-item-ingredients").status_code == 400


class TestPopular:

    def test_best_seller_per_category(self, client, seed):
        milk_a = seed.menu_item("Classic Milk Tea")
        milk_b = seed.menu_item("Taro Milk Tea")
        green = seed.menu_item("Jasmine Green Tea")
        seasonal = seed.menu_item("Pumpkin Spice", seasonal=1)

        place(client, {"id": milk_b, "price": 5}, {"id": milk_b, "price": 5}, {"id": milk_a, "price": 5})
        place(client, {"id": green, "price": 4}, {"id": seasonal, "price": 6})

        popular = client.get("/api/popular").get_json()["popular"]
        assert popular == {"milk": milk_b, "green": green, "black": None, "seasonal": seasonal}
