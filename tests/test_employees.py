from conftest import make_employee


class TestAuth:

    def test_login_me_logout(self, app, client):
        make_employee(app, "cashier", "pw-123", 0)

        r = client.post("/api/auth/login", json={"username": "cashier", "password": "pw-123"})
        assert r.status_code == 200
        assert r.get_json()["user"]["ismanager"] == 0

        me = client.get("/api/auth/me").get_json()["user"]
        assert me["username"] == "cashier"
        assert "password_hash" not in me

        assert client.post("/api/auth/logout").status_code == 200
        assert client.get("/api/auth/me").status_code == 401

    def test_bad_password(self, app, client):
        make_employee(app, "cashier", "pw-123", 0)
        r = client.post("/api/auth/login", json={"username": "cashier", "password": "nope"})
        assert r.status_code == 401
        assert r.get_json() == {"ok": False, "error": "Invalid credentials"}


class TestEmployees:

    def test_create_normalizes_and_lists(self, manager_client):
        r = manager_client.post("/api/employees", json={
            "username": "mia",
            "password": "secret-1",
            "email": "  Mia@Example.COM ",
            "google_id": "  g-1 ",
            "hrsalary": 15.5,
            "employdate": "2025-03-01",
        })
        assert r.status_code == 200
        emp = r.get_json()["employee"]
        assert emp["email"] == "mia@example.com"
        assert emp["google_id"] == "g-1"
        assert emp["hrsalary"] == 15.5
        assert emp["employdate"] == "2025-03-01"
        assert emp["ismanager"] == 0

        names = [e["username"] for e in manager_client.get("/api/employees").get_json()["employees"]]
        assert names == ["boss", "mia"]

    def test_duplicate_email_is_409(self, manager_client):
        body = {"username": "mia", "password": "secret-1", "email": "mia@example.com"}
        assert manager_client.post("/api/employees", json=body).status_code == 200

        r = manager_client.post("/api/employees", json={**body, "username": "mia2", "email": "MIA@example.com"})
        assert r.status_code == 409
        assert r.get_json()["field"] == "email"

    def test_update_and_delete(self, manager_client):
        emp_id = manager_client.post("/api/employees", json={
            "username": "leo", "password": "secret-2",
        }).get_json()["employee"]["id"]

        r = manager_client.put("/api/employees", json={"id": emp_id, "ismanager": 1, "name": "Leo"})
        assert r.status_code == 200
        assert r.get_json()["employee"]["ismanager"] == 1
        assert r.get_json()["employee"]["name"] == "Leo"

        assert manager_client.put("/api/employees", json={"id": emp_id}).status_code == 400
        assert manager_client.put("/api/employees", json={"id": 999, "name": "x"}).status_code == 404

        r = manager_client.delete(f"/api/employees?id={emp_id}")
        assert r.status_code == 200
        assert manager_client.delete(f"/api/employees?id={emp_id}").status_code == 404

    def test_cannot_delete_self(self, manager_client):
        me = manager_client.get("/api/auth/me").get_json()["user"]["id"]
        assert manager_client.delete(f"/api/employees?id={me}").status_code == 400

    def test_employee_forbidden(self, employee_client):
        assert employee_client.get("/api/employees").status_code == 403


class TestSystem:

    def test_init_creates_default_manager_once(self, client):
        r = client.post("/api/system/init")
        assert r.status_code == 200
        assert "manager / manager12345" in r.get_json()["message"]

        r = client.post("/api/auth/login", json={"username": "manager", "password": "manager12345"})
        assert r.status_code == 200

        assert client.post("/api/system/init").get_json()["message"] == "Already initialized"

    def test_seed_menu_is_orderable(self, client, manager_client):
        assert manager_client.post("/api/system/seed-menu").status_code == 200
        items = client.get("/api/menu").get_json()["items"]
        assert len(items) == 4

        r = client.post("/api/orders", json={"items": [{"id": items[0]["id"], "price": items[0]["price"]}]})
        assert r.status_code == 200
        assert r.get_json()["totalCost"] > 0

    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.get_json()["ok"] is True

    def test_unknown_api_route_is_json(self, client):
        r = client.get("/api/nope")
        assert r.status_code == 404
        assert r.get_json()["ok"] is False
