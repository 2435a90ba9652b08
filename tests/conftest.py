import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from decimal import Decimal

from app import app as flask_app
from database import db, store_today, Employee, Customer, MenuItem, InventoryItem, MenuRecipe


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, APP_ENV="development")
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_employee(app, username, password, ismanager):
    with app.app_context():
        emp = Employee(username=username, ismanager=ismanager, employdate=store_today())
        emp.set_password(password)
        db.session.add(emp)
        db.session.commit()
        return emp.id


def _login(app, username, password):
    c = app.test_client()
    r = c.post("/api/auth/login", json={"username": username, "password": password})
    assert r.status_code == 200, r.get_json()
    return c


@pytest.fixture
def manager_client(app):
    make_employee(app, "boss", "boss-pass", 1)
    return _login(app, "boss", "boss-pass")


@pytest.fixture
def employee_client(app):
    make_employee(app, "barista", "barista-pass", 0)
    return _login(app, "barista", "barista-pass")


class Seeder:
    """Writes fixture rows in short-lived app contexts and hands back ids."""

    def __init__(self, app):
        self.app = app

    def ingredient(self, name, quantity=10, price="0.50", istopping=0):
        with self.app.app_context():
            row = InventoryItem(ingredients=name, quantity=quantity, price=Decimal(price), istopping=istopping)
            db.session.add(row)
            db.session.commit()
            return row.id

    def menu_item(self, name, price="5.00", ingredient_ids=(), seasonal=0):
        with self.app.app_context():
            mi = MenuItem(name=name, price=Decimal(price), seasonal=seasonal)
            db.session.add(mi)
            db.session.flush()
            for ingredient_id in ingredient_ids:
                db.session.add(MenuRecipe(menu_item_id=mi.id, ingredient_id=ingredient_id))
            db.session.commit()
            return mi.id

    def customer(self, username="sipper", points=0):
        with self.app.app_context():
            c = Customer(username=username, points=points, joindate=store_today())
            db.session.add(c)
            db.session.commit()
            return c.id

    def quantity(self, ingredient_id):
        with self.app.app_context():
            return db.session.get(InventoryItem, ingredient_id).quantity


@pytest.fixture
def seed(app):
    return Seeder(app)


def place(client, *lines, **extra):
    body = {"items": list(lines)}
    body.update(extra)
    r = client.post("/api/orders", json=body)
    assert r.status_code == 200, r.get_json()
    return r.get_json()["orderId"]
