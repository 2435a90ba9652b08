# database.py
import enum
import os
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from zoneinfo import ZoneInfo

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()

STORE_TZ = ZoneInfo(os.environ.get("STORE_TIMEZONE", "America/Chicago"))


def now_utc():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def store_now(dt=None):
    """Current wall-clock time at the store (America/Chicago unless overridden)."""
    if dt is None:
        return datetime.now(STORE_TZ)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(STORE_TZ)


def store_today():
    return store_now().date()


def store_date_str(dt=None) -> str:
    return store_now(dt).strftime("%Y-%m-%d")


def store_time_str(dt=None) -> str:
    return store_now(dt).strftime("%H:%M:%S")


def store_datetime_str(dt=None) -> str:
    return store_now(dt).strftime("%Y-%m-%d %H:%M:%S")


def money(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.00")


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReportType(str, enum.Enum):
    PROFIT = "profit"
    CANCELLATION = "cancellation"
    Z_REPORT = "Z-Report"


# ---------------------------
# Models
# ---------------------------

class Employee(db.Model, UserMixin):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    ismanager = db.Column(db.Integer, nullable=False, default=0)
    employdate = db.Column(db.Date)
    hrsalary = db.Column(db.Numeric(10, 2))
    email = db.Column(db.String(160), unique=True)
    google_id = db.Column(db.String(120), unique=True)
    name = db.Column(db.String(120))

    @property
    def role(self):
        return "manager" if self.ismanager else "employee"

    def set_password(self, pw):
        self.password_hash = generate_password_hash(pw)

    def check_password(self, pw):
        return check_password_hash(self.password_hash, pw)

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "ismanager": int(self.ismanager or 0),
            "employdate": self.employdate.isoformat() if self.employdate else None,
            "hrsalary": float(self.hrsalary) if self.hrsalary is not None else None,
            "email": self.email,
            "google_id": self.google_id,
            "name": self.name,
        }


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False)
    email = db.Column(db.String(160), unique=True)
    google_id = db.Column(db.String(120))
    name = db.Column(db.String(120))
    points = db.Column(db.Integer, nullable=False, default=0)
    joindate = db.Column(db.Date)


class MenuItem(db.Model):
    __tablename__ = "menu_items"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(180), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    seasonal = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "price": float(money(self.price)),
            "seasonal": int(self.seasonal or 0),
        }


class InventoryItem(db.Model):
    __tablename__ = "inventory"

    id = db.Column(db.Integer, primary_key=True)
    ingredients = db.Column(db.String(160), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    istopping = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.ingredients,
            "price": float(self.price or 0),
            "quantity": int(self.quantity or 0),
            "istopping": int(self.istopping or 0),
        }


class MenuRecipe(db.Model):
    __tablename__ = "menu_recipe"

    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), primary_key=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("inventory.id"), primary_key=True)


class OrderLine(db.Model):
    """One cart line. Every line of a checkout shares ``order_id``."""

    __tablename__ = "orders"

    order_item_id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    order_date = db.Column(db.Date, nullable=False, index=True)
    order_time = db.Column(db.Time, nullable=False)
    menu_item_id = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    employee = db.Column(db.Integer)
    customer_id = db.Column(db.Integer, index=True)
    boba = db.Column(db.Integer, default=100)
    ice = db.Column(db.Integer, default=100)
    sugar = db.Column(db.Integer, default=100)
    size = db.Column(db.Integer, default=1)


class OrderTopping(db.Model):
    __tablename__ = "order_toppings"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    order_item_id = db.Column(db.Integer, nullable=False)
    topping_id = db.Column(db.Integer, db.ForeignKey("inventory.id"), nullable=False)


class CancelledOrderLine(db.Model):
    __tablename__ = "cancelled_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    order_date = db.Column(db.Date, nullable=False)
    order_time = db.Column(db.Time, nullable=False)
    menu_item_id = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    employee = db.Column(db.Integer)
    customer_id = db.Column(db.Integer)
    boba = db.Column(db.Integer, default=100)
    ice = db.Column(db.Integer, default=100)
    sugar = db.Column(db.Integer, default=100)
    size = db.Column(db.Integer, default=1)
    cancelled_at = db.Column(db.DateTime, default=now_utc)


class KitchenTicket(db.Model):
    """Status row per order. Its generated key is the order id shared by the lines."""

    __tablename__ = "order_status"

    order_id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False, default=OrderStatus.PENDING.value)
    updated_at = db.Column(db.DateTime, default=now_utc)


class Report(db.Model):
    __tablename__ = "reports"

    report_id = db.Column(db.Integer, primary_key=True)
    report_name = db.Column(db.String(200), nullable=False)
    report_type = db.Column(db.String(50), nullable=False, index=True)
    report_text = db.Column(db.Text, nullable=False)
    date_created = db.Column(db.DateTime, default=now_utc)
    # Only set for once-per-day report types; NULLs never collide.
    report_date = db.Column(db.Date)

    __table_args__ = (
        db.UniqueConstraint("report_type", "report_date", name="uq_reports_type_date"),
    )

    def to_dict(self):
        return {
            "report_id": self.report_id,
            "report_name": self.report_name,
            "report_type": self.report_type,
            "report_text": self.report_text,
            "date_created": self.date_created.isoformat() if self.date_created else None,
        }


class GamePlay(db.Model):
    __tablename__ = "game_plays"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    played_at = db.Column(db.DateTime, default=now_utc)
    play_date = db.Column(db.Date, nullable=False)
    points_earned = db.Column(db.Integer, nullable=False, default=0)
    moves = db.Column(db.Integer)
    time_seconds = db.Column(db.Integer)
    score = db.Column(db.Integer)
    completed = db.Column(db.Boolean, default=False)
    game_type = db.Column(db.String(40))

    __table_args__ = (
        db.UniqueConstraint("customer_id", "play_date", "game_type", name="uq_game_plays_daily"),
    )


class Settings(db.Model):
    __tablename__ = "settings"

    key = db.Column(db.String(120), primary_key=True)
    value = db.Column(db.String(1000), nullable=False)


def setting_get(key, default=None):
    row = Settings.query.filter_by(key=str(key)).first()
    if not row:
        return default
    return row.value


def setting_set(key, value):
    k = str(key)
    v = "" if value is None else str(value)
    row = Settings.query.filter_by(key=k).first()
    if not row:
        row = Settings(key=k, value=v)
        db.session.add(row)
    else:
        row.value = v
    db.session.commit()
    return v


# ---------------------------
# Identifier allocation
# ---------------------------

def next_id(model, column="id") -> int:
    col = getattr(model, column)
    current = db.session.query(db.func.coalesce(db.func.max(col), 0)).scalar()
    return int(current or 0) + 1


def is_missing_id_error(err, column="id") -> bool:
    orig = getattr(err, "orig", None) or err
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    msg = str(orig)
    if code == "23502":
        diag = getattr(orig, "diag", None)
        col = getattr(diag, "column_name", None)
        if col:
            return col == column
        return f'column "{column}"' in msg or "column" not in msg
    return "NOT NULL constraint failed" in msg and msg.strip().endswith(f".{column}")


def add_with_id_fallback(model, id_attr="id", **values):
    """Insert and commit one row, letting the database generate its id.

    Tables created without an identity default reject that insert with a
    NOT NULL violation on the id column. In that case the id is allocated as
    MAX(id)+1 and the insert retried once. Two writers racing here both get
    the same id and the primary key rejects the loser.

    Returns ``(row, used_fallback)``.
    """
    row = model(**values)
    db.session.add(row)
    try:
        db.session.commit()
        return row, False
    except IntegrityError as e:
        db.session.rollback()
        if not is_missing_id_error(e, id_attr):
            raise

    values[id_attr] = next_id(model, id_attr)
    row = model(**values)
    db.session.add(row)
    db.session.commit()
    return row, True


# ---------------------------
# Order status / schema helpers
# ---------------------------

def upsert_order_status(order_id, status):
    values = {"order_id": int(order_id), "status": str(status), "updated_at": now_utc()}
    dialect = db.session.get_bind().dialect.name

    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(KitchenTicket.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["order_id"],
            set_={"status": stmt.excluded.status, "updated_at": stmt.excluded.updated_at},
        )
        db.session.execute(stmt)
        return

    row = db.session.get(KitchenTicket, int(order_id))
    if row:
        row.status = values["status"]
        row.updated_at = values["updated_at"]
    else:
        db.session.add(KitchenTicket(**values))
    db.session.flush()


def ensure_cancelled_orders_table():
    CancelledOrderLine.__table__.create(bind=db.session.connection(), checkfirst=True)
