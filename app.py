# app.py
import atexit
import io
import logging
import os
import re
import secrets
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from functools import wraps

from flask import Flask, request, jsonify, send_file
from flask_login import (
    LoginManager, login_user, logout_user,
    login_required, current_user
)
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlalchemy import inspect as sa_inspect, or_ as sa_or, and_ as sa_and, literal as sa_literal, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

from database import (
    db,
    now_utc, money,
    store_today, store_date_str, store_datetime_str, store_now,
    setting_get, setting_set,
    OrderStatus, ReportType,
    Employee, Customer, MenuItem, InventoryItem, MenuRecipe,
    OrderLine, OrderTopping, CancelledOrderLine, KitchenTicket,
    Report, GamePlay,
    add_with_id_fallback, upsert_order_status, ensure_cancelled_orders_table,
)


logger = logging.getLogger(__name__)

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DB_PATH = os.path.join(BASE_DIR, "boba_pos.db")

DEFAULT_TAX_RATE = "0.0825"

app = Flask(__name__)

app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", secrets.token_hex(32))
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", f"sqlite:///{DB_PATH}")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["APP_ENV"] = os.environ.get("APP_ENV", "development")
app.config["TAX_RATE"] = os.environ.get("TAX_RATE", DEFAULT_TAX_RATE)

db.init_app(app)

login_manager = LoginManager(app)


@atexit.register
def _dispose_engine():
    with app.app_context():
        db.engine.dispose()


# ---------------------------
# Errors
# ---------------------------

class ApiError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None, field=None):
        super().__init__(message)
        self.message = message
        self.field = field
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ApiError):
    status_code = 400


class ConflictError(ApiError):
    """Request is well formed but the current state forbids it."""
    status_code = 400


class NotFoundError(ApiError):
    status_code = 404


class DuplicateError(ApiError):
    status_code = 409


class UnsupportedMediaType(ApiError):
    status_code = 415


def json_error(message, code=400, **extra):
    body = {"ok": False, "error": message}
    body.update(extra)
    return jsonify(body), code


def server_error_message(e) -> str:
    if app.config.get("APP_ENV") == "production":
        return "Server error"
    return f"DB error: {e}"


def require_json():
    if not request.is_json:
        return json_error("Content-Type must be application/json", 415)
    return None


def json_body() -> dict:
    if not request.is_json:
        raise UnsupportedMediaType("Content-Type must be application/json")
    d = request.get_json(silent=True)
    if not isinstance(d, dict):
        raise ValidationError("Invalid JSON body")
    return d


@app.errorhandler(ApiError)
def _api_error(e):
    db.session.rollback()
    extra = {"field": e.field} if e.field else {}
    return json_error(e.message, e.status_code, **extra)


@app.errorhandler(SQLAlchemyError)
def _db_error(e):
    db.session.rollback()
    logger.exception("Database error on %s %s", request.method, request.path)
    return json_error(server_error_message(e), 500)


@app.errorhandler(HTTPException)
def _http_error(e):
    return json_error(e.description or e.name, e.code)


@app.errorhandler(Exception)
def _unexpected_error(e):
    db.session.rollback()
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    if app.config.get("APP_ENV") == "production":
        return json_error("Server error", 500)
    return json_error(str(e) or "Server error", 500)


# ---------------------------
# Auth
# ---------------------------

@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(Employee, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.unauthorized_handler
def _unauthorized():
    return json_error("Authentication required", 401)


def norm_role(role) -> str:
    return (role or "").strip().lower()


def require_roles(*roles):
    allowed = {norm_role(r) for r in roles}

    def deco(fn):
        @wraps(fn)
        @login_required
        def wrapper(*args, **kwargs):
            cur = norm_role(getattr(current_user, "role", ""))
            if cur != "manager" and cur not in allowed:
                return json_error("Forbidden: insufficient role", 403)
            return fn(*args, **kwargs)
        return wrapper
    return deco


# ---------------------------
# Parsing helpers
# ---------------------------

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
HHMM_RE = re.compile(r"^\d{2}:\d{2}$")


def as_int(value, field, minimum=None, maximum=None, required=True, default=None):
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field)
    try:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(value)
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)
    if minimum is not None and n < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", field=field)
    if maximum is not None and n > maximum:
        raise ValidationError(f"{field} cannot exceed {maximum}", field=field)
    return n


def as_amount(value, field) -> Decimal:
    if isinstance(value, bool) or value is None or value == "":
        raise ValidationError(f"{field} must be a non-negative number", field=field)
    try:
        amount = Decimal(str(value))
    except Exception:
        raise ValidationError(f"{field} must be a non-negative number", field=field)
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must be a non-negative number", field=field)
    return amount


def parse_iso_date(value, field):
    s = (value or "").strip()[:10]
    if not ISO_DATE_RE.match(s):
        raise ValidationError("Date must be in YYYY-MM-DD format", field=field)
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise ValidationError("Invalid date", field=field)


def parse_hhmm(value, field):
    s = (value or "").strip()[:5]
    if not HHMM_RE.match(s):
        raise ValidationError("Time must be in HH:MM format", field=field)
    hours, minutes = int(s[:2]), int(s[3:])
    if hours > 23 or minutes > 59:
        raise ValidationError("Time must be valid 24-hour format (00:00-23:59)", field=field)
    return time(hours, minutes)


def as_date(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def fmt_time(value):
    if value is None:
        return None
    if isinstance(value, time):
        return value.strftime("%H:%M:%S")
    return str(value)[:8]


def tax_rate() -> Decimal:
    return Decimal(str(setting_get("tax_rate", app.config["TAX_RATE"])))


# ---------------------------
# Inventory consumption
# ---------------------------

def recipe_ingredient_ids(menu_item_id):
    rows = MenuRecipe.query.filter_by(menu_item_id=menu_item_id).order_by(MenuRecipe.ingredient_id.asc()).all()
    return [r.ingredient_id for r in rows]


def consume_recipe(menu_item_id, size) -> Decimal:
    """Take ``size`` units of every recipe ingredient; returns their cost."""
    cost = Decimal("0.00")
    for ingredient_id in recipe_ingredient_ids(menu_item_id):
        ing = db.session.get(InventoryItem, ingredient_id, with_for_update=True)
        if not ing:
            continue
        if int(ing.quantity or 0) < size:
            raise ValidationError(f"Insufficient inventory for ingredient ID {ingredient_id}")
        cost += Decimal(str(ing.price or 0)) * size
        ing.quantity = int(ing.quantity or 0) - size
    return cost


def restore_recipe(menu_item_id, size) -> Decimal:
    """Give back ``size`` units of every recipe ingredient; returns their cost."""
    cost = Decimal("0.00")
    for ingredient_id in recipe_ingredient_ids(menu_item_id):
        ing = db.session.get(InventoryItem, ingredient_id, with_for_update=True)
        if not ing:
            continue
        cost += Decimal(str(ing.price or 0)) * size
        ing.quantity = int(ing.quantity or 0) + size
    return cost


# ---------------------------
# Order placement
# ---------------------------

def parse_cart_line(item, idx):
    if not isinstance(item, dict):
        raise ValidationError("Invalid order items")
    prefix = f"items[{idx}]"
    toppings = item.get("toppings") or []
    if not isinstance(toppings, list):
        raise ValidationError(f"{prefix}.toppings must be an array")
    topping_ids = []
    for t in toppings:
        tid = t.get("id") if isinstance(t, dict) else t
        topping_ids.append(as_int(tid, f"{prefix}.toppings", minimum=1))
    return {
        "menu_item_id": as_int(item.get("id"), f"{prefix}.id", minimum=1),
        "price": money(as_amount(item.get("price"), f"{prefix}.price")),
        "size": as_int(item.get("size"), f"{prefix}.size", minimum=1, required=False, default=1),
        "boba": as_int(item.get("boba"), f"{prefix}.boba", minimum=0, required=False, default=100),
        "ice": as_int(item.get("ice"), f"{prefix}.ice", minimum=0, required=False, default=100),
        "sugar": as_int(item.get("sugar"), f"{prefix}.sugar", minimum=0, required=False, default=100),
        "toppings": topping_ids,
    }


def place_order(items, employee_id=None, customer_id=None):
    if items is None or (isinstance(items, list) and not items):
        raise ValidationError("No items provided")
    if not isinstance(items, list):
        raise ValidationError("Invalid order items")

    lines = [parse_cart_line(it, i) for i, it in enumerate(items)]
    now = store_now()
    order_date = now.date()
    order_time = now.time().replace(microsecond=0, tzinfo=None)

    try:
        ticket = KitchenTicket(status=OrderStatus.PENDING.value, updated_at=now_utc())
        db.session.add(ticket)
        db.session.flush()
        order_id = ticket.order_id

        total_revenue = Decimal("0.00")
        total_cost = Decimal("0.00")

        for line in lines:
            row = OrderLine(
                order_id=order_id,
                order_date=order_date,
                order_time=order_time,
                menu_item_id=line["menu_item_id"],
                price=line["price"],
                employee=employee_id,
                customer_id=customer_id,
                boba=line["boba"],
                ice=line["ice"],
                sugar=line["sugar"],
                size=line["size"],
            )
            db.session.add(row)
            db.session.flush()

            for topping_id in line["toppings"]:
                db.session.add(OrderTopping(
                    order_id=order_id,
                    order_item_id=row.order_item_id,
                    topping_id=topping_id,
                ))

            total_revenue += line["price"]
            total_cost += consume_recipe(line["menu_item_id"], line["size"])

        profit = total_revenue - total_cost
        db.session.add(Report(
            report_name=f"Order {order_id} Profit",
            report_type=ReportType.PROFIT.value,
            report_text=(
                f"Order ID: {order_id}, Revenue: ${total_revenue:.2f}, Cost: ${total_cost:.2f}, "
                f"Profit: ${profit:.2f}, Date: {order_date.isoformat()} {order_time.strftime('%H:%M:%S')}"
            ),
            date_created=now_utc(),
        ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Order %s placed: %d line(s), revenue %.2f", order_id, len(lines), total_revenue)
    return {
        "orderId": order_id,
        "totalRevenue": float(total_revenue),
        "totalCost": float(money(total_cost)),
        "profit": float(money(profit)),
    }


# ---------------------------
# Order cancellation
# ---------------------------

def cancel_order(order_id):
    try:
        active = (
            db.session.query(db.func.count(OrderLine.order_item_id))
            .filter(OrderLine.order_id == order_id)
            .scalar()
        )
        if not active:
            raise NotFoundError("Order not found or already cancelled")

        ticket = db.session.get(KitchenTicket, order_id)
        if ticket and ticket.status == OrderStatus.CANCELLED.value:
            raise ConflictError("Order is already cancelled")

        ensure_cancelled_orders_table()

        lines = (
            OrderLine.query
            .filter_by(order_id=order_id)
            .order_by(OrderLine.order_item_id.asc())
            .all()
        )
        if not lines:
            raise NotFoundError("No order items found")

        total_revenue = Decimal("0.00")
        total_cost = Decimal("0.00")
        cancelled_at = now_utc()

        for line in lines:
            size = int(line.size or 1)
            price = money(line.price)
            total_revenue += price

            db.session.add(CancelledOrderLine(
                order_id=line.order_id,
                order_date=line.order_date,
                order_time=line.order_time,
                menu_item_id=line.menu_item_id,
                price=price,
                employee=line.employee,
                customer_id=line.customer_id,
                boba=line.boba,
                ice=line.ice,
                sugar=line.sugar,
                size=size,
                cancelled_at=cancelled_at,
            ))

            total_cost += restore_recipe(line.menu_item_id, size)

        OrderTopping.query.filter_by(order_id=order_id).delete(synchronize_session=False)
        OrderLine.query.filter_by(order_id=order_id).delete(synchronize_session=False)

        profit = -(total_revenue - total_cost)

        db.session.add(Report(
            report_name=f"Order {order_id} Cancelled",
            report_type=ReportType.CANCELLATION.value,
            report_text=(
                f"Order ID: {order_id}, Revenue Lost: ${total_revenue:.2f}, "
                f"Cost Saved: ${total_cost:.2f}, Net Impact: ${profit:.2f}, "
                f"Cancelled: {store_datetime_str()}"
            ),
            date_created=cancelled_at,
        ))

        upsert_order_status(order_id, OrderStatus.CANCELLED.value)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Order %s cancelled: %d line(s) refunded %.2f", order_id, len(lines), total_revenue)
    return {
        "orderId": order_id,
        "itemsCancelled": len(lines),
        "refundAmount": float(total_revenue),
        "totalCost": float(money(total_cost)),
        "profit": float(money(profit)),
    }


# ---------------------------
# Kitchen
# ---------------------------

def _line_json(line, menu_name):
    return {
        "menu_item_id": line.menu_item_id,
        "menu_item_name": menu_name or "Unknown Item",
        "price": float(money(line.price)),
        "size": int(line.size or 1),
        "boba": 100 if line.boba is None else int(line.boba),
        "ice": 100 if line.ice is None else int(line.ice),
        "sugar": 100 if line.sugar is None else int(line.sugar),
    }


def _group_lines(rows, status_for):
    grouped = {}
    for line, menu_name, status in rows:
        o = grouped.get(line.order_id)
        if o is None:
            o = grouped[line.order_id] = {
                "order_id": line.order_id,
                "order_date": line.order_date.isoformat(),
                "order_time": line.order_time,
                "employee": line.employee,
                "status": status_for(status),
                "items": [],
            }
        if line.order_time < o["order_time"]:
            o["order_time"] = line.order_time
        if line.employee is not None and (o["employee"] is None or line.employee < o["employee"]):
            o["employee"] = line.employee
        o["items"].append(_line_json(line, menu_name))

    for o in grouped.values():
        o["order_time"] = fmt_time(o["order_time"])
    return list(grouped.values())


def kitchen_orders(day):
    active_rows = (
        db.session.query(OrderLine, MenuItem.name, KitchenTicket.status)
        .outerjoin(MenuItem, MenuItem.id == OrderLine.menu_item_id)
        .outerjoin(KitchenTicket, KitchenTicket.order_id == OrderLine.order_id)
        .filter(OrderLine.order_date == day)
        .order_by(OrderLine.order_item_id.asc())
        .all()
    )
    orders = _group_lines(active_rows, lambda s: s or OrderStatus.PENDING.value)

    ensure_cancelled_orders_table()
    cancelled_rows = (
        db.session.query(CancelledOrderLine, MenuItem.name, sa_literal(OrderStatus.CANCELLED.value))
        .outerjoin(MenuItem, MenuItem.id == CancelledOrderLine.menu_item_id)
        .filter(CancelledOrderLine.order_date == day)
        .order_by(CancelledOrderLine.id.asc())
        .all()
    )
    orders += _group_lines(cancelled_rows, lambda _s: OrderStatus.CANCELLED.value)

    orders.sort(key=lambda o: o["order_id"], reverse=True)
    return orders


# ---------------------------
# X / Z reports
# ---------------------------

def daily_sales_summary(day):
    rows = (
        db.session.query(OrderLine.order_id, OrderLine.order_time, OrderLine.price, MenuItem.name)
        .outerjoin(MenuItem, MenuItem.id == OrderLine.menu_item_id)
        .filter(OrderLine.order_date == day)
        .all()
    )

    hours = {}
    top = {}
    order_ids = set()
    total_sales = Decimal("0.00")

    for order_id, order_time, price, menu_name in rows:
        price = money(price)
        total_sales += price
        order_ids.add(order_id)

        h = hours.setdefault(order_time.hour, {"orders": set(), "sales": Decimal("0.00"), "items": 0})
        h["orders"].add(order_id)
        h["sales"] += price
        h["items"] += 1

        if menu_name is not None:
            t = top.setdefault(menu_name, {"quantity": 0, "revenue": Decimal("0.00")})
            t["quantity"] += 1
            t["revenue"] += price

    hourly = [
        {"hour": hour, "orders": len(h["orders"]), "sales": float(h["sales"]), "items": h["items"]}
        for hour, h in sorted(hours.items())
    ]

    top_items = sorted(top.items(), key=lambda kv: (-kv[1]["quantity"], -kv[1]["revenue"], kv[0]))[:10]
    top_items = [
        {"item_name": name, "quantity": t["quantity"], "revenue": float(t["revenue"])}
        for name, t in top_items
    ]

    total_orders = len(order_ids)
    avg = (total_sales / total_orders).quantize(Decimal("0.01")) if total_orders else Decimal("0.00")

    return {
        "totals": {
            "total_orders": total_orders,
            "total_sales": float(total_sales),
            "total_taxes": float(money(total_sales * tax_rate())),
            "total_items": len(rows),
            "avg_order_value": float(avg),
        },
        "hourlySales": hourly,
        "topItems": top_items,
    }


def z_report_exists(day) -> bool:
    return (
        Report.query
        .filter_by(report_type=ReportType.Z_REPORT.value, report_date=day)
        .first()
    ) is not None


RULE = "=" * 55
THIN = "-" * 55


def format_z_report(day, generated, summary) -> str:
    totals = summary["totals"]
    out = [
        RULE,
        "Z-REPORT".center(55).rstrip(),
        RULE,
        f"Date: {day.isoformat()}",
        f"Generated: {generated}",
        RULE,
        "",
        "DAILY TOTALS",
        THIN,
        f"{'Total Sales:':<22}${totals['total_sales']:.2f}",
        f"{'Total Taxes:':<22}${totals['total_taxes']:.2f}",
        f"{'Total Orders:':<22}{totals['total_orders']}",
        f"{'Total Items Sold:':<22}{totals['total_items']}",
        f"{'Average Order Value:':<22}${totals['avg_order_value']:.2f}",
        "",
        "HOURLY SALES BREAKDOWN",
        THIN,
        f"{'Hour':<16}{'Orders':>10}{'Sales':>14}{'Items':>10}",
        THIN,
    ]
    if not summary["hourlySales"]:
        out.append("No sales recorded today.")
    for row in summary["hourlySales"]:
        span = f"{row['hour']:02d}:00 - {(row['hour'] + 1):02d}:00"
        out.append(f"{span:<16}{row['orders']:>10}{'$ ' + format(row['sales'], '.2f'):>14}{row['items']:>10}")

    out += [
        "",
        "TOP 10 SELLING ITEMS",
        THIN,
        f"{'Item':<35}{'Qty':>7}{'Revenue':>13}",
        THIN,
    ]
    if not summary["topItems"]:
        out.append("No items sold today.")
    for item in summary["topItems"]:
        name = item["item_name"][:35]
        out.append(f"{name:<35}{item['quantity']:>7}{'$ ' + format(item['revenue'], '.2f'):>13}")

    out += [
        "",
        RULE,
        "END OF REPORT".center(55).rstrip(),
        RULE,
    ]
    return "\n".join(out) + "\n"


Z_REPORT_EXISTS_MSG = (
    "A Z-Report has already been generated for today. "
    "Only one Z-Report can be generated per day."
)


def generate_z_report():
    day = store_today()
    if z_report_exists(day):
        raise ConflictError(Z_REPORT_EXISTS_MSG)

    summary = daily_sales_summary(day)
    report_text = format_z_report(day, store_datetime_str(), summary)

    try:
        row, used_fallback = add_with_id_fallback(
            Report,
            "report_id",
            report_name=f"Z-Report - {day.isoformat()}",
            report_type=ReportType.Z_REPORT.value,
            report_text=report_text,
            report_date=day,
            date_created=now_utc(),
        )
    except IntegrityError:
        db.session.rollback()
        if z_report_exists(day):
            raise ConflictError(Z_REPORT_EXISTS_MSG)
        raise

    logger.info("Z-Report %s generated for %s", row.report_id, day.isoformat())
    return row, used_fallback


# ---------------------------
# PDF rendering
# ---------------------------

def build_receipt_pdf_bytes(order_id, lines, status):
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter

    c.setFont("Helvetica-Bold", 14)
    c.drawString(40, height - 50, setting_get("store_name", "Boba POS"))

    first = lines[0][0]
    c.setFont("Helvetica", 10)
    c.drawString(40, height - 70, f"Order: #{order_id}")
    c.drawString(40, height - 85, f"Date: {first.order_date.isoformat()} {fmt_time(first.order_time)}")
    c.drawString(40, height - 100, f"Status: {status}")

    y = height - 130
    c.setFont("Helvetica-Bold", 10)
    c.drawString(40, y, "Item")
    c.drawString(330, y, "Size")
    c.drawString(450, y, "Price")
    y -= 12
    c.line(40, y, 560, y)
    y -= 14

    subtotal = Decimal("0.00")
    c.setFont("Helvetica", 10)
    for line, menu_name in lines:
        price = money(line.price)
        subtotal += price
        c.drawString(40, y, (menu_name or "Unknown Item")[:45])
        c.drawRightString(360, y, str(int(line.size or 1)))
        c.drawRightString(560, y, f"{price:.2f}")
        y -= 12
        c.setFont("Helvetica", 8)
        c.drawString(52, y, f"boba {line.boba or 0}%  ice {line.ice or 0}%  sugar {line.sugar or 0}%")
        c.setFont("Helvetica", 10)
        y -= 14
        if y < 80:
            c.showPage()
            y = height - 60
            c.setFont("Helvetica", 10)

    tax = money(subtotal * tax_rate())
    y -= 6
    c.line(40, y, 560, y)
    y -= 16
    c.drawRightString(560, y, f"Subtotal: {subtotal:.2f}")
    y -= 14
    c.drawRightString(560, y, f"Tax: {tax:.2f}")
    y -= 14
    c.setFont("Helvetica-Bold", 10)
    c.drawRightString(560, y, f"Total: {subtotal + tax:.2f}")

    c.showPage()
    c.save()
    buffer.seek(0)
    return buffer.read()


def build_report_pdf_bytes(report: Report):
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter

    c.setFont("Helvetica-Bold", 12)
    c.drawString(40, height - 50, report.report_name)
    c.setFont("Courier", 9)

    y = height - 75
    for raw in (report.report_text or "").splitlines():
        c.drawString(40, y, raw[:95])
        y -= 11
        if y < 50:
            c.showPage()
            c.setFont("Courier", 9)
            y = height - 50

    c.showPage()
    c.save()
    buffer.seek(0)
    return buffer.read()


# ---------------------------
# System
# ---------------------------

@app.route("/api/health", methods=["GET"])
def api_health():
    return jsonify({"ok": True, "time": now_utc().isoformat(), "store_date": store_date_str()})


@app.route("/api/system/init", methods=["POST"])
def api_system_init():
    db.create_all()

    if setting_get("store_name") is None:
        setting_set("store_name", "Boba POS")
    if setting_get("tax_rate") is None:
        setting_set("tax_rate", app.config["TAX_RATE"])

    if Employee.query.count() == 0:
        manager = Employee(username="manager", name="Manager", ismanager=1, employdate=store_today())
        manager.set_password("manager12345")
        db.session.add(manager)
        db.session.commit()
        logger.info("Default manager account created")
        return jsonify({"ok": True, "message": "Initialized. Default manager: manager / manager12345"})

    return jsonify({"ok": True, "message": "Already initialized"})


SEED_MENU = [
    ("Classic Milk Tea", "3.50", 0, ["Black Tea", "Milk", "Tapioca Pearls", "Cup"]),
    ("Taro Milk Tea", "4.00", 0, ["Taro Powder", "Milk", "Tapioca Pearls", "Cup"]),
    ("Matcha Green Tea", "3.75", 0, ["Matcha Powder", "Green Tea", "Cup"]),
    ("Brown Sugar Boba", "4.25", 1, ["Brown Sugar Syrup", "Milk", "Tapioca Pearls", "Cup"]),
]

SEED_INVENTORY = [
    ("Black Tea", 200, "0.20", 0),
    ("Green Tea", 200, "0.20", 0),
    ("Milk", 150, "0.35", 0),
    ("Taro Powder", 80, "0.45", 0),
    ("Matcha Powder", 80, "0.60", 0),
    ("Brown Sugar Syrup", 100, "0.30", 0),
    ("Tapioca Pearls", 300, "0.25", 1),
    ("Lychee Jelly", 120, "0.30", 1),
    ("Cup", 500, "0.10", 0),
]


@app.route("/api/system/seed-menu", methods=["POST"])
@require_roles("manager")
def api_seed_menu():
    if MenuItem.query.count() > 0:
        return jsonify({"ok": True, "message": "Menu already present"})

    by_name = {}
    for name, qty, price, topping in SEED_INVENTORY:
        ing = InventoryItem(ingredients=name, quantity=qty, price=Decimal(price), istopping=topping)
        db.session.add(ing)
        by_name[name] = ing
    db.session.flush()

    for name, price, seasonal, ingredients in SEED_MENU:
        mi = MenuItem(name=name, price=Decimal(price), seasonal=seasonal)
        db.session.add(mi)
        db.session.flush()
        for ing_name in ingredients:
            db.session.add(MenuRecipe(menu_item_id=mi.id, ingredient_id=by_name[ing_name].id))

    db.session.commit()
    return jsonify({"ok": True, "message": f"Seeded {len(SEED_MENU)} menu items"})


# ---------------------------
# Auth routes
# ---------------------------

@app.route("/api/auth/login", methods=["POST"])
def api_login():
    d = json_body()
    username = (d.get("username") or "").strip()
    password = d.get("password") or ""
    if not username or not password:
        return json_error("Missing credentials", 400)

    u = Employee.query.filter_by(username=username).first()
    if not u or not u.check_password(password):
        return json_error("Invalid credentials", 401)

    login_user(u)
    return jsonify({"ok": True, "user": {"id": u.id, "username": u.username, "ismanager": int(u.ismanager or 0)}})


@app.route("/api/auth/logout", methods=["POST"])
@login_required
def api_logout():
    logout_user()
    return jsonify({"ok": True})


@app.route("/api/auth/me", methods=["GET"])
@login_required
def api_me():
    return jsonify({"ok": True, "user": current_user.to_dict()})


# ---------------------------
# Orders
# ---------------------------

@app.route("/api/orders", methods=["POST"])
def api_orders_create():
    d = json_body()
    employee_id = as_int(d.get("employeeId"), "employeeId", minimum=1, required=False)
    customer_id = as_int(d.get("customerId"), "customerId", minimum=1, required=False)

    result = place_order(d.get("items"), employee_id=employee_id, customer_id=customer_id)
    result.update({"ok": True, "message": "Order placed successfully"})
    return jsonify(result)


@app.route("/api/orders/cancel", methods=["POST"])
@login_required
def api_orders_cancel():
    d = json_body()
    order_id = d.get("orderId")
    if not isinstance(order_id, (int, float)):
        return json_error("Valid order ID required", 400)
    try:
        order_id = as_int(order_id, "orderId", minimum=1)
    except ValidationError:
        return json_error("Valid order ID required", 400)

    result = cancel_order(order_id)
    result.update({"ok": True, "message": f"Order {order_id} cancelled successfully"})
    return jsonify(result)


@app.route("/api/orders/history", methods=["GET"])
def api_orders_history():
    customer_id = request.args.get("customerId")
    if not customer_id:
        return json_error("Customer ID required", 400)
    customer_id = as_int(customer_id, "customerId", minimum=1)

    recent_ids = [
        r.order_id for r in (
            db.session.query(OrderLine.order_id)
            .filter(OrderLine.customer_id == customer_id)
            .group_by(OrderLine.order_id)
            .order_by(db.func.max(OrderLine.order_date).desc(), db.func.max(OrderLine.order_time).desc())
            .limit(50)
            .all()
        )
    ]
    if not recent_ids:
        return jsonify({"ok": True, "orders": []})

    rows = (
        db.session.query(OrderLine, MenuItem.name, KitchenTicket.status)
        .outerjoin(MenuItem, MenuItem.id == OrderLine.menu_item_id)
        .outerjoin(KitchenTicket, KitchenTicket.order_id == OrderLine.order_id)
        .filter(OrderLine.order_id.in_(recent_ids))
        .order_by(OrderLine.order_item_id.asc())
        .all()
    )

    toppings = {}
    topping_rows = (
        db.session.query(OrderTopping.order_item_id, InventoryItem)
        .select_from(OrderTopping)
        .join(InventoryItem, InventoryItem.id == OrderTopping.topping_id)
        .filter(OrderTopping.order_id.in_(recent_ids))
        .all()
    )
    for order_item_id, inv in topping_rows:
        toppings.setdefault(order_item_id, []).append(
            {"id": inv.id, "name": inv.ingredients, "price": float(inv.price or 0)}
        )

    orders = {}
    for line, menu_name, status in rows:
        o = orders.setdefault(line.order_id, {
            "order_id": line.order_id,
            "order_date": line.order_date.isoformat(),
            "order_time": fmt_time(line.order_time),
            "status": status or OrderStatus.PENDING.value,
            "items": [],
        })
        item = _line_json(line, menu_name)
        item["toppings"] = toppings.get(line.order_item_id, [])
        o["items"].append(item)

    out = [orders[oid] for oid in recent_ids if oid in orders]
    return jsonify({"ok": True, "orders": out})


@app.route("/api/orders/<int:order_id>/receipt.pdf", methods=["GET"])
def api_order_receipt_pdf(order_id):
    lines = (
        db.session.query(OrderLine, MenuItem.name)
        .outerjoin(MenuItem, MenuItem.id == OrderLine.menu_item_id)
        .filter(OrderLine.order_id == order_id)
        .order_by(OrderLine.order_item_id.asc())
        .all()
    )
    status = None
    if lines:
        ticket = db.session.get(KitchenTicket, order_id)
        status = ticket.status if ticket else OrderStatus.PENDING.value
    else:
        ensure_cancelled_orders_table()
        lines = (
            db.session.query(CancelledOrderLine, MenuItem.name)
            .outerjoin(MenuItem, MenuItem.id == CancelledOrderLine.menu_item_id)
            .filter(CancelledOrderLine.order_id == order_id)
            .order_by(CancelledOrderLine.id.asc())
            .all()
        )
        status = OrderStatus.CANCELLED.value
    if not lines:
        return json_error("Order not found", 404)

    pdf_bytes = build_receipt_pdf_bytes(order_id, lines, status)
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"receipt_{order_id}.pdf"
    )


# ---------------------------
# Kitchen
# ---------------------------

@app.route("/api/kitchen", methods=["GET"])
@login_required
def api_kitchen_list():
    day = store_today()
    orders = kitchen_orders(day)
    logger.debug("Kitchen view for %s: %d order(s)", day.isoformat(), len(orders))
    return jsonify({"ok": True, "date": day.isoformat(), "orders": orders})


@app.route("/api/kitchen", methods=["POST"])
@login_required
def api_kitchen_update():
    d = json_body()
    if not d.get("orderId"):
        return json_error("Order ID required", 400)
    order_id = as_int(d.get("orderId"), "orderId", minimum=1)

    new_status = (d.get("status") or "").strip()
    if new_status not in [s.value for s in OrderStatus]:
        return json_error("Invalid status. Must be 'pending', 'completed' or 'cancelled'", 400)

    ticket = db.session.get(KitchenTicket, order_id)
    if not ticket:
        return json_error("Order not found", 404)
    if ticket.status == OrderStatus.CANCELLED.value:
        return json_error("Order is already cancelled", 400)

    ticket.status = new_status
    ticket.updated_at = now_utc()
    db.session.commit()

    logger.info("Order %s marked as %s", order_id, new_status)
    return jsonify({"ok": True, "message": f"Order {order_id} marked as {new_status}"})


# ---------------------------
# Reports
# ---------------------------

@app.route("/api/reports", methods=["GET"])
@require_roles("manager")
def api_reports_list():
    q = Report.query
    report_type = request.args.get("type")
    if report_type:
        q = q.filter_by(report_type=report_type)
    rows = q.order_by(Report.date_created.desc(), Report.report_id.desc()).all()
    return jsonify({"ok": True, "reports": [r.to_dict() for r in rows]})


@app.route("/api/reports", methods=["POST"])
@require_roles("manager")
def api_reports_create():
    bad = require_json()
    if bad:
        return bad
    d = request.get_json(silent=True)
    if not isinstance(d, dict):
        return json_error("Invalid JSON body", 400)

    report_name = d.get("report_name").strip() if isinstance(d.get("report_name"), str) else ""
    report_type = d.get("report_type").strip() if isinstance(d.get("report_type"), str) else ""
    report_text = d.get("report_text") if isinstance(d.get("report_text"), str) else ""

    if not report_name:
        return json_error("report_name is required", 400)
    if not report_type:
        return json_error("report_type is required", 400)
    if not report_text:
        return json_error("report_text is required", 400)
    if report_type == ReportType.Z_REPORT.value:
        return json_error("Z-Reports are generated through /api/reports/z-report", 400)

    row, used_fallback = add_with_id_fallback(
        Report,
        "report_id",
        report_name=report_name,
        report_type=report_type,
        report_text=report_text,
        date_created=now_utc(),
    )
    body = {"ok": True, "report": row.to_dict()}
    if used_fallback:
        body["note"] = "Used app-generated report_id"
    return jsonify(body), 201


@app.route("/api/reports", methods=["DELETE"])
@require_roles("manager")
def api_reports_delete():
    report_id = request.args.get("id")
    if not report_id:
        return json_error("report_id is required", 400)
    report_id = as_int(report_id, "id")

    row = db.session.get(Report, report_id)
    if not row:
        return json_error("Report not found", 404)
    db.session.delete(row)
    db.session.commit()
    return jsonify({"ok": True, "message": "Report deleted successfully", "deleted_id": report_id})


@app.route("/api/reports/<int:report_id>/pdf", methods=["GET"])
@require_roles("manager")
def api_report_pdf(report_id):
    row = db.session.get(Report, report_id)
    if not row:
        return json_error("Report not found", 404)
    return send_file(
        io.BytesIO(build_report_pdf_bytes(row)),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"report_{row.report_id}.pdf"
    )


@app.route("/api/reports/x-report", methods=["GET"])
@require_roles("manager")
def api_x_report():
    day = store_today()
    if z_report_exists(day):
        return json_error(
            "Cannot generate X-Report: Z-Report has already been generated for today. "
            "Please wait until tomorrow.",
            400
        )

    summary = daily_sales_summary(day)
    return jsonify({
        "ok": True,
        "report": {
            "type": "X-Report",
            "date": day.isoformat(),
            "generated": store_datetime_str(),
            **summary,
        },
    })


@app.route("/api/reports/z-report", methods=["POST"])
@require_roles("manager")
def api_z_report():
    row, used_fallback = generate_z_report()
    body = {"ok": True, "report": row.to_dict(), "message": "Z-Report generated and saved successfully"}
    if used_fallback:
        body["note"] = "Used app-generated report_id"
    return jsonify(body)


# ---------------------------
# Inventory
# ---------------------------

@app.get("/api/inventory")
@require_roles("manager")
def api_inventory_list():
    q = InventoryItem.query

    qstr = (request.args.get("q") or "").strip().lower()
    if qstr:
        q = q.filter(db.func.lower(InventoryItem.ingredients).like(f"%{qstr}%"))

    low = request.args.get("low")
    if low not in (None, ""):
        try:
            q = q.filter(InventoryItem.quantity <= float(low))
        except ValueError:
            return json_error("low must be a number", 400)

    rows = q.order_by(InventoryItem.id.asc()).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]})


@app.post("/api/inventory")
@require_roles("manager")
def api_inventory_create():
    bad = require_json()
    if bad:
        return bad
    d = request.get_json(silent=True)
    if not isinstance(d, dict):
        return json_error("Invalid JSON body", 400)

    name = d.get("name").strip() if isinstance(d.get("name"), str) else ""
    if not name:
        return json_error("Name required", 400)
    try:
        quantity = as_int(d.get("quantity"), "quantity", minimum=0)
    except ValidationError:
        return json_error("Quantity must be non-negative", 400)
    try:
        price = as_amount(d.get("price"), "price")
    except ValidationError:
        return json_error("Price must be non-negative", 400)
    istopping = 1 if d.get("istopping") in (1, "1", True) else 0

    row, used_fallback = add_with_id_fallback(
        InventoryItem,
        "id",
        ingredients=name,
        quantity=quantity,
        price=price,
        istopping=istopping,
    )
    body = {"ok": True, "item": row.to_dict()}
    if used_fallback:
        body["note"] = "Inserted with app-generated id (consider adding IDENTITY to the table)"
    return jsonify(body)


@app.put("/api/inventory/<int:item_id>")
@require_roles("manager")
def api_inventory_update(item_id):
    d = json_body()
    row = db.session.get(InventoryItem, item_id)
    if not row:
        return json_error("Inventory item not found", 404)

    changed = False
    if d.get("name") is not None:
        name = str(d.get("name")).strip()
        if not name:
            return json_error("Name required", 400)
        row.ingredients = name
        changed = True
    if d.get("quantity") is not None:
        row.quantity = as_int(d.get("quantity"), "quantity", minimum=0)
        changed = True
    if d.get("price") is not None:
        row.price = as_amount(d.get("price"), "price")
        changed = True
    if d.get("istopping") is not None:
        row.istopping = 1 if str(d.get("istopping")) in ("1", "True", "true") else 0
        changed = True

    if not changed:
        return json_error("No fields to update", 400)

    db.session.commit()
    return jsonify({"ok": True, "item": row.to_dict()})


@app.patch("/api/inventory/<int:item_id>")
@require_roles("manager")
def api_inventory_adjust(item_id):
    d = json_body()
    delta = as_int(d.get("delta"), "delta")

    row = db.session.get(InventoryItem, item_id, with_for_update=True)
    if not row:
        return json_error("Inventory item not found", 404)
    row.quantity = int(row.quantity or 0) + delta
    db.session.commit()
    return jsonify({"ok": True, "item": {"id": row.id, "quantity": row.quantity}})


@app.delete("/api/inventory/<int:item_id>")
@require_roles("manager")
def api_inventory_delete(item_id):
    row = db.session.get(InventoryItem, item_id)
    if not row:
        return json_error("Inventory item not found", 404)
    if OrderTopping.query.filter_by(topping_id=item_id).first():
        return json_error("Inventory item has been ordered as a topping and cannot be deleted", 400)
    MenuRecipe.query.filter_by(ingredient_id=item_id).delete(synchronize_session=False)
    db.session.delete(row)
    db.session.commit()
    return jsonify({"ok": True})


@app.get("/api/inventory/report")
@require_roles("manager")
def api_inventory_report():
    threshold_param = request.args.get("threshold")
    if not threshold_param:
        return json_error("Threshold parameter is required", 400)
    try:
        threshold = float(threshold_param)
    except ValueError:
        threshold = -1
    if threshold < 0 or threshold != threshold or threshold == float("inf"):
        return json_error("Threshold must be a non-negative number", 400)

    low_rows = (
        InventoryItem.query
        .filter(InventoryItem.quantity < threshold)
        .order_by(InventoryItem.quantity.asc(), InventoryItem.ingredients.asc())
        .all()
    )
    low_items = [{"id": r.id, "name": r.ingredients, "quantity": r.quantity, "price": float(r.price or 0)} for r in low_rows]

    affected = {}
    if low_rows:
        rows = (
            db.session.query(MenuItem, InventoryItem.ingredients)
            .select_from(MenuItem)
            .join(MenuRecipe, MenuRecipe.menu_item_id == MenuItem.id)
            .join(InventoryItem, InventoryItem.id == MenuRecipe.ingredient_id)
            .filter(InventoryItem.id.in_([r.id for r in low_rows]))
            .all()
        )
        for mi, ing_name in rows:
            entry = affected.setdefault(mi.id, {
                "id": mi.id,
                "name": mi.name,
                "price": float(mi.price or 0),
                "missing_ingredients": [],
            })
            if ing_name not in entry["missing_ingredients"]:
                entry["missing_ingredients"].append(ing_name)
    affected_items = sorted(affected.values(), key=lambda m: m["name"])
    for m in affected_items:
        m["missing_ingredients"].sort()

    return jsonify({
        "ok": True,
        "report": {
            "threshold": threshold,
            "lowStockItems": low_items,
            "affectedMenuItems": affected_items,
            "summary": {
                "totalLowStock": len(low_items),
                "totalAffectedMenuItems": len(affected_items),
            },
        },
    })


@app.get("/api/inventory/usage")
@require_roles("manager")
def api_inventory_usage():
    start = request.args.get("start") or ""
    end = request.args.get("end") or ""
    if not start or not end:
        return json_error("Start and end dates are required", 400)
    start_d = parse_iso_date(start, "start")
    end_d = parse_iso_date(end, "end")

    recipe_rows = (
        db.session.query(
            InventoryItem.id,
            InventoryItem.ingredients,
            db.func.sum(db.func.coalesce(OrderLine.size, 1)),
        )
        .select_from(OrderLine)
        .join(MenuRecipe, MenuRecipe.menu_item_id == OrderLine.menu_item_id)
        .join(InventoryItem, InventoryItem.id == MenuRecipe.ingredient_id)
        .filter(OrderLine.order_date >= start_d, OrderLine.order_date <= end_d)
        .group_by(InventoryItem.id, InventoryItem.ingredients)
        .all()
    )
    topping_rows = (
        db.session.query(InventoryItem.id, InventoryItem.ingredients, db.func.count(OrderTopping.id))
        .select_from(OrderTopping)
        .join(InventoryItem, InventoryItem.id == OrderTopping.topping_id)
        .join(OrderLine, OrderLine.order_item_id == OrderTopping.order_item_id)
        .filter(OrderLine.order_date >= start_d, OrderLine.order_date <= end_d)
        .group_by(InventoryItem.id, InventoryItem.ingredients)
        .all()
    )

    usage = {}
    for ing_id, name, used in list(recipe_rows) + list(topping_rows):
        entry = usage.setdefault(ing_id, {"id": ing_id, "name": name, "total_used": 0})
        entry["total_used"] += int(used or 0)

    out = sorted(usage.values(), key=lambda u: (-u["total_used"], u["id"]))
    return jsonify({"ok": True, "usage": out, "start": start_d.isoformat(), "end": end_d.isoformat()})


@app.get("/api/ingredients")
@login_required
def api_ingredients_list():
    rows = InventoryItem.query.order_by(InventoryItem.id.asc()).all()
    return jsonify({"ok": True, "ingredients": [r.to_dict() for r in rows]})


@app.get("/api/ingredients/toppings")
def api_toppings_list():
    rows = (
        InventoryItem.query
        .filter(InventoryItem.istopping == 1)
        .order_by(InventoryItem.ingredients.asc())
        .all()
    )
    return jsonify({"ok": True, "toppings": [
        {"id": r.id, "name": r.ingredients, "price": float(r.price or 0), "quantity": r.quantity}
        for r in rows
    ]})


# ---------------------------
# Menu
# ---------------------------

@app.route("/api/menu", methods=["GET"])
def api_menu_list():
    rows = MenuItem.query.order_by(MenuItem.id.asc()).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]})


@app.route("/api/menu", methods=["PUT"])
@require_roles("manager")
def api_menu_update():
    d = json_body()
    item_id = as_int(d.get("id"), "id", minimum=1)
    mi = db.session.get(MenuItem, item_id)
    if not mi:
        return json_error("Menu item not found", 404)

    changed = False
    if "name" in d:
        name = (d.get("name") or "").strip()
        if not name:
            return json_error("name is required", 400)
        mi.name = name
        changed = True
    if "price" in d:
        mi.price = money(as_amount(d.get("price"), "price"))
        changed = True
    if "seasonal" in d:
        mi.seasonal = 1 if d.get("seasonal") in (1, "1", True) else 0
        changed = True

    if not changed:
        return json_error("No fields to update", 400)

    db.session.commit()
    return jsonify({"ok": True, "item": mi.to_dict()})


@app.route("/api/menu-item-ingredients", methods=["GET"])
def api_menu_item_ingredients_get():
    menu_item_id = request.args.get("menu_item_id")
    if menu_item_id is None:
        return json_error("Missing menu_item_id", 400)
    menu_item_id = as_int(menu_item_id, "menu_item_id")
    return jsonify({"ok": True, "ingredientIds": recipe_ingredient_ids(menu_item_id)})


@app.route("/api/menu-item-ingredients", methods=["PUT"])
@require_roles("manager")
def api_menu_item_ingredients_put():
    d = json_body()
    if d.get("menu_item_id") is None:
        return json_error("Missing menu_item_id", 400)
    menu_item_id = as_int(d.get("menu_item_id"), "menu_item_id", minimum=1)

    ingredient_ids = d.get("ingredient_ids")
    if not isinstance(ingredient_ids, list):
        return json_error("ingredient_ids must be an array", 400)
    ingredient_ids = sorted({as_int(i, "ingredient_ids", minimum=1) for i in ingredient_ids})

    if not db.session.get(MenuItem, menu_item_id):
        return json_error("Menu item not found", 404)
    known = {r.id for r in InventoryItem.query.filter(InventoryItem.id.in_(ingredient_ids)).all()} if ingredient_ids else set()
    missing = [i for i in ingredient_ids if i not in known]
    if missing:
        return json_error(f"Unknown ingredient ID(s): {', '.join(str(i) for i in missing)}", 400)

    try:
        MenuRecipe.query.filter_by(menu_item_id=menu_item_id).delete(synchronize_session=False)
        for ingredient_id in ingredient_ids:
            db.session.add(MenuRecipe(menu_item_id=menu_item_id, ingredient_id=ingredient_id))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify({"ok": True})


POPULAR_CATEGORIES = {
    "milk": lambda: sa_and(MenuItem.name.ilike("%milk%"), ~MenuItem.name.ilike("%green%")),
    "green": lambda: MenuItem.name.ilike("%green%"),
    "black": lambda: sa_and(MenuItem.name.ilike("%black%"), ~MenuItem.name.ilike("%milk%")),
    "seasonal": lambda: MenuItem.seasonal == 1,
}


@app.route("/api/popular", methods=["GET"])
def api_popular():
    since = store_today() - timedelta(days=30)
    popular = {}
    for key, cond in POPULAR_CATEGORIES.items():
        row = (
            db.session.query(MenuItem.id, db.func.count(OrderLine.order_item_id).label("cnt"))
            .join(OrderLine, OrderLine.menu_item_id == MenuItem.id)
            .filter(OrderLine.order_date >= since, cond())
            .group_by(MenuItem.id)
            .order_by(db.func.count(OrderLine.order_item_id).desc(), MenuItem.id.asc())
            .first()
        )
        popular[key] = row[0] if row else None
    return jsonify({"ok": True, "popular": popular})


# ---------------------------
# Employees
# ---------------------------

EMPLOYEE_FIELDS = ["username", "password", "ismanager", "employdate", "hrsalary", "email", "google_id", "name"]


def _norm_optional(value, lower=False):
    if not isinstance(value, str) or not value.strip():
        return None
    v = value.strip()
    return v.lower() if lower else v


def _employee_conflict(column, value, exclude_id=None):
    q = Employee.query.filter(getattr(Employee, column) == value)
    if exclude_id is not None:
        q = q.filter(Employee.id != exclude_id)
    return q.first() is not None


def _duplicate_employee_error(e):
    msg = str(getattr(e, "orig", e)).lower()
    if "email" in msg:
        return DuplicateError("Email already in use", field="email")
    if "google_id" in msg:
        return DuplicateError("Google ID already in use", field="google_id")
    if "username" in msg:
        return DuplicateError("Username already in use", field="username")
    return None


def _apply_employee_fields(emp, d, keys):
    for k in keys:
        v = d.get(k)
        if k == "password":
            if not isinstance(v, str) or not v:
                raise ValidationError("password is required", field="password")
            emp.set_password(v)
        elif k == "ismanager":
            emp.ismanager = 1 if v else 0
        elif k == "employdate":
            emp.employdate = parse_iso_date(v, "employdate") if v else None
        elif k == "hrsalary":
            emp.hrsalary = as_amount(v, "hrsalary") if v is not None else None
        elif k == "email":
            emp.email = _norm_optional(v, lower=True)
        elif k == "google_id":
            emp.google_id = _norm_optional(v)
        elif k == "username":
            username = (v or "").strip() if isinstance(v, str) else ""
            if not username:
                raise ValidationError("username is required", field="username")
            emp.username = username
        elif k == "name":
            emp.name = _norm_optional(v)


@app.route("/api/employees", methods=["GET"])
@require_roles("manager")
def api_employees_list():
    rows = Employee.query.order_by(Employee.id.asc()).all()
    return jsonify({"ok": True, "employees": [r.to_dict() for r in rows]})


@app.route("/api/employees", methods=["POST"])
@require_roles("manager")
def api_employees_create():
    d = json_body()

    email = _norm_optional(d.get("email"), lower=True)
    google_id = _norm_optional(d.get("google_id"))
    if email and _employee_conflict("email", email):
        return json_error("Email already in use", 409, field="email")
    if google_id and _employee_conflict("google_id", google_id):
        return json_error("Google ID already in use", 409, field="google_id")
    username = (d.get("username") or "").strip() if isinstance(d.get("username"), str) else ""
    if username and _employee_conflict("username", username):
        return json_error("Username already in use", 409, field="username")

    emp = Employee()
    _apply_employee_fields(emp, d, [k for k in EMPLOYEE_FIELDS if k in d or k in ("username", "password")])
    values = {c.key: getattr(emp, c.key) for c in Employee.__table__.columns if c.key != "id"}
    values = {k: v for k, v in values.items() if v is not None}

    try:
        row, _used_fallback = add_with_id_fallback(Employee, "id", **values)
    except IntegrityError as e:
        dup = _duplicate_employee_error(e)
        if dup:
            raise dup
        raise

    return jsonify({"ok": True, "employee": row.to_dict()})


@app.route("/api/employees", methods=["PUT"])
@require_roles("manager")
def api_employees_update():
    d = json_body()
    if not d.get("id"):
        return json_error("id required", 400)
    emp_id = as_int(d.get("id"), "id", minimum=1)

    keys = [k for k in EMPLOYEE_FIELDS if k in d]
    if not keys:
        return json_error("no fields to update", 400)

    emp = db.session.get(Employee, emp_id)
    if not emp:
        return json_error("Employee not found", 404)

    email = _norm_optional(d.get("email"), lower=True)
    if "email" in keys and email and _employee_conflict("email", email, exclude_id=emp_id):
        return json_error("Email already in use", 409, field="email")
    google_id = _norm_optional(d.get("google_id"))
    if "google_id" in keys and google_id and _employee_conflict("google_id", google_id, exclude_id=emp_id):
        return json_error("Google ID already in use", 409, field="google_id")

    _apply_employee_fields(emp, d, keys)
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        dup = _duplicate_employee_error(e)
        if dup:
            raise dup
        raise

    return jsonify({"ok": True, "employee": emp.to_dict()})


@app.route("/api/employees", methods=["DELETE"])
@require_roles("manager")
def api_employees_delete():
    emp_id = request.args.get("id")
    if not emp_id:
        return json_error("id required", 400)
    emp_id = as_int(emp_id, "id")

    emp = db.session.get(Employee, emp_id)
    if not emp:
        return json_error("Employee not found", 404)
    if emp.id == current_user.id:
        return json_error("You cannot delete your own account", 400)

    out = emp.to_dict()
    db.session.delete(emp)
    db.session.commit()
    return jsonify({"ok": True, "employee": out})


# ---------------------------
# Trends
# ---------------------------

ORDER_COLUMN_CANDIDATES = {
    "date": ["order_date", "date"],
    "time": ["order_time", "time"],
    "price": ["price", "amount", "total"],
    "item": ["menu_item_id", "item_id", "product_id"],
    "employee": ["employee", "employee_id", "cashier_id"],
}

ORDER_HISTORY_MAX_LIMIT = 500
ORDER_HISTORY_DEFAULT_LIMIT = 100
ORDER_HISTORY_MAX_OFFSET = 100000
ORDER_HISTORY_MAX_RANGE_DAYS = 365


def _table_exists(name) -> bool:
    return sa_inspect(db.engine).has_table(name)


def detect_order_columns():
    cols = {c["name"].lower() for c in sa_inspect(db.engine).get_columns("orders")}
    found = {}
    for key, candidates in ORDER_COLUMN_CANDIDATES.items():
        found[key] = next((c for c in candidates if c in cols), None)
    if not (found["date"] and found["price"] and found["item"]):
        return None
    return found


def _bucket(day, group):
    if group == "week":
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year}-{iso_week:02d}"
    if group == "month":
        return day.strftime("%Y-%m")
    return day.isoformat()


@app.route("/api/trends", methods=["GET"])
@require_roles("manager")
def api_trends():
    group = (request.args.get("group") or "day").lower()
    if group not in ("day", "week", "month"):
        return json_error("group must be one of day, week, month", 400)

    today = store_today()
    start = parse_iso_date(request.args.get("start") or (today - timedelta(days=29)).isoformat(), "start")
    end = parse_iso_date(request.args.get("end") or today.isoformat(), "end")

    has_orders = _table_exists("orders")
    has_menu_items = _table_exists("menu_items")
    has_recipe = _table_exists("menu_recipe")
    has_inventory = _table_exists("inventory")
    debug = {
        "hasOrders": has_orders,
        "hasMenuItems": has_menu_items,
        "hasMenuRecipe": has_recipe,
        "hasInventory": has_inventory,
    }
    base = {"ok": True, "start": start.isoformat(), "end": end.isoformat(), "group": group}

    if not has_orders:
        return jsonify({**base, "series": [], "top": [], "debug": {**debug, "note": "orders table not found"}})

    cols = detect_order_columns()
    if not cols:
        return jsonify({**base, "series": [], "top": [], "debug": {
            **debug, "note": "orders missing required columns (need date + price + item id)"
        }})

    sql = text(
        f'SELECT "{cols["date"]}" AS d, "{cols["price"]}" AS p, "{cols["item"]}" AS i '
        f'FROM orders WHERE "{cols["date"]}" >= :start AND "{cols["date"]}" <= :end'
    )
    rows = db.session.execute(sql, {"start": start.isoformat(), "end": end.isoformat()}).fetchall()

    item_costs = {}
    if has_recipe and has_inventory:
        cost_rows = (
            db.session.query(MenuRecipe.menu_item_id, db.func.coalesce(db.func.sum(InventoryItem.price), 0))
            .join(InventoryItem, InventoryItem.id == MenuRecipe.ingredient_id)
            .group_by(MenuRecipe.menu_item_id)
            .all()
        )
        item_costs = {mid: money(cost) for mid, cost in cost_rows}

    names = {}
    if has_menu_items:
        names = {mi.id: mi.name for mi in MenuItem.query.all()}

    series = {}
    top = {}
    for d, p, i in rows:
        price = money(p or 0)
        b = series.setdefault(_bucket(as_date(d), group), {"orders": 0, "revenue": Decimal("0.00"), "est_cost": Decimal("0.00")})
        b["orders"] += 1
        b["revenue"] += price
        b["est_cost"] += item_costs.get(i, Decimal("0.00"))

        if has_menu_items and i not in names:
            continue
        t = top.setdefault(i, {"units": 0, "revenue": Decimal("0.00")})
        t["units"] += 1
        t["revenue"] += price

    series_out = [
        {
            "bucket": k,
            "orders": v["orders"],
            "revenue": float(v["revenue"]),
            "est_cost": float(v["est_cost"]),
            "profit": float(v["revenue"] - v["est_cost"]),
        }
        for k, v in sorted(series.items())
    ]
    top_out = [
        {
            "menu_item_id": int(i),
            "name": names.get(i) or f"Item {i}",
            "units": v["units"],
            "revenue": float(v["revenue"]),
        }
        for i, v in sorted(top.items(), key=lambda kv: (-kv[1]["units"], -kv[1]["revenue"], kv[0]))[:10]
    ]

    return jsonify({**base, "series": series_out, "top": top_out, "debug": {**debug, "detected": cols}})


def parse_order_history_query(args):
    today = store_today()

    start = parse_iso_date(args.get("start"), "start") if args.get("start") else today - timedelta(days=6)
    end = parse_iso_date(args.get("end"), "end") if args.get("end") else today
    t_start = parse_hhmm(args.get("timeStart"), "timeStart") if args.get("timeStart") else time(0, 0)
    t_end = parse_hhmm(args.get("timeEnd"), "timeEnd") if args.get("timeEnd") else time(23, 59)

    employee = as_int(args.get("employee"), "employee", minimum=1, required=False)
    menu = as_int(args.get("menu"), "menu", minimum=1, required=False)
    limit = as_int(args.get("limit"), "limit", minimum=1, maximum=ORDER_HISTORY_MAX_LIMIT,
                   required=False, default=ORDER_HISTORY_DEFAULT_LIMIT)
    offset = as_int(args.get("offset"), "offset", minimum=0, maximum=ORDER_HISTORY_MAX_OFFSET,
                    required=False, default=0)

    if start > today:
        raise ValidationError("Start date cannot be in the future", field="start")
    if end > today:
        raise ValidationError("End date cannot be in the future", field="end")
    if start > end:
        raise ValidationError("Start date cannot be after end date", field="start")
    if (end - start).days > ORDER_HISTORY_MAX_RANGE_DAYS:
        raise ValidationError(f"Date range cannot exceed {ORDER_HISTORY_MAX_RANGE_DAYS} days", field="end")

    return {
        "start": start, "end": end, "timeStart": t_start, "timeEnd": t_end,
        "employee": employee, "menu": menu, "limit": limit, "offset": offset,
    }


@app.route("/api/trends/orders", methods=["GET"])
@require_roles("manager")
def api_trends_orders():
    p = parse_order_history_query(request.args)

    wrap = p["timeStart"] > p["timeEnd"]
    if wrap:
        time_cond = sa_or(OrderLine.order_time >= p["timeStart"], OrderLine.order_time <= p["timeEnd"])
    else:
        time_cond = sa_and(OrderLine.order_time >= p["timeStart"], OrderLine.order_time <= p["timeEnd"])

    conds = [OrderLine.order_date >= p["start"], OrderLine.order_date <= p["end"], time_cond]
    if p["employee"] is not None:
        conds.append(OrderLine.employee == p["employee"])
    if p["menu"] is not None:
        conds.append(OrderLine.menu_item_id == p["menu"])

    rows = (
        db.session.query(OrderLine, MenuItem.name)
        .outerjoin(MenuItem, MenuItem.id == OrderLine.menu_item_id)
        .filter(*conds)
        .order_by(OrderLine.order_date.asc(), OrderLine.order_time.asc(), OrderLine.order_id.asc())
        .limit(p["limit"])
        .offset(p["offset"])
        .all()
    )
    count, revenue = (
        db.session.query(db.func.count(OrderLine.order_item_id), db.func.coalesce(db.func.sum(OrderLine.price), 0))
        .filter(*conds)
        .one()
    )

    items = [{
        "order_id": line.order_id,
        "order_date": line.order_date.isoformat(),
        "order_time": fmt_time(line.order_time),
        "menu_item_id": line.menu_item_id,
        "menu_item_name": menu_name,
        "price": float(money(line.price)),
        "employee": line.employee,
    } for line, menu_name in rows]

    return jsonify({
        "ok": True,
        "start": p["start"].isoformat(),
        "end": p["end"].isoformat(),
        "timeStart": p["timeStart"].strftime("%H:%M"),
        "timeEnd": p["timeEnd"].strftime("%H:%M"),
        "wrap": wrap,
        "count": int(count or 0),
        "revenue": float(money(revenue or 0)),
        "items": items,
    })


# ---------------------------
# Reward points
# ---------------------------

@app.route("/api/game/check-play", methods=["GET"])
def api_game_check_play():
    user_id = request.args.get("userId")
    if not user_id:
        return json_error("User ID is required", 400)
    user_id = as_int(user_id, "userId", minimum=1)

    q = GamePlay.query.filter_by(customer_id=user_id, play_date=store_today())
    game = request.args.get("game")
    if game:
        q = q.filter_by(game_type=game)
    return jsonify({"ok": True, "hasPlayedToday": q.first() is not None})


@app.route("/api/game/mark-played", methods=["POST"])
def api_game_mark_played():
    d = json_body()
    if not d.get("userId"):
        return json_error("User ID is required", 400)
    user_id = as_int(d.get("userId"), "userId", minimum=1)
    game = d.get("game") or None
    today = store_today()

    if not db.session.get(Customer, user_id):
        return json_error("Customer not found", 404)

    existing = GamePlay.query.filter_by(customer_id=user_id, play_date=today).first()
    if existing is None:
        db.session.add(GamePlay(
            customer_id=user_id,
            played_at=now_utc(),
            play_date=today,
            points_earned=0,
            completed=False,
            game_type=game,
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info("Play for customer %s on %s already recorded", user_id, today.isoformat())

    return jsonify({"ok": True})


@app.route("/api/game/award-points", methods=["POST"])
def api_game_award_points():
    d = json_body()
    if not d.get("userId") or d.get("points") is None:
        return json_error("User ID and points are required", 400)
    user_id = as_int(d.get("userId"), "userId", minimum=1)
    points = as_int(d.get("points"), "points", minimum=0)
    game = (d.get("game") or "matching").strip()
    today = store_today()

    try:
        customer = db.session.get(Customer, user_id, with_for_update=True)
        if not customer:
            raise NotFoundError("Customer not found")

        existing = GamePlay.query.filter_by(customer_id=user_id, play_date=today, game_type=game).first()
        if existing:
            raise ConflictError("Already played today")

        db.session.add(GamePlay(
            customer_id=user_id,
            played_at=now_utc(),
            play_date=today,
            points_earned=points,
            moves=as_int(d.get("moves"), "moves", minimum=0, required=False),
            time_seconds=as_int(d.get("time"), "time", minimum=0, required=False),
            score=as_int(d.get("score"), "score", required=False),
            completed=True,
            game_type=game,
        ))
        customer.points = int(customer.points or 0) + points
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Already played today")
    except Exception:
        db.session.rollback()
        raise

    return jsonify({"ok": True, "pointsAwarded": points, "totalPoints": customer.points})


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    with app.app_context():
        db.create_all()
    app.run(debug=app.config["APP_ENV"] != "production")
