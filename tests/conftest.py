from collections import Counter
from datetime import date, datetime, timedelta, timezone

import pytest

from app import create_app
from config import TestConfig
from errors import BackendUnavailable
from models import db
from models.booking import Booking
from models.car import Car
from models.user import Role, User
from security.password import hash_password

# 2024-01-10 12:00:00 UTC
T0 = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc).timestamp()

ADMIN_EMAIL = "admin@carrental.test"
ADMIN_PASSWORD = "Correct-Horse-9"


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory stand-in for SqlBookingBackend that counts calls."""

    def __init__(self, bookings=None, cars=None):
        self.bookings = {b["id"]: dict(b) for b in bookings or []}
        self.cars = {c["id"]: dict(c) for c in cars or []}
        self.calls = Counter()
        self.fail = False

    def _call(self, name):
        self.calls[name] += 1
        if self.fail:
            raise BackendUnavailable("backend down")

    def query_bookings(self, filters, sort_by="created_at", sort_order="desc", offset=0, limit=20):
        self._call("query_bookings")
        rows = [b for b in self.bookings.values() if not filters.get("status") or b["status"] == filters["status"]]
        rows.sort(key=lambda b: b[sort_by], reverse=sort_order == "desc")
        return [dict(r) for r in rows[offset:offset + limit]], len(rows)

    def list_bookings(self):
        self._call("list_bookings")
        return [dict(b) for b in self.bookings.values()]

    def get_booking(self, booking_id):
        self._call("get_booking")
        row = self.bookings.get(booking_id)
        return dict(row) if row else None

    def insert_booking(self, fields):
        self._call("insert_booking")
        booking_id = max(self.bookings, default=0) + 1
        row = {"id": booking_id, "created_at": "2024-01-10T12:00:00", "notes": None, "customer_phone": None}
        row.update(fields)
        row["car"] = self.cars.get(row["car_id"])
        self.bookings[booking_id] = row
        return dict(row)

    def update_booking(self, booking_id, fields):
        self._call("update_booking")
        if booking_id not in self.bookings:
            return None
        self.bookings[booking_id].update(fields)
        return dict(self.bookings[booking_id])

    def delete_bookings(self, booking_ids):
        self._call("delete_bookings")
        return sum(1 for i in booking_ids if self.bookings.pop(i, None) is not None)

    def bookings_for_car(self, car_id, exclude_booking_id=None):
        self._call("bookings_for_car")
        return [
            dict(b) for b in self.bookings.values()
            if b["car_id"] == car_id and b["status"] != "cancelled" and b["id"] != exclude_booking_id
        ]

    def get_car(self, car_id):
        self._call("get_car")
        car = self.cars.get(car_id)
        return dict(car) if car else None

    def list_cars(self):
        self._call("list_cars")
        return [dict(c) for c in self.cars.values()]

    def insert_car(self, fields):
        self._call("insert_car")
        car_id = max(self.cars, default=0) + 1
        self.cars[car_id] = {"id": car_id, "year": None, "image_url": None, **fields}
        return dict(self.cars[car_id])

    def update_car(self, car_id, fields):
        self._call("update_car")
        if car_id not in self.cars:
            return None
        self.cars[car_id].update(fields)
        return dict(self.cars[car_id])

    def delete_car(self, car_id):
        self._call("delete_car")
        return self.cars.pop(car_id, None) is not None

    def count_bookings_for_car(self, car_id):
        self._call("count_bookings_for_car")
        return sum(1 for b in self.bookings.values() if b["car_id"] == car_id)


def booking_row(booking_id, car_id=1, pickup="2024-01-15", ret="2024-01-20", status="confirmed", price=250.0, **extra):
    row = {
        "id": booking_id,
        "car_id": car_id,
        "customer_name": f"Customer {booking_id}",
        "customer_email": f"customer{booking_id}@example.com",
        "customer_phone": "+212600000000",
        "pickup_date": pickup,
        "return_date": ret,
        "total_price": price,
        "notes": None,
        "status": status,
        "created_at": f"2024-01-0{min(booking_id, 9)}T09:00:00",
        "car": {"brand": "Dacia", "model": "Logan", "year": 2022, "daily_rate": 50.0, "image_url": None},
    }
    row.update(extra)
    return row


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_backend():
    return FakeBackend(
        bookings=[
            booking_row(1, pickup="2024-01-15", ret="2024-01-20", status="confirmed", price=250.0),
            booking_row(2, pickup="2024-01-05", ret="2024-01-08", status="completed", price=150.0),
            booking_row(3, pickup="2024-01-12", ret="2024-01-13", status="active", price=100.0),
            booking_row(4, pickup="2024-02-01", ret="2024-02-03", status="cancelled", price=120.0),
            booking_row(5, car_id=2, pickup="2024-01-20", ret="2024-01-22", status="pending", price=90.0),
        ],
        cars=[
            {"id": 1, "brand": "Dacia", "model": "Logan", "year": 2022, "daily_rate": 50.0, "status": "available"},
            {"id": 2, "brand": "Renault", "model": "Clio", "year": 2023, "daily_rate": 45.0, "status": "available"},
            {"id": 3, "brand": "Peugeot", "model": "208", "year": 2021, "daily_rate": 40.0, "status": "maintenance"},
        ],
    )


# ---------- Flask app fixtures ----------

def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@pytest.fixture
def app():
    app = create_app(TestConfig)
    services = app.extensions["carrental"]
    # progressive delay would make lockout tests slow
    services.auth.sleep = lambda seconds: None
    yield app
    services.stop_background_tasks()
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


def _add_user(email, password, role=None, full_name=None):
    user = User(email=email, password_hash=hash_password(password, rounds=4), full_name=full_name)
    if role:
        user.roles.append(Role.query.filter_by(name=role).first())
    db.session.add(user)
    db.session.commit()
    return user.id


@pytest.fixture
def admin_user(app):
    with app.app_context():
        return _add_user(ADMIN_EMAIL, ADMIN_PASSWORD, role="ADMIN", full_name="Ada Admin")


@pytest.fixture
def plain_user(app):
    with app.app_context():
        return _add_user("staff@carrental.test", "Plain-Pass-77", full_name="Sam Staff")


@pytest.fixture
def cars(app):
    with app.app_context():
        rows = [
            Car(brand="Dacia", model="Logan", year=2022, daily_rate=50, status="available"),
            Car(brand="Renault", model="Clio", year=2023, daily_rate=45, status="available"),
            Car(brand="Peugeot", model="208", year=2021, daily_rate=40, status="maintenance"),
        ]
        db.session.add_all(rows)
        db.session.commit()
        return [c.id for c in rows]


@pytest.fixture
def bookings(app, cars):
    today = utc_today()
    with app.app_context():
        rows = [
            Booking(car_id=cars[0], customer_name="Amina Idrissi", customer_email="amina@example.com",
                    pickup_date=today + timedelta(days=10), return_date=today + timedelta(days=14),
                    total_price=250, status="confirmed"),
            Booking(car_id=cars[0], customer_name="Youssef Alami", customer_email="youssef@example.com",
                    pickup_date=today - timedelta(days=20), return_date=today - timedelta(days=18),
                    total_price=150, status="completed"),
            Booking(car_id=cars[1], customer_name="=HYPERLINK(\"x\")", customer_email="sneaky@example.com",
                    pickup_date=today + timedelta(days=3), return_date=today + timedelta(days=4),
                    total_price=90, status="pending"),
            Booking(car_id=cars[1], customer_name="Cancelled Carl", customer_email="carl@example.com",
                    pickup_date=today + timedelta(days=20), return_date=today + timedelta(days=22),
                    total_price=120, status="cancelled"),
        ]
        db.session.add_all(rows)
        db.session.commit()
        return [b.id for b in rows]


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    resp = client.post("/auth/login", json={"email": email, "password": password})
    return resp, resp.headers.get("X-CSRF-Token")


@pytest.fixture
def admin_client(client, admin_user):
    """Logged-in admin client plus a holder for the current CSRF token."""
    resp, token = login(client)
    assert resp.status_code == 200
    state = {"csrf": token}

    def send(method, path, **kwargs):
        headers = kwargs.pop("headers", {})
        headers.setdefault("X-CSRF-Token", state["csrf"])
        r = client.open(path, method=method, headers=headers, **kwargs)
        state["csrf"] = r.headers.get("X-CSRF-Token", state["csrf"])
        return r

    client.send = send
    client.csrf_state = state
    return client


@pytest.fixture
def login_as(client):
    def _login(email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
        return login(client, email, password)
    return _login


@pytest.fixture
def booking_factory():
    return booking_row
