"""
Table-style access to bookings and cars over Flask-SQLAlchemy.

Rows leave this module as plain dicts so the booking service and the cache
never hold ORM instances past the request that loaded them.
"""
from datetime import date, timedelta
from functools import wraps
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from errors import BackendUnavailable
from models import db
from models.booking import Booking
from models.car import Car
from utils.date_range import to_day_string
from utils.logger import get_logger

log = get_logger(__name__)

SORTABLE_COLUMNS = {
    "created_at": Booking.created_at,
    "pickup_date": Booking.pickup_date,
    "return_date": Booking.return_date,
    "total_price": Booking.total_price,
    "status": Booking.status,
    "customer_name": Booking.customer_name,
}

WRITABLE_COLUMNS = (
    "customer_name",
    "customer_email",
    "customer_phone",
    "car_id",
    "pickup_date",
    "return_date",
    "total_price",
    "notes",
    "status",
)

DATE_COLUMNS = ("pickup_date", "return_date")

CAR_COLUMNS = ("brand", "model", "year", "daily_rate", "image_url", "status")


def _backend_call(operation: str):
    """Roll back and surface database failures as BackendUnavailable."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except SQLAlchemyError as e:
                db.session.rollback()
                log.error("backend_error", operation=operation, error=str(e))
                raise BackendUnavailable("The booking database is unavailable. Please try again.") from e
        return wrapper
    return decorator


def _coerce(fields: dict) -> dict:
    values = {k: v for k, v in fields.items() if k in WRITABLE_COLUMNS}
    for col in DATE_COLUMNS:
        if isinstance(values.get(col), str):
            # same UTC day the overlap check used
            values[col] = date.fromisoformat(to_day_string(values[col]))
    return values


class SqlBookingBackend:
    def _filtered(self, filters: dict):
        query = Booking.query.join(Car, Booking.car_id == Car.id)

        search = (filters.get("search") or "").strip().lower()
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                func.lower(Booking.customer_name).like(pattern),
                func.lower(Booking.customer_email).like(pattern),
                func.lower(Booking.customer_phone).like(pattern),
                func.lower(Car.brand).like(pattern),
                func.lower(Car.model).like(pattern),
            ))

        status = filters.get("status")
        if status:
            query = query.filter(Booking.status == status)

        date_filter = filters.get("date_filter")
        if date_filter:
            today = date.fromisoformat(filters.get("today") or date.today().isoformat())
            if date_filter == "today":
                query = query.filter(Booking.pickup_date == today)
            elif date_filter == "week":
                query = query.filter(Booking.pickup_date >= today, Booking.pickup_date <= today + timedelta(days=7))
            elif date_filter == "month":
                query = query.filter(Booking.pickup_date >= today, Booking.pickup_date <= today + timedelta(days=30))
            elif date_filter == "past":
                query = query.filter(Booking.pickup_date < today)

        return query

    @_backend_call("query_bookings")
    def query_bookings(
        self,
        filters: dict,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[dict], int]:
        query = self._filtered(filters or {})
        total = query.order_by(None).count()

        column = SORTABLE_COLUMNS.get(sort_by, Booking.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        rows = query.order_by(ordering, Booking.id.desc()).offset(offset).limit(limit).all()
        return [b.to_dict() for b in rows], total

    @_backend_call("list_bookings")
    def list_bookings(self) -> List[dict]:
        rows = Booking.query.order_by(Booking.created_at.desc(), Booking.id.desc()).all()
        return [b.to_dict() for b in rows]

    @_backend_call("get_booking")
    def get_booking(self, booking_id: int) -> Optional[dict]:
        booking = db.session.get(Booking, booking_id)
        return booking.to_dict() if booking else None

    @_backend_call("insert_booking")
    def insert_booking(self, fields: dict) -> dict:
        booking = Booking(**_coerce(fields))
        db.session.add(booking)
        db.session.commit()
        return booking.to_dict()

    @_backend_call("update_booking")
    def update_booking(self, booking_id: int, fields: dict) -> Optional[dict]:
        booking = db.session.get(Booking, booking_id)
        if booking is None:
            return None
        for key, value in _coerce(fields).items():
            setattr(booking, key, value)
        db.session.commit()
        return booking.to_dict()

    @_backend_call("delete_bookings")
    def delete_bookings(self, booking_ids: Iterable[int]) -> int:
        ids = list(booking_ids)
        if not ids:
            return 0
        deleted = Booking.query.filter(Booking.id.in_(ids)).delete(synchronize_session=False)
        db.session.commit()
        return deleted

    @_backend_call("bookings_for_car")
    def bookings_for_car(self, car_id: int, exclude_booking_id: Optional[int] = None) -> List[dict]:
        query = Booking.query.filter(Booking.car_id == car_id, Booking.status != "cancelled")
        if exclude_booking_id is not None:
            query = query.filter(Booking.id != exclude_booking_id)
        return [b.to_dict() for b in query.order_by(Booking.pickup_date.asc()).all()]

    @_backend_call("get_car")
    def get_car(self, car_id: int) -> Optional[dict]:
        car = db.session.get(Car, car_id)
        return car.to_dict() if car else None

    @_backend_call("list_cars")
    def list_cars(self) -> List[dict]:
        return [c.to_dict() for c in Car.query.order_by(Car.brand.asc(), Car.model.asc()).all()]

    @_backend_call("insert_car")
    def insert_car(self, fields: dict) -> dict:
        car = Car(**{k: v for k, v in fields.items() if k in CAR_COLUMNS})
        db.session.add(car)
        db.session.commit()
        return car.to_dict()

    @_backend_call("update_car")
    def update_car(self, car_id: int, fields: dict) -> Optional[dict]:
        car = db.session.get(Car, car_id)
        if car is None:
            return None
        for key, value in fields.items():
            if key in CAR_COLUMNS:
                setattr(car, key, value)
        db.session.commit()
        return car.to_dict()

    @_backend_call("delete_car")
    def delete_car(self, car_id: int) -> bool:
        deleted = Car.query.filter(Car.id == car_id).delete(synchronize_session=False)
        db.session.commit()
        return deleted > 0

    @_backend_call("count_bookings_for_car")
    def count_bookings_for_car(self, car_id: int) -> int:
        return Booking.query.filter(Booking.car_id == car_id).count()
