"""
Booking queries and mutations for the admin dashboard and booking form.

Reads go through the query cache keyed by the full query signature; every
successful write clears the whole cache, since one status change can move
rows between filtered views and shift the stats.
"""
import csv
import io
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from errors import BookingConflict, NoDataToExport, NotFoundError, ValidationError
from models.booking import BOOKING_STATUSES
from services.backend import SORTABLE_COLUMNS, WRITABLE_COLUMNS
from services.cache import QueryCache
from utils.date_range import DateRange, normalize, ranges_overlap, rental_days, to_day_string, today_utc
from utils.logger import get_logger

log = get_logger(__name__)

BOOKINGS_TABLE = "bookings"
STATS_KEY = "bookings:stats:{}"

MAX_PAGE_SIZE = 100
DATE_FILTERS = ("today", "week", "month", "past")
REQUIRED_FIELDS = ("customer_name", "customer_email", "car_id", "pickup_date", "return_date")

CSV_HEADER = [
    "ID", "Customer", "Email", "Phone", "Car", "Pickup Date",
    "Return Date", "Total Price", "Status", "Notes", "Created At",
]
_FORMULA_PREFIXES = ("=", "+", "-", "@")


@dataclass
class Availability:
    available: bool
    conflicts: List[DateRange] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"available": self.available, "conflicts": [r.to_dict() for r in self.conflicts]}


@dataclass
class BookingResult:
    success: bool
    booking: Optional[dict] = None
    error: Optional[str] = None
    code: Optional[str] = None
    conflicts: List[DateRange] = field(default_factory=list)

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "booking": self.booking}
        return {
            "success": False,
            "error": self.error,
            "code": self.code,
            "conflicts": [r.to_dict() for r in self.conflicts],
        }


def _csv_cell(value) -> str:
    if value is None:
        return ""
    text = str(value)
    if text.startswith(_FORMULA_PREFIXES):
        # keep spreadsheets from evaluating customer input
        return "'" + text
    return text


def _car_label(row: dict) -> str:
    car = row.get("car") or {}
    return f"{car.get('brand', '')} {car.get('model', '')}".strip()


class BookingService:
    def __init__(self, backend, cache: Optional[QueryCache] = None, clock: Callable[[], float] = time.time,
                 max_page_size: int = MAX_PAGE_SIZE):
        self.backend = backend
        self.cache = cache if cache is not None else QueryCache(clock=clock)
        self.clock = clock
        self.max_page_size = max_page_size

    # ---------- reads ----------

    def get_bookings(
        self,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        status: Optional[str] = None,
        date_filter: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> dict:
        if not isinstance(page, int) or page < 1:
            raise ValidationError("page must be a positive integer", field="page")
        if not isinstance(limit, int) or not 1 <= limit <= self.max_page_size:
            raise ValidationError(f"limit must be between 1 and {self.max_page_size}", field="limit")
        if sort_by not in SORTABLE_COLUMNS:
            raise ValidationError("Unsupported sort field", field="sort_by", details=sorted(SORTABLE_COLUMNS))
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be asc or desc", field="sort_order")

        status = None if status in (None, "", "all") else status
        if status is not None and status not in BOOKING_STATUSES:
            raise ValidationError("Unknown booking status", field="status", details=list(BOOKING_STATUSES))
        date_filter = None if date_filter in (None, "", "all") else date_filter
        if date_filter is not None and date_filter not in DATE_FILTERS:
            raise ValidationError("Unknown date filter", field="date_filter", details=list(DATE_FILTERS))
        search = (search or "").strip() or None

        filters = {"search": search, "status": status, "date_filter": date_filter}
        if date_filter:
            # relative filters go stale at midnight
            filters["today"] = today_utc(self.clock())

        key = self.cache.generate_key(BOOKINGS_TABLE, "list", {
            **filters, "page": page, "limit": limit, "sort_by": sort_by, "sort_order": sort_order,
        })
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        rows, total = self.backend.query_bookings(
            filters, sort_by=sort_by, sort_order=sort_order, offset=(page - 1) * limit, limit=limit,
        )
        total_pages = math.ceil(total / limit) if total else 0
        result = {
            "bookings": rows,
            "total_count": total,
            "total_pages": total_pages,
            "current_page": page,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        }
        self.cache.set(key, result)
        return result

    def get_booking_stats(self) -> dict:
        cached = self.cache.get(STATS_KEY)
        if cached is not None:
            return cached

        rows = self.backend.list_bookings()
        today = today_utc(self.clock())
        by_status = {s: 0 for s in BOOKING_STATUSES}
        revenue = 0.0
        upcoming = 0
        for row in rows:
            status = row.get("status")
            by_status[status] = by_status.get(status, 0) + 1
            if status != "cancelled":
                revenue += float(row.get("total_price") or 0)
            if status in ("confirmed", "active") and to_day_string(row["pickup_date"]) > today:
                upcoming += 1

        stats = {
            "total_revenue": round(revenue, 2),
            "active_bookings": by_status["active"],
            "confirmed_bookings": by_status["confirmed"],
            "completed_bookings": by_status["completed"],
            "pending_bookings": by_status["pending"],
            "cancelled_bookings": by_status["cancelled"],
            "upcoming_bookings": upcoming,
            "total_bookings": len(rows),
        }
        self.cache.set(STATS_KEY, stats)
        return stats

    def get_booking(self, booking_id: int) -> dict:
        key = self.cache.generate_key(BOOKINGS_TABLE, "get", {"id": booking_id})
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        row = self.backend.get_booking(booking_id)
        if row is None:
            raise NotFoundError("Booking not found")
        self.cache.set(key, row)
        return row

    def get_booked_dates_for_car(self, car_id: int, exclude_booking_id: Optional[int] = None) -> List[DateRange]:
        rows = self.backend.bookings_for_car(car_id, exclude_booking_id=exclude_booking_id)
        return [normalize(r["pickup_date"], r["return_date"]) for r in rows if r.get("status") != "cancelled"]

    def check_availability(self, car_id: int, pickup_date, return_date,
                           exclude_booking_id: Optional[int] = None) -> Availability:
        wanted = self._requested_range(pickup_date, return_date)
        conflicts = [
            booked for booked in self.get_booked_dates_for_car(car_id, exclude_booking_id)
            if ranges_overlap(wanted.start, wanted.end, booked.start, booked.end)
        ]
        return Availability(available=not conflicts, conflicts=conflicts)

    # ---------- writes ----------

    def _requested_range(self, pickup_date, return_date) -> DateRange:
        try:
            requested = normalize(pickup_date, return_date)
        except (TypeError, ValueError):
            raise ValidationError("Invalid pickup or return date", field="pickup_date") from None
        if to_day_string(return_date) < requested.start:
            raise ValidationError("Return date must not be before pickup date", field="return_date")
        return requested

    def create_booking(self, fields: dict) -> BookingResult:
        missing = [f for f in REQUIRED_FIELDS if fields.get(f) in (None, "")]
        if missing:
            raise ValidationError("Missing required fields", details=missing)

        requested = self._requested_range(fields["pickup_date"], fields["return_date"])
        if requested.start < today_utc(self.clock()):
            raise ValidationError("Pickup date cannot be in the past", field="pickup_date")

        car = self.backend.get_car(fields["car_id"])
        if car is None:
            raise NotFoundError("Car not found", field="car_id")
        if car.get("status") != "available":
            raise ValidationError("This car cannot be booked right now", field="car_id")

        availability = self.check_availability(car["id"], fields["pickup_date"], fields["return_date"])
        if not availability.available:
            log.info("booking_conflict", car_id=car["id"], pickup=requested.start, conflicts=len(availability.conflicts))
            return BookingResult(
                success=False,
                error="The car is already booked for some of these dates",
                code="booking_conflict",
                conflicts=availability.conflicts,
            )

        values = {k: v for k, v in fields.items() if k in WRITABLE_COLUMNS}
        values["pickup_date"] = requested.start
        values["return_date"] = to_day_string(fields["return_date"])
        values["status"] = "pending"
        # priced from the car, never from the form; admins adjust it afterwards
        values["total_price"] = round(float(car.get("daily_rate") or 0) * rental_days(requested.start, values["return_date"]), 2)

        booking = self.backend.insert_booking(values)
        self.cache.clear()
        log.info("booking_created", booking_id=booking["id"], car_id=car["id"])
        return BookingResult(success=True, booking=booking)

    def update_booking(self, booking_id: int, fields: dict) -> dict:
        values = {k: v for k, v in (fields or {}).items() if k in WRITABLE_COLUMNS}
        if not values:
            raise ValidationError("No updatable fields supplied", details=list(WRITABLE_COLUMNS))
        if "status" in values and values["status"] not in BOOKING_STATUSES:
            raise ValidationError("Unknown booking status", field="status", details=list(BOOKING_STATUSES))
        for col in ("pickup_date", "return_date"):
            if col in values:
                try:
                    values[col] = to_day_string(values[col])
                except (TypeError, ValueError):
                    raise ValidationError("Invalid date", field=col) from None
        if "total_price" in values:
            try:
                values["total_price"] = float(values["total_price"])
            except (TypeError, ValueError):
                raise ValidationError("total_price must be a number", field="total_price") from None
            if values["total_price"] < 0:
                raise ValidationError("total_price must not be negative", field="total_price")

        # a status change can reinstate a cancelled booking onto taken dates
        if {"car_id", "pickup_date", "return_date", "status"} & set(values):
            self._ensure_free(booking_id, values)

        updated = self.backend.update_booking(booking_id, values)
        if updated is None:
            raise NotFoundError("Booking not found")
        self.cache.clear()
        log.info("booking_updated", booking_id=booking_id, fields=sorted(values))
        return updated

    def _ensure_free(self, booking_id: int, values: dict) -> None:
        current = self.backend.get_booking(booking_id)
        if current is None:
            raise NotFoundError("Booking not found")
        if values.get("status", current["status"]) == "cancelled":
            return
        car_id = values.get("car_id", current["car_id"])
        availability = self.check_availability(
            car_id,
            values.get("pickup_date", current["pickup_date"]),
            values.get("return_date", current["return_date"]),
            exclude_booking_id=booking_id,
        )
        if not availability.available:
            raise BookingConflict(
                "The car is already booked for some of these dates",
                details=[r.to_dict() for r in availability.conflicts],
            )

    def delete_booking(self, booking_id: int) -> None:
        if self.backend.delete_bookings([booking_id]) == 0:
            raise NotFoundError("Booking not found")
        self.cache.clear()
        log.info("booking_deleted", booking_id=booking_id)

    def bulk_delete_bookings(self, booking_ids: Iterable[int]) -> int:
        ids = list(booking_ids or [])
        if not ids:
            raise ValidationError("No bookings selected", field="ids")
        deleted = self.backend.delete_bookings(ids)
        self.cache.clear()
        log.info("bookings_bulk_deleted", requested=len(ids), deleted=deleted)
        return deleted

    def export_bookings(self) -> str:
        rows = self.backend.list_bookings()
        if not rows:
            raise NoDataToExport("No bookings to export")

        out = io.StringIO()
        writer = csv.writer(out)
        writer.writerow(CSV_HEADER)
        for row in rows:
            writer.writerow([_csv_cell(v) for v in (
                row["id"],
                row.get("customer_name"),
                row.get("customer_email"),
                row.get("customer_phone"),
                _car_label(row),
                row.get("pickup_date"),
                row.get("return_date"),
                row.get("total_price"),
                row.get("status"),
                row.get("notes"),
                row.get("created_at"),
            )])
        log.info("bookings_exported", rows=len(rows))
        return out.getvalue()

    # ---------- cache ----------

    def clear_cache(self, key: Optional[str] = None) -> int:
        if key is not None:
            return int(self.cache.delete(key))
        return self.cache.clear()

    def get_cache_stats(self) -> dict:
        return self.cache.get_stats()
