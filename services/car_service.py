"""
Fleet management for the admin dashboard.

Cars share the query cache with bookings. Booking rows embed the car's brand
and model, so any car write clears the whole cache, not just the cars table.
"""
from typing import List, Optional

from errors import CarInUse, NotFoundError, ValidationError
from models.car import CAR_STATUSES
from services.backend import CAR_COLUMNS
from services.cache import QueryCache
from utils.logger import get_logger

log = get_logger(__name__)

CARS_TABLE = "cars"
MIN_YEAR = 1950
MAX_YEAR = 2100


def _text(value, name: str, max_length: int, required: bool) -> Optional[str]:
    text = value.strip() if isinstance(value, str) else value
    if text in (None, ""):
        if required:
            raise ValidationError(f"{name} is required", field=name)
        return None
    if not isinstance(text, str) or len(text) > max_length:
        raise ValidationError(f"{name} must be text of at most {max_length} characters", field=name)
    return text


def _clean(fields: dict, creating: bool) -> dict:
    values = {k: v for k, v in (fields or {}).items() if k in CAR_COLUMNS}
    if not creating and not values:
        raise ValidationError("No updatable fields supplied", details=list(CAR_COLUMNS))

    for name in ("brand", "model"):
        if creating or name in values:
            values[name] = _text(values.get(name), name, 80, required=True)
    if "image_url" in values:
        values["image_url"] = _text(values["image_url"], "image_url", 255, required=False)

    if creating or "daily_rate" in values:
        try:
            rate = float(values.get("daily_rate"))
        except (TypeError, ValueError):
            raise ValidationError("daily_rate must be a number", field="daily_rate") from None
        if rate < 0:
            raise ValidationError("daily_rate must not be negative", field="daily_rate")
        values["daily_rate"] = round(rate, 2)

    if values.get("year") not in (None, ""):
        try:
            year = int(values["year"])
        except (TypeError, ValueError):
            raise ValidationError("year must be an integer", field="year") from None
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise ValidationError(f"year must be between {MIN_YEAR} and {MAX_YEAR}", field="year")
        values["year"] = year
    elif "year" in values:
        values["year"] = None

    if creating:
        values.setdefault("status", "available")
    if "status" in values and values["status"] not in CAR_STATUSES:
        raise ValidationError("Unknown car status", field="status", details=list(CAR_STATUSES))
    return values


class CarService:
    def __init__(self, backend, cache: Optional[QueryCache] = None):
        self.backend = backend
        self.cache = cache if cache is not None else QueryCache()

    def list_cars(self) -> List[dict]:
        key = self.cache.generate_key(CARS_TABLE, "list")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        cars = self.backend.list_cars()
        self.cache.set(key, cars)
        return cars

    def get_car(self, car_id: int) -> dict:
        key = self.cache.generate_key(CARS_TABLE, "get", {"id": car_id})
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        car = self.backend.get_car(car_id)
        if car is None:
            raise NotFoundError("Car not found")
        self.cache.set(key, car)
        return car

    def create_car(self, fields: dict) -> dict:
        car = self.backend.insert_car(_clean(fields, creating=True))
        self.cache.clear()
        log.info("car_created", car_id=car["id"])
        return car

    def update_car(self, car_id: int, fields: dict) -> dict:
        car = self.backend.update_car(car_id, _clean(fields, creating=False))
        if car is None:
            raise NotFoundError("Car not found")
        self.cache.clear()
        log.info("car_updated", car_id=car_id, fields=sorted(fields))
        return car

    def delete_car(self, car_id: int) -> None:
        if self.backend.get_car(car_id) is None:
            raise NotFoundError("Car not found")
        # booking history keeps its car; retire the car instead
        used_by = self.backend.count_bookings_for_car(car_id)
        if used_by:
            raise CarInUse(
                "This car has bookings and cannot be deleted. Set its status to retired instead.",
                details={"bookings": used_by},
            )
        self.backend.delete_car(car_id)
        self.cache.clear()
        log.info("car_deleted", car_id=car_id)
