from flask import Blueprint, request, jsonify, g

from errors import ValidationError
from services import get_services
from utils.audit import log_event

booking_bp = Blueprint("booking", __name__)


def _int_field(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", field=name) from None


# ---------- PUBLIC: cars and availability ----------
@booking_bp.get("/cars")
def list_cars():
    cars = get_services().cars.list_cars()
    return jsonify([c for c in cars if c.get("status") == "available"]), 200


@booking_bp.get("/cars/<int:car_id>/booked-dates")
def booked_dates(car_id):
    ranges = get_services().bookings.get_booked_dates_for_car(car_id)
    return jsonify(car_id=car_id, booked=[r.to_dict() for r in ranges]), 200


@booking_bp.get("/cars/<int:car_id>/availability")
def availability(car_id):
    pickup = request.args.get("pickup_date")
    ret = request.args.get("return_date")
    if not pickup or not ret:
        return jsonify(error="pickup_date and return_date are required (YYYY-MM-DD)"), 400

    result = get_services().bookings.check_availability(car_id, pickup, ret)
    return jsonify(car_id=car_id, **result.to_dict()), 200


# ---------- PUBLIC: booking form ----------
@booking_bp.post("/bookings")
def create_booking():
    data = request.get_json(silent=True) or {}
    if data.get("car_id") not in (None, ""):
        data["car_id"] = _int_field(data["car_id"], "car_id")
    data["customer_email"] = (data.get("customer_email") or "").strip().lower()

    result = get_services().bookings.create_booking(data)
    if not result.success:
        # overlap is shown inline on the form
        return jsonify(result.to_dict()), 409

    user = getattr(g, "user", None)
    log_event(
        "BOOKING_CREATE",
        user_id=user.id if user else None,
        entity="booking",
        entity_id=result.booking["id"],
        metadata={"car_id": result.booking["car_id"], "pickup_date": result.booking["pickup_date"]},
    )
    return jsonify(result.to_dict()), 201
