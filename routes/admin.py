from datetime import datetime

from flask import Blueprint, Response, jsonify, g, request

from errors import NotFoundError, ValidationError
from models import db
from models.user import User
from security.rate_limit import LockReason
from services import get_services
from utils.audit import log_event
from security.rbac import require_roles

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _ids_from_body(data) -> list:
    ids = data.get("ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("ids must be a non-empty list", field="ids")
    try:
        return [int(i) for i in ids]
    except (TypeError, ValueError):
        raise ValidationError("ids must be integers", field="ids") from None


# ---------- bookings ----------
@admin_bp.get("/bookings")
@require_roles("ADMIN")
def list_bookings():
    args = request.args
    page = get_services().bookings.get_bookings(
        page=args.get("page", 1, type=int),
        limit=args.get("limit", 20, type=int),
        search=args.get("search"),
        status=args.get("status"),
        date_filter=args.get("date_filter"),
        sort_by=args.get("sort_by", "created_at"),
        sort_order=args.get("sort_order", "desc"),
    )
    return jsonify(page), 200


@admin_bp.get("/bookings/stats")
@require_roles("ADMIN")
def booking_stats():
    return jsonify(get_services().bookings.get_booking_stats()), 200


@admin_bp.get("/bookings/export")
@require_roles("ADMIN")
def export_bookings():
    csv_text = get_services().bookings.export_bookings()
    log_event("BOOKINGS_EXPORT", user_id=g.user.id)

    filename = f"bookings-{datetime.utcnow().date().isoformat()}.csv"
    return Response(
        csv_text,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@admin_bp.get("/bookings/<int:booking_id>")
@require_roles("ADMIN")
def get_booking(booking_id):
    return jsonify(get_services().bookings.get_booking(booking_id)), 200


@admin_bp.patch("/bookings/<int:booking_id>")
@require_roles("ADMIN")
def update_booking(booking_id):
    data = request.get_json(silent=True) or {}
    updated = get_services().bookings.update_booking(booking_id, data)
    log_event(
        "BOOKING_UPDATE",
        user_id=g.user.id,
        entity="booking",
        entity_id=booking_id,
        metadata={"fields": sorted(data)},
    )
    return jsonify(updated), 200


@admin_bp.delete("/bookings/<int:booking_id>")
@require_roles("ADMIN")
def delete_booking(booking_id):
    get_services().bookings.delete_booking(booking_id)
    log_event("BOOKING_DELETE", user_id=g.user.id, entity="booking", entity_id=booking_id, severity="medium")
    return jsonify(message="Booking deleted"), 200


@admin_bp.post("/bookings/bulk-delete")
@require_roles("ADMIN")
def bulk_delete_bookings():
    ids = _ids_from_body(request.get_json(silent=True) or {})
    deleted = get_services().bookings.bulk_delete_bookings(ids)
    log_event(
        "BOOKING_BULK_DELETE",
        user_id=g.user.id,
        entity="booking",
        metadata={"ids": ids, "deleted": deleted},
        severity="medium",
    )
    return jsonify(message="Bookings deleted", deleted=deleted), 200


# ---------- cars ----------
@admin_bp.get("/cars")
@require_roles("ADMIN")
def list_cars():
    return jsonify(get_services().cars.list_cars()), 200


@admin_bp.post("/cars")
@require_roles("ADMIN")
def create_car():
    car = get_services().cars.create_car(request.get_json(silent=True) or {})
    log_event("CAR_CREATE", user_id=g.user.id, entity="car", entity_id=car["id"])
    return jsonify(car), 201


@admin_bp.get("/cars/<int:car_id>")
@require_roles("ADMIN")
def get_car(car_id):
    return jsonify(get_services().cars.get_car(car_id)), 200


@admin_bp.patch("/cars/<int:car_id>")
@require_roles("ADMIN")
def update_car(car_id):
    data = request.get_json(silent=True) or {}
    car = get_services().cars.update_car(car_id, data)
    log_event("CAR_UPDATE", user_id=g.user.id, entity="car", entity_id=car_id, metadata={"fields": sorted(data)})
    return jsonify(car), 200


@admin_bp.delete("/cars/<int:car_id>")
@require_roles("ADMIN")
def delete_car(car_id):
    get_services().cars.delete_car(car_id)
    log_event("CAR_DELETE", user_id=g.user.id, entity="car", entity_id=car_id, severity="medium")
    return jsonify(message="Car deleted"), 200


# ---------- users ----------
def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "roles": sorted(user.role_names),
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


@admin_bp.get("/users")
@require_roles("ADMIN")
def list_users():
    users = User.query.order_by(User.created_at.desc(), User.id.desc()).all()
    return jsonify([_user_dict(u) for u in users]), 200


@admin_bp.patch("/users/<int:user_id>")
@require_roles("ADMIN")
def update_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")

    data = request.get_json(silent=True) or {}
    if not {"full_name", "is_active"} & set(data):
        raise ValidationError("No updatable fields supplied", details=["full_name", "is_active"])

    if "full_name" in data:
        name = data["full_name"]
        if name is not None and (not isinstance(name, str) or len(name.strip()) > 120):
            raise ValidationError("full_name must be text of at most 120 characters", field="full_name")
        user.full_name = (name or "").strip() or None

    if "is_active" in data:
        if not isinstance(data["is_active"], bool):
            raise ValidationError("is_active must be true or false", field="is_active")
        if not data["is_active"] and user.id == g.user.id:
            raise ValidationError("You cannot deactivate your own account", field="is_active")
        user.is_active = data["is_active"]

    db.session.commit()
    revoked = []
    if not user.is_active:
        # a deactivated account loses every live session at once
        revoked = get_services().identity.revoke_user_sessions(user.id, reason="DEACTIVATED")

    log_event(
        "USER_UPDATE",
        user_id=g.user.id,
        entity="user",
        entity_id=user.id,
        metadata={"fields": sorted(data), "revoked_sessions": len(revoked)},
        severity="medium" if revoked else "low",
    )
    return jsonify(_user_dict(user)), 200


# ---------- dashboard ----------
@admin_bp.get("/dashboard")
@require_roles("ADMIN")
def dashboard():
    services = get_services()
    cars = services.cars.list_cars()
    return jsonify(
        total_cars=len(cars),
        available_cars=sum(1 for c in cars if c.get("status") == "available"),
        total_users=User.query.count(),
        bookings=services.bookings.get_booking_stats(),
    ), 200


# ---------- cache ----------
@admin_bp.get("/cache/stats")
@require_roles("ADMIN")
def cache_stats():
    return jsonify(get_services().bookings.get_cache_stats()), 200


@admin_bp.post("/cache/clear")
@require_roles("ADMIN")
def clear_cache():
    data = request.get_json(silent=True) or {}
    cleared = get_services().bookings.clear_cache(data.get("key"))
    log_event("CACHE_CLEAR", user_id=g.user.id, metadata={"key": data.get("key"), "cleared": cleared})
    return jsonify(message="Cache cleared", cleared=cleared), 200


# ---------- security monitoring ----------
@admin_bp.get("/security/locks")
@require_roles("ADMIN")
def security_locks():
    limiter = get_services().rate_limiter
    return jsonify(locks=limiter.get_all_locks(), attempts=limiter.get_all_attempts()), 200


@admin_bp.get("/security/locks/<path:key>")
@require_roles("ADMIN")
def security_lock_status(key):
    return jsonify(key=key, **get_services().rate_limiter.get_status(key.strip().lower())), 200


@admin_bp.post("/security/locks/<path:key>")
@require_roles("ADMIN")
def lock_key(key):
    data = request.get_json(silent=True) or {}
    limiter = get_services().rate_limiter
    duration = data.get("duration_seconds", limiter.config.lockout_seconds)
    if not isinstance(duration, (int, float)) or duration <= 0:
        return jsonify(error="duration_seconds must be a positive number"), 400

    key = key.strip().lower()
    lock = limiter.lock_key(key, duration, LockReason.MANUAL_LOCK)
    log_event("ADMIN_LOCK_KEY", user_id=g.user.id, metadata={"key": key, "duration": duration}, severity="medium")
    return jsonify(key=key, until=lock.until, duration=lock.duration, reason=lock.reason.value), 200


@admin_bp.delete("/security/locks/<path:key>")
@require_roles("ADMIN")
def unlock_key(key):
    key = key.strip().lower()
    had_state = get_services().rate_limiter.unlock_key(key)
    log_event("ADMIN_UNLOCK_KEY", user_id=g.user.id, metadata={"key": key, "had_state": had_state})
    return jsonify(key=key, unlocked=had_state), 200


@admin_bp.get("/security/events")
@require_roles("ADMIN")
def security_events():
    limit = request.args.get("limit", type=int) or 50
    limit = max(1, min(limit, 200))
    monitor = get_services().events
    return jsonify(
        events=monitor.recent(limit=limit, event_type=request.args.get("type")),
        suspicious=list(monitor.suspicious),
    ), 200


@admin_bp.get("/security/csrf")
@require_roles("ADMIN")
def csrf_stats():
    return jsonify(get_services().csrf.get_stats()), 200
