from flask import Blueprint, jsonify

from routes.admin import admin_bp
from routes.auth import auth_bp
from routes.booking import booking_bp

health_bp = Blueprint("health", __name__)


@health_bp.get("/health")
def health():
    return jsonify(status="ok"), 200


__all__ = ["health_bp", "auth_bp", "admin_bp", "booking_bp"]
