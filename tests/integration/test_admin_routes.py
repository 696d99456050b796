import csv
import io
from datetime import timedelta

import pytest

from conftest import login, utc_today
from models import db
from models.audit_log import AuditLog
from models.user import User
from security.password import hash_password


class TestAccess:
    def test_anonymous_gets_401(self, client):
        assert client.get("/admin/bookings").status_code == 401

    def test_user_without_admin_role_gets_403(self, client, plain_user):
        resp, _ = login(client, "staff@carrental.test", "Plain-Pass-77")
        assert resp.get_json()["is_admin"] is False
        assert client.get("/admin/bookings").status_code == 403

    def test_configured_admin_email_gets_in(self, client, app):
        with app.app_context():
            db.session.add(User(email="owner@carrental.test", password_hash=hash_password("Owner-Pass-1", rounds=4)))
            db.session.commit()

        resp, _ = login(client, "owner@carrental.test", "Owner-Pass-1")
        assert resp.get_json()["is_admin"] is True
        assert client.get("/admin/bookings").status_code == 200
        assert client.get("/auth/me").get_json()["is_admin"] is True


class TestListing:
    def test_lists_all(self, admin_client, bookings):
        body = admin_client.get("/admin/bookings").get_json()
        assert body["total_count"] == 4
        assert body["current_page"] == 1
        assert body["has_next_page"] is False

    @pytest.mark.parametrize(
        "query, expected",
        [
            ("search=clio", 2),
            ("search=AMINA", 1),
            ("status=cancelled", 1),
            ("status=all", 4),
            ("date_filter=week", 1),
            ("date_filter=month", 3),
            ("date_filter=past", 1),
            ("date_filter=today", 0),
        ],
    )
    def test_filters(self, admin_client, bookings, query, expected):
        assert admin_client.get(f"/admin/bookings?{query}").get_json()["total_count"] == expected

    def test_sort_and_paginate(self, admin_client, bookings):
        body = admin_client.get("/admin/bookings?sort_by=total_price&sort_order=asc&limit=2&page=2").get_json()
        assert [b["total_price"] for b in body["bookings"]] == [150, 250]
        assert body["total_pages"] == 2
        assert body["has_prev_page"] is True

    def test_rejects_unknown_sort_column(self, admin_client, bookings):
        resp = admin_client.get("/admin/bookings?sort_by=password_hash")
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "sort_by"

    def test_stats(self, admin_client, bookings):
        stats = admin_client.get("/admin/bookings/stats").get_json()
        assert stats["total_bookings"] == 4
        assert stats["total_revenue"] == 490
        assert stats["upcoming_bookings"] == 1
        assert stats["cancelled_bookings"] == 1

    def test_get_one(self, admin_client, bookings):
        body = admin_client.get(f"/admin/bookings/{bookings[0]}").get_json()
        assert body["customer_name"] == "Amina Idrissi"
        assert body["car"]["brand"] == "Dacia"
        assert admin_client.get("/admin/bookings/9999").status_code == 404


class TestMutations:
    def test_patch_status(self, admin_client, bookings, app):
        resp = admin_client.send("PATCH", f"/admin/bookings/{bookings[2]}", json={"status": "confirmed"})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "confirmed"

        listed = admin_client.get("/admin/bookings?status=confirmed").get_json()
        assert listed["total_count"] == 2
        with app.app_context():
            assert AuditLog.query.filter_by(action="BOOKING_UPDATE").count() == 1

    def test_patch_into_booked_dates_conflicts(self, admin_client, bookings, cars):
        today = utc_today()
        resp = admin_client.send("PATCH", f"/admin/bookings/{bookings[2]}", json={
            "car_id": cars[0],
            "pickup_date": (today + timedelta(days=11)).isoformat(),
            "return_date": (today + timedelta(days=12)).isoformat(),
        })
        assert resp.status_code == 409
        body = resp.get_json()
        assert body["code"] == "booking_conflict"
        assert body["details"] == [{
            "start": (today + timedelta(days=10)).isoformat(),
            "end": (today + timedelta(days=15)).isoformat(),
        }]

    def test_patch_ignores_unknown_columns(self, admin_client, bookings):
        resp = admin_client.send("PATCH", f"/admin/bookings/{bookings[0]}", json={"id": 999})
        assert resp.status_code == 400

    def test_patch_missing_booking(self, admin_client, bookings):
        resp = admin_client.send("PATCH", "/admin/bookings/9999", json={"status": "active"})
        assert resp.status_code == 404

    def test_delete(self, admin_client, bookings):
        assert admin_client.send("DELETE", f"/admin/bookings/{bookings[1]}").status_code == 200
        assert admin_client.get(f"/admin/bookings/{bookings[1]}").status_code == 404
        assert admin_client.send("DELETE", f"/admin/bookings/{bookings[1]}").status_code == 404

    def test_bulk_delete(self, admin_client, bookings):
        resp = admin_client.send("POST", "/admin/bookings/bulk-delete", json={"ids": [bookings[0], bookings[1], 9999]})
        assert resp.status_code == 200
        assert resp.get_json()["deleted"] == 2
        assert admin_client.get("/admin/bookings").get_json()["total_count"] == 2

    @pytest.mark.parametrize("payload", [{}, {"ids": []}, {"ids": ["x"]}])
    def test_bulk_delete_validation(self, admin_client, bookings, payload):
        resp = admin_client.send("POST", "/admin/bookings/bulk-delete", json=payload)
        assert resp.status_code == 400


class TestExport:
    def test_csv_download(self, admin_client, bookings):
        resp = admin_client.get("/admin/bookings/export")
        assert resp.status_code == 200
        assert resp.mimetype == "text/csv"
        assert resp.headers["Content-Disposition"].startswith("attachment; filename=bookings-")

        rows = list(csv.DictReader(io.StringIO(resp.get_data(as_text=True))))
        assert len(rows) == 4
        names = {r["Customer"] for r in rows}
        assert "'=HYPERLINK(\"x\")" in names

    def test_empty_export_is_404(self, admin_client):
        resp = admin_client.get("/admin/bookings/export")
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "no_data_to_export"


class TestCars:
    def test_admin_sees_whole_fleet(self, admin_client, cars):
        assert len(admin_client.get("/admin/cars").get_json()) == 3
        assert len(admin_client.get("/cars").get_json()) == 2

    def test_create_shows_up_on_public_list(self, admin_client, cars, app):
        assert len(admin_client.get("/cars").get_json()) == 2

        resp = admin_client.send("POST", "/admin/cars", json={"brand": " Kia ", "model": "Picanto", "daily_rate": "35", "year": 2024})
        assert resp.status_code == 201
        car = resp.get_json()
        assert (car["brand"], car["daily_rate"], car["status"]) == ("Kia", 35.0, "available")

        assert len(admin_client.get("/cars").get_json()) == 3
        with app.app_context():
            assert AuditLog.query.filter_by(action="CAR_CREATE", entity_id=str(car["id"])).count() == 1

    @pytest.mark.parametrize(
        "payload, field",
        [
            ({"model": "Picanto", "daily_rate": 35}, "brand"),
            ({"brand": "Kia", "model": "Picanto", "daily_rate": -1}, "daily_rate"),
            ({"brand": "Kia", "model": "Picanto"}, "daily_rate"),
            ({"brand": "Kia", "model": "Picanto", "daily_rate": 35, "status": "sold"}, "status"),
            ({"brand": "Kia", "model": "Picanto", "daily_rate": 35, "year": "new"}, "year"),
        ],
    )
    def test_create_validation(self, admin_client, payload, field):
        resp = admin_client.send("POST", "/admin/cars", json=payload)
        assert resp.status_code == 400
        assert resp.get_json()["field"] == field

    def test_create_requires_csrf(self, admin_client):
        resp = admin_client.post("/admin/cars", json={"brand": "Kia", "model": "Picanto", "daily_rate": 35})
        assert resp.status_code == 403
        assert admin_client.get("/admin/cars").get_json() == []

    def test_non_admin_is_refused(self, client, plain_user, cars):
        login(client, "staff@carrental.test", "Plain-Pass-77")
        assert client.get("/admin/cars").status_code == 403

    def test_rename_reaches_cached_booking_pages(self, admin_client, cars, bookings):
        admin_client.get("/admin/bookings")
        resp = admin_client.send("PATCH", f"/admin/cars/{cars[0]}", json={"model": "Sandero"})
        assert resp.status_code == 200

        rows = admin_client.get("/admin/bookings").get_json()["bookings"]
        [row] = [r for r in rows if r["id"] == bookings[0]]
        assert row["car"]["model"] == "Sandero"

    def test_maintenance_hides_car_from_public_list(self, admin_client, cars):
        admin_client.get("/cars")
        admin_client.send("PATCH", f"/admin/cars/{cars[0]}", json={"status": "maintenance"})
        assert [c["id"] for c in admin_client.get("/cars").get_json()] == [cars[1]]

    def test_patch_missing_car(self, admin_client, cars):
        assert admin_client.send("PATCH", "/admin/cars/9999", json={"status": "retired"}).status_code == 404

    def test_car_with_bookings_cannot_be_deleted(self, admin_client, cars, bookings):
        resp = admin_client.send("DELETE", f"/admin/cars/{cars[0]}")
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "car_in_use"
        assert admin_client.get(f"/admin/cars/{cars[0]}").status_code == 200

    def test_delete_unused_car(self, admin_client, cars, bookings, app):
        assert admin_client.send("DELETE", f"/admin/cars/{cars[2]}").status_code == 200
        assert admin_client.get(f"/admin/cars/{cars[2]}").status_code == 404
        with app.app_context():
            assert AuditLog.query.filter_by(action="CAR_DELETE").count() == 1


class TestUsers:
    def test_list(self, admin_client, plain_user):
        users = admin_client.get("/admin/users").get_json()
        by_email = {u["email"]: u for u in users}
        assert set(by_email) == {"admin@carrental.test", "staff@carrental.test"}
        assert by_email["admin@carrental.test"]["roles"] == ["ADMIN"]
        assert by_email["admin@carrental.test"]["last_login_at"] is not None
        assert "password_hash" not in by_email["staff@carrental.test"]

    def test_rename(self, admin_client, plain_user):
        resp = admin_client.send("PATCH", f"/admin/users/{plain_user}", json={"full_name": "  Sam S. "})
        assert resp.status_code == 200
        assert resp.get_json()["full_name"] == "Sam S."

    def test_deactivation_ends_live_sessions(self, admin_client, plain_user, app):
        staff = app.test_client()
        resp, _ = login(staff, "staff@carrental.test", "Plain-Pass-77")
        assert resp.status_code == 200
        auth = app.extensions["carrental"].auth
        assert len(auth.watchdogs) == 2

        resp = admin_client.send("PATCH", f"/admin/users/{plain_user}", json={"is_active": False})
        assert resp.status_code == 200
        assert resp.get_json()["is_active"] is False

        assert staff.get("/auth/me").status_code == 401
        assert login(staff, "staff@carrental.test", "Plain-Pass-77")[0].status_code == 401
        assert len(auth.watchdogs) == 1
        with app.app_context():
            assert AuditLog.query.filter_by(action="USER_UPDATE", entity_id=str(plain_user)).count() == 1

    def test_cannot_deactivate_self(self, admin_client, admin_user):
        resp = admin_client.send("PATCH", f"/admin/users/{admin_user}", json={"is_active": False})
        assert resp.status_code == 400
        assert admin_client.get("/auth/me").status_code == 200

    @pytest.mark.parametrize("payload", [{}, {"email": "x@y.z"}, {"is_active": "no"}, {"full_name": 5}])
    def test_validation(self, admin_client, plain_user, payload):
        assert admin_client.send("PATCH", f"/admin/users/{plain_user}", json=payload).status_code == 400

    def test_missing_user(self, admin_client):
        assert admin_client.send("PATCH", "/admin/users/9999", json={"is_active": True}).status_code == 404


def test_dashboard(admin_client, cars, bookings):
    body = admin_client.get("/admin/dashboard").get_json()
    assert body["total_cars"] == 3
    assert body["available_cars"] == 2
    assert body["total_users"] == 1
    assert body["bookings"]["total_bookings"] == 4


class TestCache:
    def test_reads_are_cached_and_writes_invalidate(self, admin_client, bookings):
        admin_client.get("/admin/bookings")
        admin_client.get("/admin/bookings")
        stats = admin_client.get("/admin/cache/stats").get_json()
        assert stats["size"] == 1
        assert stats["hits"] == 1

        admin_client.send("PATCH", f"/admin/bookings/{bookings[0]}", json={"notes": "VIP"})
        assert admin_client.get("/admin/cache/stats").get_json()["size"] == 0

    def test_manual_clear(self, admin_client, bookings):
        admin_client.get("/admin/bookings")
        admin_client.get("/admin/bookings/stats")
        resp = admin_client.send("POST", "/admin/cache/clear")
        assert resp.get_json()["cleared"] == 2

    def test_clear_single_key(self, admin_client, bookings):
        admin_client.get("/admin/bookings/stats")
        resp = admin_client.send("POST", "/admin/cache/clear", json={"key": "bookings:stats:{}"})
        assert resp.get_json()["cleared"] == 1


class TestSecurityMonitoring:
    def test_failed_attempts_visible(self, admin_client):
        login(admin_client, "someone@example.com", "wrong")
        body = admin_client.get("/admin/security/locks").get_json()
        assert body["locks"] == []
        [entry] = body["attempts"]
        assert entry["key"] == "someone@example.com"
        assert entry["attempts"] == 1

        status = admin_client.get("/admin/security/locks/someone@example.com").get_json()
        assert status["attempts"] == 1
        assert status["is_locked"] is False

    def test_manual_lock_blocks_login_until_unlocked(self, admin_client, plain_user, app):
        resp = admin_client.send("POST", "/admin/security/locks/staff@carrental.test", json={"duration_seconds": 600})
        assert resp.status_code == 200
        assert resp.get_json()["reason"] == "MANUAL_LOCK"

        services = app.extensions["carrental"]
        assert services.auth.sign_in("staff@carrental.test", "Plain-Pass-77").reason == "LOCKED"

        resp = admin_client.send("DELETE", "/admin/security/locks/staff@carrental.test")
        assert resp.get_json()["unlocked"] is True
        assert services.rate_limiter.check_rate_limit("staff@carrental.test").allowed is True

    @pytest.mark.parametrize("duration", [0, -5, "soon"])
    def test_lock_rejects_bad_duration(self, admin_client, duration):
        resp = admin_client.send("POST", "/admin/security/locks/x@y.z", json={"duration_seconds": duration})
        assert resp.status_code == 400

    def test_events(self, admin_client):
        login(admin_client, "someone@example.com", "wrong")
        body = admin_client.get("/admin/security/events?type=LOGIN_FAIL").get_json()
        assert [e["data"]["email"] for e in body["events"]] == ["someone@example.com"]
        assert body["suspicious"] == []

    def test_csrf_stats(self, admin_client):
        stats = admin_client.get("/admin/security/csrf").get_json()
        assert stats["session_count"] == 1
        assert stats["active_tokens"] >= 1
