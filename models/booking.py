from datetime import datetime
from models.db import db

BOOKING_STATUSES = ("pending", "confirmed", "active", "completed", "cancelled")

class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    car_id = db.Column(db.Integer, db.ForeignKey("cars.id"), nullable=False, index=True)

    # customers book without an account, so contact details live on the booking
    customer_name = db.Column(db.String(120), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_phone = db.Column(db.String(30), nullable=True)

    pickup_date = db.Column(db.Date, nullable=False, index=True)
    return_date = db.Column(db.Date, nullable=False)
    total_price = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    # status values: pending, confirmed, active, completed, cancelled

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    car = db.relationship("Car", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "car_id": self.car_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "pickup_date": self.pickup_date.isoformat(),
            "return_date": self.return_date.isoformat(),
            "total_price": self.total_price,
            "notes": self.notes,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "car": {
                "brand": self.car.brand,
                "model": self.car.model,
                "year": self.car.year,
                "daily_rate": self.car.daily_rate,
                "image_url": self.car.image_url,
            } if self.car is not None else None,
        }
