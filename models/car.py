from datetime import datetime
from models.db import db

CAR_STATUSES = ("available", "maintenance", "retired")

class Car(db.Model):
    __tablename__ = "cars"

    id = db.Column(db.Integer, primary_key=True)

    brand = db.Column(db.String(80), nullable=False)
    model = db.Column(db.String(80), nullable=False)
    year = db.Column(db.Integer, nullable=True)
    daily_rate = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    image_url = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="available")

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def display_name(self) -> str:
        return f"{self.brand} {self.model}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand": self.brand,
            "model": self.model,
            "year": self.year,
            "daily_rate": self.daily_rate,
            "image_url": self.image_url,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
