"""
CivicLens
Citizen / officer profile model.

Holds the reputation balance (``civic_credits``). Profiles are keyed by the
identity provider's subject id and provisioned on first authenticated write.
"""

from datetime import datetime, timezone

from civiclens.models import db


class Profile(db.Model):
    __tablename__ = "profiles"

    id = db.Column(db.String(64), primary_key=True, comment="Identity provider subject (JWT sub)")
    username = db.Column(db.String(150), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="citizen", comment="citizen | officer | system")
    civic_credits = db.Column(db.Integer, nullable=False, default=0)
    avatar_url = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "civic_credits": self.civic_credits,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Profile {self.id}: {self.username} ({self.civic_credits} cr)>"
