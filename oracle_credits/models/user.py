from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class User(Document):
    email: str
    name: str = ""
    role: str = "user"  # "user" | "admin"
    referral_code: str | None = None
    referred_by_id: PydanticObjectId | None = None
    login_streak: int = 0
    last_bonus_date: str | None = None  # YYYY-MM-DD, UTC
    total_readings: int = 0
    spreads_used: list[str] = Field(default_factory=list)
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
        keep_nulls = False
        indexes = [
            IndexModel(
                [("referral_code", ASCENDING)],
                name="referral_code_unique",
                unique=True,
                sparse=True,
            ),
            [("referred_by_id", ASCENDING)],
        ]
