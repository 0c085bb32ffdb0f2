"""Seed script: populates dev DB with a sample host, two bookings, and a dev access token."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

from jose import jwt
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from calsync.config import get_settings
from calsync.models.booking import Booking, LocationType
from calsync.models.user import User

SEED_USER_ID = uuid.UUID("aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee")
SEED_EMAIL = "host@example.com"


def dev_token(settings) -> str:
    """Access token for the seed host, valid for a week."""
    claims = {"sub": str(SEED_USER_ID), "exp": datetime.now(timezone.utc) + timedelta(days=7)}
    return jwt.encode(claims, settings.jwt_secret.get_secret_value(), algorithm=settings.jwt_algorithm)


async def seed():
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    async with session_factory() as db:
        result = await db.execute(text("SELECT id FROM users WHERE email = :email"), {"email": SEED_EMAIL})
        if result.scalar():
            print(f"Seed user {SEED_EMAIL} already exists, skipping.")
            print(f"Token: {dev_token(settings)}")
            await engine.dispose()
            return

        tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).replace(hour=14, minute=0, second=0, microsecond=0)

        db.add(User(id=SEED_USER_ID, email=SEED_EMAIL, name="Dev Host", timezone="UTC"))
        await db.flush()

        db.add_all(
            [
                Booking(
                    host_id=SEED_USER_ID,
                    title="Intro call with Sam",
                    meeting_type="Intro Call",
                    notes="Wants to discuss pricing",
                    start_time=tomorrow,
                    end_time=tomorrow + timedelta(minutes=30),
                    duration_minutes=30,
                    attendee_name="Sam Guest",
                    attendee_email="sam@example.com",
                    location_type=LocationType.ONLINE.value,
                    meeting_url="https://meet.example.com/intro",
                ),
                Booking(
                    host_id=SEED_USER_ID,
                    title="Office consultation",
                    meeting_type="Consultation",
                    start_time=tomorrow + timedelta(hours=2),
                    end_time=tomorrow + timedelta(hours=3),
                    duration_minutes=60,
                    attendee_name="Robin Guest",
                    attendee_email="robin@example.com",
                    location_type=LocationType.IN_PERSON.value,
                    location_address="1 Main St, Springfield",
                ),
            ]
        )

        await db.commit()
        print(f"Seeded: user={SEED_EMAIL}, 2 bookings")
        print(f"Token: {dev_token(settings)}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
