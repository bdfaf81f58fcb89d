# booking_engine/repositories/user_repository.py
"""Read-only lookups against the users table."""

from booking_engine.db.helpers import fetch_all, with_db_retry
from booking_engine.db.pool import DatabasePoolManager


class UserRepository:
    def __init__(self, db: DatabasePoolManager):
        self._db = db

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_display_names(self, user_ids: list[str]) -> dict[str, str]:
        """Map user id to the name shown for slots and bookings (the account email)."""
        if not user_ids:
            return {}

        query = "SELECT id, email FROM users WHERE id = ANY(%s::uuid[])"
        rows = await fetch_all(self._db, query, (list(user_ids),))
        return {str(row["id"]): row["email"] for row in rows}
