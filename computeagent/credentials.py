"""Read-only access to stored CLI credentials."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# Treat credentials as expired slightly before their real expiry
EXPIRY_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class Credentials:
    """Bearer token plus the user it belongs to."""

    access_token: str
    user_id: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now < EXPIRY_BUFFER


class CredentialsStore:
    """Loads credentials written by the login flow.

    A missing, unreadable, or expired file yields None; the agent then runs
    unauthenticated.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> Credentials | None:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable credentials file {self.path}: {e}")
            return None

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            return None

        expires_at = None
        raw_expiry = data.get("expires_at")
        if raw_expiry:
            try:
                expires_at = datetime.fromisoformat(str(raw_expiry).replace("Z", "+00:00"))
            except ValueError:
                logger.warning(f"Invalid expires_at in {self.path}: {raw_expiry}")
            else:
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=timezone.utc)

        credentials = Credentials(
            access_token=token,
            user_id=data.get("user_id"),
            expires_at=expires_at,
        )
        if credentials.is_expired():
            logger.info("Stored credentials have expired, running unauthenticated")
            return None
        return credentials
