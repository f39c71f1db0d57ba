from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import bcrypt

from devdash.auth.models import User

logger = logging.getLogger(__name__)

# Built-in accounts for demo deployments (DEVDASH_DEMO_ACCOUNTS).
DEMO_ACCOUNTS = [
    {"id": "user_admin", "email": "admin@devdash.com", "password": "admin123", "name": "Admin User", "role": "admin"},
    {
        "id": "user_developer",
        "email": "developer@devdash.com",
        "password": "dev123",
        "name": "Developer User",
        "role": "developer",
    },
]


def hash_password(password: str, *, rounds: int = 12) -> str:
    """
    Hash password with bcrypt.

    Args:
        password: Plain text password
        rounds: bcrypt cost factor (default 12)

    Returns:
        Bcrypt hash string
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash with constant-time comparison.

    Returns:
        True if password matches, False otherwise (including malformed hashes)
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


@dataclass(frozen=True)
class CredentialRecord:
    """Email/password account."""

    id: str
    email: str
    password_hash: str
    display_name: str
    role: str = "developer"
    avatar_url: Optional[str] = None

    def to_user(self) -> User:
        return User(
            id=self.id,
            email=self.email,
            display_name=self.display_name,
            role=self.role,
            avatar_url=self.avatar_url,
            provider="email",
        )


class CredentialDirectory:
    """Lookup of email/password accounts, keyed by lower-cased email."""

    def __init__(self, records: List[CredentialRecord]) -> None:
        self._records: Dict[str, CredentialRecord] = {r.email.strip().lower(): r for r in records}
        # Compared against when the identifier is unknown so both failure paths pay for a bcrypt check.
        self._dummy_hash = hash_password("devdash-unknown-account", rounds=4)

    def __len__(self) -> int:
        return len(self._records)

    @classmethod
    def demo(cls, *, rounds: int = 12) -> "CredentialDirectory":
        return cls(
            [
                CredentialRecord(
                    id=a["id"],
                    email=a["email"],
                    password_hash=hash_password(a["password"], rounds=rounds),
                    display_name=a["name"],
                    role=a["role"],
                )
                for a in DEMO_ACCOUNTS
            ]
        )

    @classmethod
    def from_file(cls, path: str) -> "CredentialDirectory":
        """
        Load records from a JSON list of objects with `id`, `email`, `password_hash`
        (bcrypt), and optional `name`, `role`, `avatar_url`.
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError("Credential file must contain a JSON list")
        records = []
        for item in data:
            if not isinstance(item, dict):
                continue
            email = str(item.get("email") or "").strip()
            password_hash = str(item.get("password_hash") or "").strip()
            if not email or not password_hash:
                logger.warning("Skipping credential record without email/password_hash")
                continue
            records.append(
                CredentialRecord(
                    id=str(item.get("id") or email),
                    email=email,
                    password_hash=password_hash,
                    display_name=str(item.get("name") or email),
                    role=str(item.get("role") or "developer"),
                    avatar_url=str(item["avatar_url"]) if item.get("avatar_url") else None,
                )
            )
        return cls(records)

    def authenticate(self, identifier: str, secret: str) -> Optional[User]:
        """
        Authenticate an email/password pair.

        Returns:
            User if the credential matches, None otherwise. Unknown identifiers and
            wrong secrets are indistinguishable to the caller.
        """
        record = self._records.get((identifier or "").strip().lower())
        if record is None:
            verify_password(secret, self._dummy_hash)
            return None
        if not verify_password(secret, record.password_hash):
            return None
        return record.to_user()
