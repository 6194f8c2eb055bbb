from __future__ import annotations

import base64
import binascii
import datetime
import hashlib
import json
import re
import secrets
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import select

from database import DATA_DIR, User, find_user_by_email, list_referral_codes
from roles import (
    REFERRAL_CODE_RANGES,
    SYSTEM_ADMIN,
    USER_TYPES,
    can_delete_user,
    can_edit_user,
    can_manage_users,
    generate_referral_code,
)


AUDIT_FILE = DATA_DIR / "audit.log"
PBKDF2_ITERATIONS = 200_000
MIN_PASSWORD_LENGTH = 8
TEMP_PASSWORD_LENGTH = 10
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_MINUTES = 15
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def secure_hash_password(password: str, *, enforce_length: bool = True) -> tuple[str, str]:
    if enforce_length and len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    salt = secrets.token_bytes(16)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return (
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(derived).decode("ascii"),
    )


def verify_secure_password(password: str, salt_b64: str, hash_b64: str) -> bool:
    try:
        salt = base64.b64decode(salt_b64.encode("ascii"), validate=True)
        stored = base64.b64decode(hash_b64.encode("ascii"), validate=True)
    except (binascii.Error, ValueError):
        return False
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return secrets.compare_digest(derived, stored)


class AccountLockedError(Exception):
    """Raised when an account is locked and cannot authenticate."""

    def __init__(self, until: datetime.datetime) -> None:
        super().__init__("Account locked")
        self.until = until


class AccountStatusError(Exception):
    """Raised when a correct login belongs to an account that is not approved."""

    def __init__(self, status: str) -> None:
        messages = {
            "pending": "Your account is awaiting approval by a manager.",
            "rejected": "Your sign-up was rejected. Contact your manager.",
        }
        super().__init__(messages.get(status, f"Account status '{status}' cannot sign in."))
        self.status = status


class AuditLogger:
    """Append-only JSON line logger for security-relevant events."""

    def __init__(self, file_path: Path) -> None:
        self.file_path = file_path
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists():
            self.file_path.touch()

    def log(
        self,
        event: str,
        username: Optional[str],
        *,
        role: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = {
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "event": event,
            "username": username,
        }
        if role:
            entry["role"] = role
        if details:
            entry["details"] = details

        with self.file_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry))
            handle.write("\n")


def public_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "branch": user.branch,
        "user_type": user.user_type,
        "status": user.status,
        "referral_code": user.referral_code,
        "must_change_password": bool(user.must_change_password),
    }


def _aware(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class AccountStore:
    """Staff accounts stored in the users table, with role-aware operations."""

    def __init__(self, session_factory, audit_logger: Optional[AuditLogger] = None) -> None:
        self.session_factory = session_factory
        self.audit = audit_logger or AuditLogger(AUDIT_FILE)

    def ensure_admin(self, email: str, password: str, *, name: str = "System Admin") -> None:
        """Seed an approved system admin when the users table has none.

        The seed password must be replaced at the first sign-in.
        """
        with self.session_factory() as session:
            existing = session.scalars(select(User).where(User.user_type == SYSTEM_ADMIN)).first()
            if existing:
                return
            salt, password_hash = secure_hash_password(password, enforce_length=False)
            session.add(
                User(
                    email=email.strip().lower(),
                    name=name,
                    user_type=SYSTEM_ADMIN,
                    status="approved",
                    password_salt=salt,
                    password_hash=password_hash,
                    approved_at=datetime.datetime.now(datetime.timezone.utc),
                    must_change_password=True,
                )
            )
            session.commit()

    def sign_up(
        self,
        *,
        email: str,
        password: str,
        name: str,
        branch: Optional[str],
        user_type: str,
        phone: str = "",
    ) -> Dict[str, Any]:
        email = (email or "").strip().lower()
        name = (name or "").strip()
        if not email or not password or not name:
            raise ValueError("Email, password and name are required.")
        if not _EMAIL_PATTERN.match(email):
            raise ValueError("Enter a valid email address.")
        if user_type not in USER_TYPES or user_type == SYSTEM_ADMIN:
            raise ValueError(f"Cannot sign up as '{user_type}'.")
        salt, password_hash = secure_hash_password(password)

        with self.session_factory() as session:
            if find_user_by_email(session, email):
                raise ValueError("This email is already registered.")
            referral_code = generate_referral_code(user_type, list_referral_codes(session))
            if user_type in REFERRAL_CODE_RANGES and not referral_code:
                raise ValueError("No referral codes are left for this user type. Contact an administrator.")
            user = User(
                email=email,
                name=name,
                phone=(phone or "").strip(),
                branch=branch,
                user_type=user_type,
                status="pending",
                referral_code=referral_code,
                password_salt=salt,
                password_hash=password_hash,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            payload = public_user(user)
        self.audit.log("account_signup", email, role=user_type, details={"branch": branch})
        return payload

    def _locked_until(self, user: User) -> Optional[datetime.datetime]:
        return _aware(user.locked_until)

    def verify_credentials(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        if not email or not password:
            return None
        with self.session_factory() as session:
            user = find_user_by_email(session, email)
            if not user:
                return None

            now = datetime.datetime.now(datetime.timezone.utc)
            locked_until = self._locked_until(user)
            if locked_until and locked_until > now:
                raise AccountLockedError(locked_until)
            if locked_until and locked_until <= now:
                user.locked_until = None
                user.failed_attempts = 0

            if not verify_secure_password(password, user.password_salt, user.password_hash):
                user.failed_attempts = (user.failed_attempts or 0) + 1
                locked_time: Optional[datetime.datetime] = None
                if user.failed_attempts >= MAX_FAILED_ATTEMPTS:
                    locked_time = now + datetime.timedelta(minutes=LOCKOUT_MINUTES)
                    user.locked_until = locked_time
                session.commit()
                if locked_time:
                    self.audit.log("account_locked", user.email, role=user.user_type)
                    raise AccountLockedError(locked_time)
                self.audit.log("login_failed", user.email, role=user.user_type)
                return None

            user.failed_attempts = 0
            user.locked_until = None
            session.commit()
            if user.status != "approved":
                raise AccountStatusError(user.status)
            payload = public_user(user)
        self.audit.log("login", payload["email"], role=payload["user_type"])
        return payload

    def _load_target(self, session, user_id: int) -> User:
        target = session.get(User, user_id)
        if not target:
            raise ValueError("Account not found.")
        return target

    def _set_status(self, actor: Dict[str, Any], user_id: int, status: str) -> Dict[str, Any]:
        if not can_manage_users(actor):
            raise PermissionError("You are not allowed to review sign-ups.")
        with self.session_factory() as session:
            target = self._load_target(session, user_id)
            if not can_edit_user(actor, public_user(target)):
                raise PermissionError("You cannot review accounts outside your branch.")
            target.status = status
            target.approved_at = datetime.datetime.now(datetime.timezone.utc) if status == "approved" else None
            session.commit()
            payload = public_user(target)
        self.audit.log(
            f"account_{status}",
            payload["email"],
            role=payload["user_type"],
            details={"reviewed_by": actor.get("email")},
        )
        return payload

    def approve_user(self, actor: Dict[str, Any], user_id: int) -> Dict[str, Any]:
        return self._set_status(actor, user_id, "approved")

    def reject_user(self, actor: Dict[str, Any], user_id: int) -> Dict[str, Any]:
        return self._set_status(actor, user_id, "rejected")

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        salt, password_hash = secure_hash_password(new_password)
        with self.session_factory() as session:
            user = self._load_target(session, user_id)
            if not verify_secure_password(current_password, user.password_salt, user.password_hash):
                raise PermissionError("Current password is incorrect.")
            if new_password == current_password:
                raise ValueError("Choose a password different from the current one.")
            user.password_salt = salt
            user.password_hash = password_hash
            user.failed_attempts = 0
            user.locked_until = None
            user.must_change_password = False
            session.commit()
            email, user_type = user.email, user.user_type
        self.audit.log("password_change", email, role=user_type)

    def reset_password(self, actor: Dict[str, Any], user_id: int) -> str:
        """Give the target a random temporary password and return it."""
        temporary = secrets.token_urlsafe(TEMP_PASSWORD_LENGTH)[:TEMP_PASSWORD_LENGTH]
        salt, password_hash = secure_hash_password(temporary, enforce_length=False)
        with self.session_factory() as session:
            target = self._load_target(session, user_id)
            if target.id == actor.get("id") or not can_edit_user(actor, public_user(target)):
                raise PermissionError("You are not allowed to reset this password.")
            target.password_salt = salt
            target.password_hash = password_hash
            target.failed_attempts = 0
            target.locked_until = None
            target.must_change_password = True
            session.commit()
            email, user_type = target.email, target.user_type
        self.audit.log("password_reset", email, role=user_type, details={"reset_by": actor.get("email")})
        return temporary

    def delete_user(self, actor: Dict[str, Any], user_id: int) -> None:
        with self.session_factory() as session:
            target = self._load_target(session, user_id)
            if not can_delete_user(actor, public_user(target)):
                raise PermissionError("You are not allowed to delete this account.")
            email, user_type = target.email, target.user_type
            session.delete(target)
            session.commit()
        self.audit.log("account_delete", email, role=user_type, details={"deleted_by": actor.get("email")})
