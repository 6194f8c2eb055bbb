from __future__ import annotations

import datetime
import json
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import accounts  # noqa: E402
from accounts import (  # noqa: E402
    AccountLockedError,
    AccountStatusError,
    AccountStore,
    AuditLogger,
    secure_hash_password,
    verify_secure_password,
)
from database import Base, User  # noqa: E402


class PasswordHashingTests(unittest.TestCase):
    def test_same_password_hashes_differently_each_time(self) -> None:
        first = secure_hash_password("correct horse")
        second = secure_hash_password("correct horse")
        self.assertNotEqual(first, second)
        self.assertTrue(verify_secure_password("correct horse", *first))
        self.assertFalse(verify_secure_password("wrong horse", *first))

    def test_short_password_rejected(self) -> None:
        with self.assertRaises(ValueError):
            secure_hash_password("short")

    def test_malformed_stored_values_do_not_verify(self) -> None:
        self.assertFalse(verify_secure_password("anything", "not base64!", "also not"))


class AccountStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._iterations = accounts.PBKDF2_ITERATIONS
        accounts.PBKDF2_ITERATIONS = 1_000
        self.tmp = TemporaryDirectory()
        self.audit_path = Path(self.tmp.name) / "audit.log"
        self.engine = create_engine(
            "sqlite://",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.store = AccountStore(self.Session, AuditLogger(self.audit_path))
        self.store.ensure_admin("admin@example.com", "letmein")
        self.admin = self.store.verify_credentials("admin@example.com", "letmein")

    def tearDown(self) -> None:
        accounts.PBKDF2_ITERATIONS = self._iterations
        self.engine.dispose()
        self.tmp.cleanup()

    def _sign_up(self, email="kim@example.com", user_type="owner", branch="Gangnam"):
        return self.store.sign_up(
            email=email,
            password="password123",
            name="Kim",
            branch=branch,
            user_type=user_type,
            phone="010-1234-5678",
        )

    def _audit_events(self):
        lines = self.audit_path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line)["event"] for line in lines]

    def test_ensure_admin_is_idempotent(self) -> None:
        self.store.ensure_admin("other@example.com", "letmein")
        with self.Session() as session:
            admins = session.query(User).filter(User.user_type == "system_admin").count()
        self.assertEqual(admins, 1)
        self.assertEqual(self.admin["user_type"], "system_admin")

    def test_sign_up_is_pending_with_referral_code(self) -> None:
        user = self._sign_up()
        self.assertEqual(user["status"], "pending")
        self.assertEqual(user["referral_code"], "LAS1000")
        agent = self._sign_up(email="agent@example.com", user_type="monitoring_agent")
        self.assertEqual(agent["referral_code"], "LAS3000")
        manager = self._sign_up(email="bm@example.com", user_type="branch_manager")
        self.assertIsNone(manager["referral_code"])

    def test_sign_up_rejects_duplicates_and_admin_type(self) -> None:
        self._sign_up()
        with self.assertRaises(ValueError):
            self._sign_up(email="KIM@example.com")
        with self.assertRaises(ValueError):
            self._sign_up(email="x@example.com", user_type="system_admin")
        with self.assertRaises(ValueError):
            self._sign_up(email="not-an-email")

    def test_pending_account_cannot_sign_in_until_approved(self) -> None:
        user = self._sign_up()
        with self.assertRaises(AccountStatusError):
            self.store.verify_credentials("kim@example.com", "password123")
        self.store.approve_user(self.admin, user["id"])
        account = self.store.verify_credentials("kim@example.com", "password123")
        self.assertEqual(account["status"], "approved")
        self.assertIn("account_approved", self._audit_events())

    def test_wrong_password_returns_none_and_locks_after_limit(self) -> None:
        user = self._sign_up()
        self.store.approve_user(self.admin, user["id"])
        for _ in range(accounts.MAX_FAILED_ATTEMPTS - 1):
            self.assertIsNone(self.store.verify_credentials("kim@example.com", "nope"))
        with self.assertRaises(AccountLockedError) as ctx:
            self.store.verify_credentials("kim@example.com", "nope")
        self.assertGreater(ctx.exception.until, datetime.datetime.now(datetime.timezone.utc))
        with self.assertRaises(AccountLockedError):
            self.store.verify_credentials("kim@example.com", "password123")
        self.assertIn("account_locked", self._audit_events())

    def test_expired_lock_allows_sign_in(self) -> None:
        user = self._sign_up()
        self.store.approve_user(self.admin, user["id"])
        with self.Session() as session:
            row = session.get(User, user["id"])
            row.failed_attempts = accounts.MAX_FAILED_ATTEMPTS
            row.locked_until = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=1)
            session.commit()
        account = self.store.verify_credentials("kim@example.com", "password123")
        self.assertEqual(account["email"], "kim@example.com")

    def test_store_manager_reviews_only_own_branch(self) -> None:
        manager = self._sign_up(email="sm@example.com", user_type="store_manager")
        self.store.approve_user(self.admin, manager["id"])
        same_branch = self._sign_up(email="a@example.com")
        other_branch = self._sign_up(email="b@example.com", branch="Hongdae")

        approved = self.store.approve_user(manager, same_branch["id"])
        self.assertEqual(approved["status"], "approved")
        with self.assertRaises(PermissionError):
            self.store.reject_user(manager, other_branch["id"])
        with self.assertRaises(PermissionError):
            self.store.approve_user(approved, other_branch["id"])

    def test_change_password_requires_current_password(self) -> None:
        user = self._sign_up()
        self.store.approve_user(self.admin, user["id"])
        with self.assertRaises(PermissionError):
            self.store.change_password(user["id"], "wrong-password", "newpassword1")
        self.store.change_password(user["id"], "password123", "newpassword1")
        self.assertIsNone(self.store.verify_credentials("kim@example.com", "password123"))
        self.assertIsNotNone(self.store.verify_credentials("kim@example.com", "newpassword1"))

    def test_seeded_admin_must_replace_the_seed_password(self) -> None:
        self.assertTrue(self.admin["must_change_password"])
        with self.assertRaises(ValueError):
            self.store.change_password(self.admin["id"], "letmein", "letmein")
        with self.assertRaises(ValueError):
            self.store.change_password(self.admin["id"], "letmein", "short")
        self.store.change_password(self.admin["id"], "letmein", "a-longer-secret")
        admin = self.store.verify_credentials("admin@example.com", "a-longer-secret")
        self.assertFalse(admin["must_change_password"])

    def test_signed_up_accounts_keep_their_password(self) -> None:
        user = self._sign_up()
        self.store.approve_user(self.admin, user["id"])
        account = self.store.verify_credentials("kim@example.com", "password123")
        self.assertFalse(account["must_change_password"])

    def test_reset_password_returns_working_temporary_password(self) -> None:
        user = self._sign_up()
        self.store.approve_user(self.admin, user["id"])
        temporary = self.store.reset_password(self.admin, user["id"])
        self.assertEqual(len(temporary), accounts.TEMP_PASSWORD_LENGTH)
        account = self.store.verify_credentials("kim@example.com", temporary)
        self.assertTrue(account["must_change_password"])
        with self.assertRaises(PermissionError):
            self.store.reset_password(self.admin, self.admin["id"])

    def test_delete_user(self) -> None:
        user = self._sign_up()
        with self.assertRaises(PermissionError):
            self.store.delete_user(self.admin, self.admin["id"])
        self.store.delete_user(self.admin, user["id"])
        with self.Session() as session:
            self.assertIsNone(session.get(User, user["id"]))
        self.assertIn("account_delete", self._audit_events())


if __name__ == "__main__":
    unittest.main()
