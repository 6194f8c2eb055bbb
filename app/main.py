from __future__ import annotations

import datetime
import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from PySide6.QtGui import QCloseEvent
from PySide6.QtWidgets import (
    QApplication,
    QDialog,
    QDialogButtonBox,
    QFormLayout,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QVBoxLayout,
    QWidget,
)

from accounts import (
    MIN_PASSWORD_LENGTH,
    AccountLockedError,
    AccountStatusError,
    AccountStore,
)
from database import DATA_DIR, SessionLocal, init_database
from roles import display_role
from schedule_model import WeekWindow
from ui.weekly_schedule import WeeklySchedulePage

DEFAULT_ADMIN_EMAIL = "admin@branch.local"
DEFAULT_ADMIN_PASSWORD = "letmein"
WEEK_STATE_FILE = DATA_DIR / "week_state.json"
LOG_DIR = DATA_DIR / "logs"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
ACCENT_COLOR = "#0d9488"
ERROR_COLOR = "#ff7a7a"

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.handlers.RotatingFileHandler(
        LOG_DIR / "backoffice.log", maxBytes=1_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def load_active_week(state_file: Path = WEEK_STATE_FILE) -> Tuple[WeekWindow, Optional[str]]:
    """Week and branch the user last looked at; the current week when nothing valid is stored."""
    monday = branch = None
    if state_file.exists():
        try:
            data = json.loads(state_file.read_text(encoding="utf-8"))
            monday = datetime.date.fromisoformat(data.get("monday"))
            branch = data.get("branch") or None
        except (ValueError, TypeError, AttributeError, json.JSONDecodeError):
            monday = branch = None
    if monday is None:
        return WeekWindow.containing(datetime.date.today()), None
    return WeekWindow.containing(monday), branch


def save_active_week(week: WeekWindow, branch: Optional[str], state_file: Path = WEEK_STATE_FILE) -> None:
    state_file.parent.mkdir(parents=True, exist_ok=True)
    state_file.write_text(
        json.dumps({"monday": week.monday.isoformat(), "branch": branch}),
        encoding="utf-8",
    )


class LoginDialog(QDialog):
    def __init__(self, store: AccountStore) -> None:
        super().__init__()
        self.store = store
        self.authenticated_user: Optional[Dict[str, Any]] = None
        self.setWindowTitle("Branch Office - Sign in")
        self._build_ui()

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        heading = QLabel(f"<h2 style='color:{ACCENT_COLOR};'>Sign in to Branch Office</h2>")
        subheading = QLabel("New accounts can sign in once a manager approves them.")
        subheading.setWordWrap(True)

        self.email_input = QLineEdit()
        self.email_input.setPlaceholderText("Email")
        self.password_input = QLineEdit()
        self.password_input.setPlaceholderText("Password")
        self.password_input.setEchoMode(QLineEdit.Password)

        form = QFormLayout()
        form.addRow("Email", self.email_input)
        form.addRow("Password", self.password_input)

        self.error_label = QLabel()
        self.error_label.setStyleSheet(f"color:{ERROR_COLOR};")
        self.error_label.setWordWrap(True)
        self.error_label.setVisible(False)

        button_box = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel)
        button_box.accepted.connect(self.attempt_login)
        button_box.rejected.connect(self.reject)

        layout.addWidget(heading)
        layout.addWidget(subheading)
        layout.addSpacing(10)
        layout.addLayout(form)
        layout.addWidget(self.error_label)
        layout.addWidget(button_box)

    def _set_error(self, message: str = "") -> None:
        self.error_label.setText(message)
        self.error_label.setVisible(bool(message.strip()))

    def attempt_login(self) -> None:
        email = self.email_input.text().strip()
        password = self.password_input.text()
        try:
            account = self.store.verify_credentials(email, password)
        except AccountLockedError as exc:
            self.password_input.clear()
            self._set_error(exc.until.astimezone().strftime("Account locked until %Y-%m-%d %H:%M %Z."))
            return
        except AccountStatusError as exc:
            self.password_input.clear()
            self._set_error(str(exc))
            return

        self.password_input.clear()
        if not account:
            self._set_error("Invalid email or password.")
            return

        self._set_error("")
        self.authenticated_user = account
        self.accept()


class ChangePasswordDialog(QDialog):
    def __init__(self, store: AccountStore, user: Dict[str, Any], *, required: bool = False) -> None:
        super().__init__()
        self.store = store
        self.user = user
        self.required = required
        self.setWindowTitle("Change password")
        self._build_ui()

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        if self.required:
            notice = QLabel("Set a new password before you continue.")
            notice.setWordWrap(True)
            layout.addWidget(notice)
        form = QFormLayout()
        self.current_input = QLineEdit()
        self.current_input.setEchoMode(QLineEdit.Password)
        form.addRow("Current password", self.current_input)

        self.new_input = QLineEdit()
        self.new_input.setEchoMode(QLineEdit.Password)
        self.new_input.setPlaceholderText(f"New password (min {MIN_PASSWORD_LENGTH} chars)")
        form.addRow("New password", self.new_input)

        self.confirm_input = QLineEdit()
        self.confirm_input.setEchoMode(QLineEdit.Password)
        form.addRow("Confirm password", self.confirm_input)

        self.feedback_label = QLabel()
        self.feedback_label.setStyleSheet(f"color:{ERROR_COLOR};")
        self.feedback_label.setWordWrap(True)

        buttons = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel)
        buttons.accepted.connect(self.attempt_change)
        buttons.rejected.connect(self.reject)

        layout.addLayout(form)
        layout.addWidget(self.feedback_label)
        layout.addWidget(buttons)

    def attempt_change(self) -> None:
        if self.new_input.text() != self.confirm_input.text():
            self.feedback_label.setText("New passwords do not match.")
            self.new_input.clear()
            self.confirm_input.clear()
            return
        try:
            self.store.change_password(self.user["id"], self.current_input.text(), self.new_input.text())
        except PermissionError as exc:
            self.feedback_label.setText(str(exc))
            self.current_input.clear()
        except ValueError as exc:
            self.feedback_label.setText(str(exc))
            self.new_input.clear()
            self.confirm_input.clear()
        else:
            self.accept()


class MainWindow(QMainWindow):
    def __init__(self, store: AccountStore, user: Dict[str, Any], session_factory) -> None:
        super().__init__()
        self.store = store
        self.user = user
        self.session_factory = session_factory
        self.setWindowTitle("Branch Office")
        self.setMinimumSize(1100, 720)
        self._build_ui()

    def _build_ui(self) -> None:
        central = QWidget()
        layout = QVBoxLayout(central)

        header_row = QHBoxLayout()
        welcome = QLabel(
            f"<h2 style='color:{ACCENT_COLOR};'>{self.user.get('name')}</h2>"
            f"{self.user.get('branch') or 'All branches'} · {display_role(self.user.get('user_type'))}"
        )
        header_row.addWidget(welcome)
        header_row.addStretch()
        password_button = QPushButton("Change password")
        password_button.clicked.connect(self.handle_change_password)
        header_row.addWidget(password_button)
        logout_button = QPushButton("Sign out")
        logout_button.clicked.connect(self.close)
        header_row.addWidget(logout_button)
        layout.addLayout(header_row)

        week, branch = load_active_week()
        self.schedule_page = WeeklySchedulePage(
            self.session_factory,
            self.user,
            week=week,
            branch=branch,
            on_week_changed=save_active_week,
            on_back=self.close,
        )
        layout.addWidget(self.schedule_page)
        self.setCentralWidget(central)

    def handle_change_password(self) -> None:
        dialog = ChangePasswordDialog(self.store, self.user)
        if dialog.exec() == QDialog.Accepted:
            QMessageBox.information(self, "Change password", "Password updated.")

    def closeEvent(self, event: QCloseEvent) -> None:  # noqa: N802
        page = self.schedule_page
        save_active_week(page.week, page.branch)
        logger.info("User %s signed out", self.user.get("email"))
        event.accept()


def launch_app() -> int:
    setup_logging()
    app = QApplication(sys.argv)

    init_database()
    store = AccountStore(SessionLocal)
    store.ensure_admin(DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD)

    while True:
        login = LoginDialog(store)
        if login.exec() != QDialog.Accepted:
            break
        authenticated = login.authenticated_user
        if not authenticated:
            continue

        if authenticated.get("must_change_password"):
            change = ChangePasswordDialog(store, authenticated, required=True)
            if change.exec() != QDialog.Accepted:
                continue
            authenticated = dict(authenticated, must_change_password=False)

        logger.info("User %s signed in", authenticated["email"])
        window = MainWindow(store, authenticated, SessionLocal)
        window.show()
        app.exec()

        again = QMessageBox.question(
            None,
            "Session ended",
            "Do you want to sign in again?",
            QMessageBox.Yes | QMessageBox.No,
            QMessageBox.No,
        )
        if again != QMessageBox.Yes:
            break

    return 0


if __name__ == "__main__":
    sys.exit(launch_app())
