from __future__ import annotations

import datetime
from typing import Callable, List, Optional

from PySide6.QtWidgets import (
    QComboBox,
    QDialog,
    QDialogButtonBox,
    QFormLayout,
    QHBoxLayout,
    QLabel,
    QMessageBox,
    QPushButton,
    QVBoxLayout,
)

from schedule_model import ScheduleEntry, derive_hours, format_time


def schedule_time_options() -> List[str]:
    """Half-hour steps across the display axis, 09:00 through 22:00."""
    return [f"{9 + index // 2:02d}:{'00' if index % 2 == 0 else '30'}" for index in range(27)]


class EditDutyDialog(QDialog):
    def __init__(
        self,
        *,
        employee_name: str,
        work_date: datetime.date,
        entry: Optional[ScheduleEntry] = None,
        on_start: Optional[Callable[[str], None]] = None,
        on_end: Optional[Callable[[str], None]] = None,
        on_clear: Optional[Callable[[], None]] = None,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self.setModal(True)
        self.entry = entry
        self.on_start = on_start
        self.on_end = on_end
        self.on_clear = on_clear
        self.setWindowTitle(f"{employee_name} - {work_date.isoformat()}")
        self._build_ui()
        if entry:
            self._load_entry(entry)
        self._update_hours()

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        form = QFormLayout()

        self.start_combo = QComboBox()
        self.end_combo = QComboBox()
        for combo in (self.start_combo, self.end_combo):
            combo.addItem("--", "")
            for option in schedule_time_options():
                combo.addItem(option, option)
            combo.currentIndexChanged.connect(self._update_hours)
        form.addRow("Start", self.start_combo)
        form.addRow("End", self.end_combo)

        self.hours_label = QLabel("0 hours")
        form.addRow("Hours", self.hours_label)
        layout.addLayout(form)

        self.feedback_label = QLabel()
        self.feedback_label.setStyleSheet("color:#ff7a7a;")
        layout.addWidget(self.feedback_label)

        button_box = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel)
        button_box.accepted.connect(self._handle_apply)
        button_box.rejected.connect(self.reject)

        self.clear_button = QPushButton("Clear")
        self.clear_button.setVisible(self.entry is not None)
        self.clear_button.clicked.connect(self._handle_clear)

        action_row = QHBoxLayout()
        action_row.addWidget(button_box)
        action_row.addWidget(self.clear_button)
        action_row.addStretch()
        layout.addLayout(action_row)

    def _load_entry(self, entry: ScheduleEntry) -> None:
        for combo, value in ((self.start_combo, entry.start_time), (self.end_combo, entry.end_time)):
            label = format_time(value)
            index = combo.findData(label)
            if index < 0 and label:
                combo.addItem(label, label)
                index = combo.count() - 1
            combo.setCurrentIndex(max(index, 0))

    def _update_hours(self) -> None:
        hours = derive_hours(self.start_combo.currentData() or None, self.end_combo.currentData() or None)
        self.hours_label.setText(f"{hours} hours" if hours else "0 hours")

    def _handle_apply(self) -> None:
        start = self.start_combo.currentData() or ""
        end = self.end_combo.currentData() or ""
        if start and end and derive_hours(start, end) is None:
            self.feedback_label.setText("End time must be after start time.")
            return
        if not start and not end:
            self._handle_clear()
            return
        if self.on_start:
            self.on_start(start)
        if self.on_end:
            self.on_end(end)
        self.accept()

    def _handle_clear(self) -> None:
        if self.entry is not None:
            confirm = QMessageBox.question(self, "Clear schedule", "Remove this planned interval?")
            if confirm != QMessageBox.Yes:
                return
        if self.on_clear:
            self.on_clear()
        self.accept()
