from __future__ import annotations

import datetime
from typing import Callable, Dict, Optional

from PySide6.QtCore import QRectF, Qt
from PySide6.QtGui import QColor, QPainter
from PySide6.QtWidgets import (
    QAbstractItemView,
    QComboBox,
    QHBoxLayout,
    QHeaderView,
    QInputDialog,
    QLabel,
    QMenu,
    QMessageBox,
    QPushButton,
    QTableWidget,
    QTableWidgetItem,
    QVBoxLayout,
    QWidget,
)

from database import list_branch_names
from roles import can_access_all_branches, can_edit_schedule, visible_branch
from schedule_model import (
    DAY_NAMES,
    STATUS_LABELS,
    DiaryEntry,
    ScheduleEntry,
    ScheduleStatus,
    WeekWindow,
    bar_geometry,
    clamp_fraction,
    format_hours,
    format_time,
)
from schedule_service import WeeklyScheduleService
from schedule_store import SessionContext
from ui.edit_duty import EditDutyDialog

PLANNED_COLOR = "#0d9488"
ACTUAL_COLOR = "#ea580c"
STATUS_COLORS = {
    ScheduleStatus.NO_PLAN: "#a8aec6",
    ScheduleStatus.PLANNED_LATER: "#3b82f6",
    ScheduleStatus.ON_TRACK: "#66d9a6",
    ScheduleStatus.BEHIND: "#ff7a7a",
}
FIRST_DAY_COLUMN = 1
WEEK_PLANNED_COLUMN = FIRST_DAY_COLUMN + 7
WEEK_ACTUAL_COLUMN = WEEK_PLANNED_COLUMN + 1
STATUS_COLUMN = WEEK_ACTUAL_COLUMN + 1


class TimeBarCell(QWidget):
    """Planned bar on the top half, diary bar on the bottom half, both on the 09:00-22:00 axis."""

    def __init__(
        self,
        planned: Optional[ScheduleEntry],
        actual: Optional[DiaryEntry],
        on_click: Optional[Callable[[], None]] = None,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self.planned = planned
        self.actual = actual
        self.on_click = on_click
        self.setMinimumHeight(36)
        tips = []
        if planned and planned.start_time:
            tips.append(f"Plan: {format_time(planned.start_time)} ~ {format_time(planned.end_time)}")
        tips.append(
            f"Actual: {format_time(actual.start_time)} ~ {format_time(actual.end_time)}"
            if actual and actual.hours
            else "No diary"
        )
        self.setToolTip("\n".join(tips))

    def _paint_bar(self, painter: QPainter, start, end, color: str, top: float, height: float) -> None:
        left, width = bar_geometry(start, end)
        right = clamp_fraction(left + width)
        left = clamp_fraction(left)
        if right <= left:
            return
        rect = QRectF(left * self.width(), top, (right - left) * self.width(), height)
        painter.fillRect(rect, QColor(color))

    def paintEvent(self, event) -> None:  # noqa: N802
        painter = QPainter(self)
        painter.fillRect(self.rect(), QColor("#f3f4f6"))
        half = self.height() / 2
        if self.planned and self.planned.start_time and self.planned.end_time:
            self._paint_bar(painter, self.planned.start_time, self.planned.end_time, PLANNED_COLOR, 2, half - 3)
        elif self.planned and self.planned.start_time:
            self._paint_bar(painter, self.planned.start_time, "22:00", "#99f6e4", 2, half - 3)
        if self.actual and self.actual.hours:
            self._paint_bar(painter, self.actual.start_time, self.actual.end_time, ACTUAL_COLOR, half + 1, half - 3)
        painter.end()

    def mousePressEvent(self, event) -> None:  # noqa: N802
        if self.on_click and event.button() == Qt.LeftButton:
            self.on_click()
        super().mousePressEvent(event)


class WeeklySchedulePage(QWidget):
    def __init__(
        self,
        session_factory,
        user: Dict,
        *,
        week: Optional[WeekWindow] = None,
        branch: Optional[str] = None,
        on_week_changed: Optional[Callable[[WeekWindow, Optional[str]], None]] = None,
        on_back: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__()
        self.session_factory = session_factory
        self.user = user
        self.on_week_changed = on_week_changed
        self.on_back = on_back
        self.can_edit = can_edit_schedule(user)
        self.week = week or WeekWindow.containing(datetime.date.today())
        self.branch = visible_branch(user, branch)
        self.service = WeeklyScheduleService(session_factory, on_error=self._show_error)

        self._build_ui()
        self.refresh_all()

    @property
    def context(self) -> SessionContext:
        return SessionContext(current_user=self.user, current_branch=self.branch)

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        layout.setSpacing(12)
        layout.addLayout(self._build_header())
        layout.addWidget(self._build_grid())
        layout.addLayout(self._build_footer())

    def _build_header(self) -> QHBoxLayout:
        header = QHBoxLayout()
        header.setSpacing(8)

        self.prev_week_button = QPushButton("◀ Previous week")
        self.prev_week_button.clicked.connect(lambda: self._navigate_week(-1))
        header.addWidget(self.prev_week_button)

        self.week_label = QLabel()
        header.addWidget(self.week_label)

        self.next_week_button = QPushButton("Next week ▶")
        self.next_week_button.clicked.connect(lambda: self._navigate_week(1))
        header.addWidget(self.next_week_button)
        header.addStretch()

        self.branch_combo = QComboBox()
        self.branch_combo.setToolTip("View another branch's schedule.")
        self.branch_combo.currentIndexChanged.connect(self._handle_branch_change)
        header.addWidget(QLabel("Branch"))
        header.addWidget(self.branch_combo)

        self.add_employee_button = QPushButton("Add employee…")
        self.add_employee_button.clicked.connect(self._handle_add_employee)
        header.addWidget(self.add_employee_button)

        self.add_part_time_button = QPushButton("Add part-time…")
        self.add_part_time_button.clicked.connect(self._handle_add_part_time)
        header.addWidget(self.add_part_time_button)
        return header

    def _build_grid(self) -> QTableWidget:
        self.table = QTableWidget()
        self.table.setColumnCount(STATUS_COLUMN + 1)
        self.table.setSelectionMode(QAbstractItemView.NoSelection)
        self.table.setEditTriggers(QAbstractItemView.NoEditTriggers)
        self.table.verticalHeader().setVisible(False)
        self.table.horizontalHeader().setSectionResizeMode(QHeaderView.Stretch)
        self.table.setContextMenuPolicy(Qt.CustomContextMenu)
        self.table.customContextMenuRequested.connect(self._show_row_menu)
        return self.table

    def _build_footer(self) -> QHBoxLayout:
        footer = QHBoxLayout()
        self.legend_label = QLabel(
            f"<span style='color:{PLANNED_COLOR}'>■</span> Planned "
            f"<span style='color:{ACTUAL_COLOR}'>■</span> Actual (work diary) - axis 09:00 to 22:00"
        )
        footer.addWidget(self.legend_label)
        footer.addStretch()

        self.save_button = QPushButton("Save")
        self.save_button.clicked.connect(self._handle_save)
        footer.addWidget(self.save_button)

        self.back_button = QPushButton("Back")
        self.back_button.clicked.connect(lambda: self.on_back() if self.on_back else None)
        footer.addWidget(self.back_button)
        self._enforce_permissions()
        return footer

    def _enforce_permissions(self) -> None:
        for widget in (self.save_button, self.add_employee_button, self.add_part_time_button):
            widget.setEnabled(self.can_edit)

    def refresh_all(self) -> None:
        self._populate_branches()
        self.service.load_week(self.context, self.week)
        self.render()

    def _populate_branches(self) -> None:
        with self.session_factory() as session:
            names = list_branch_names(session)
        if self.branch and self.branch not in names:
            names.insert(0, self.branch)
        self.branch_combo.blockSignals(True)
        self.branch_combo.clear()
        for name in names:
            self.branch_combo.addItem(name, name)
        index = self.branch_combo.findData(self.branch)
        self.branch_combo.setCurrentIndex(max(index, 0))
        self.branch_combo.setEnabled(can_access_all_branches(self.user))
        self.branch_combo.blockSignals(False)

    def render(self) -> None:
        dates = self.week.dates
        self.week_label.setText(self.week.label)
        headers = ["Employee"]
        headers.extend(f"{DAY_NAMES[idx]}\n{value.strftime('%m/%d')}" for idx, value in enumerate(dates))
        headers.extend(["Planned", "Actual", "Status"])
        self.table.setHorizontalHeaderLabels(headers)

        employees = self.service.employees
        self.table.setRowCount(len(employees) + 1)
        today = datetime.date.today()
        for row, employee in enumerate(employees):
            name = employee.name + (" (part-time)" if employee.is_temporary else "")
            name_item = QTableWidgetItem(name)
            name_item.setData(Qt.UserRole, employee.key)
            self.table.setItem(row, 0, name_item)
            for offset, work_date in enumerate(dates):
                cell = TimeBarCell(
                    self.service.store.get(employee.key, work_date),
                    self.service.diary(employee.key, work_date),
                    on_click=lambda emp=employee, day=work_date: self._open_cell(emp, day),
                )
                self.table.setCellWidget(row, FIRST_DAY_COLUMN + offset, cell)
            planned = self.service.planned_weekly_total(employee.key)
            actual = self.service.actual_weekly_total(employee.key)
            self.table.setItem(row, WEEK_PLANNED_COLUMN, QTableWidgetItem(format_hours(planned)))
            self.table.setItem(row, WEEK_ACTUAL_COLUMN, QTableWidgetItem(format_hours(actual) if actual else "-"))
            status = self.service.status_for(employee.key, today)
            status_item = QTableWidgetItem(STATUS_LABELS[status])
            status_item.setBackground(QColor(STATUS_COLORS[status]))
            self.table.setItem(row, STATUS_COLUMN, status_item)

        total_row = len(employees)
        self.table.setItem(total_row, 0, QTableWidgetItem("Daily total"))
        for offset, work_date in enumerate(dates):
            planned = self.service.planned_daily_total(work_date)
            actual = self.service.actual_daily_total(work_date)
            self.table.removeCellWidget(total_row, FIRST_DAY_COLUMN + offset)
            text = f"{format_hours(planned)} / {format_hours(actual) if actual else '-'}"
            self.table.setItem(total_row, FIRST_DAY_COLUMN + offset, QTableWidgetItem(text))
        self.table.setItem(total_row, WEEK_PLANNED_COLUMN, QTableWidgetItem(format_hours(self.service.planned_grand_total())))
        self.table.setItem(total_row, WEEK_ACTUAL_COLUMN, QTableWidgetItem(format_hours(self.service.actual_grand_total())))
        self.table.setItem(total_row, STATUS_COLUMN, QTableWidgetItem(""))

    def _open_cell(self, employee, work_date: datetime.date) -> None:
        if not self.can_edit:
            return
        store = self.service.store
        dialog = EditDutyDialog(
            employee_name=employee.name,
            work_date=work_date,
            entry=store.get(employee.key, work_date),
            on_start=lambda value: store.set_start(employee.key, work_date, value),
            on_end=lambda value: store.set_end(employee.key, work_date, value),
            on_clear=lambda: store.clear(employee.key, work_date),
            parent=self,
        )
        dialog.exec()
        self.render()

    def _navigate_week(self, weeks: int) -> None:
        self.week = self.week.shift(weeks)
        self._notify_week_change()
        self.service.load_week(self.context, self.week)
        self.render()

    def _handle_branch_change(self) -> None:
        branch = self.branch_combo.currentData()
        if not branch or branch == self.branch:
            return
        self.branch = branch
        self.service.employees = []
        self._notify_week_change()
        self.service.load_week(self.context, self.week)
        self.render()

    def _notify_week_change(self) -> None:
        if self.on_week_changed:
            self.on_week_changed(self.week, self.branch)

    def _handle_add_employee(self) -> None:
        term, ok = QInputDialog.getText(self, "Add employee", "Search by name or branch:")
        if not ok:
            return
        matches = self.service.search_directory(term, exclude_branch=self.branch)
        if not matches:
            QMessageBox.information(self, "Add employee", "No matching employees in other branches.")
            return
        labels = [f"{employee.name} ({employee.branch or '-'})" for employee in matches]
        choice, ok = QInputDialog.getItem(self, "Add employee", "Employee", labels, editable=False)
        if not ok:
            return
        self.service.add_employee(matches[labels.index(choice)].id)
        self.render()

    def _handle_add_part_time(self) -> None:
        name, ok = QInputDialog.getText(self, "Add part-time", "Name:")
        if not ok:
            return
        try:
            self.service.add_temporary_employee(name, self.branch)
        except ValueError as exc:
            QMessageBox.warning(self, "Add part-time", str(exc))
            return
        self.render()

    def _show_row_menu(self, position) -> None:
        index = self.table.indexAt(position)
        if not index.isValid() or index.column() != 0:
            return
        item = self.table.item(index.row(), 0)
        key = item.data(Qt.UserRole) if item else None
        if key is None:
            return
        menu = QMenu(self)
        remove_action = menu.addAction("Remove from this view")
        chosen = menu.exec(self.table.viewport().mapToGlobal(position))
        if chosen is remove_action:
            confirm = QMessageBox.question(
                self,
                "Remove employee",
                f"Remove {item.text()} from this list?\n\nThe account is not deleted.",
            )
            if confirm == QMessageBox.Yes:
                self.service.remove_employee(key)
                self.render()

    def _handle_save(self) -> None:
        if not self.can_edit:
            return
        self.save_button.setEnabled(False)
        try:
            report = self.service.save(self.context)
        finally:
            self.save_button.setEnabled(True)
        if report.ok:
            QMessageBox.information(self, "Save", report.summary)
        else:
            QMessageBox.warning(self, "Save", report.summary)
        self.service.load_week(self.context, self.week)
        self.render()

    def _show_error(self, message: str) -> None:
        QMessageBox.critical(self, "Save failed", message)
