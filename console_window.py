from debounce_controller import DebounceController
from errors import Busy
from event_pump import EventPump
from linux_distro_helper import LinuxDistroHelper
from logging_config import setup_logger
from operation import OperationState
from options import Options
from package_queries import search_packages
from progress_parser import ByteProgress, Cancelled, Completed, Failed, LogLine, PercentUpdate, Reconciled, StageChanged
from recheck_task import RecheckTask
from task_dispatcher import TaskDispatcher
import html
from PyQt6.QtCore import Qt, QElapsedTimer, QTimer
from PyQt6.QtGui import QTextCursor
from PyQt6.QtWidgets import (QDialog, QHBoxLayout, QLabel, QLineEdit, QListWidget, QListWidgetItem, QMainWindow,
                             QMessageBox, QProgressBar, QPushButton, QTextEdit, QVBoxLayout, QWidget)

logger = setup_logger(__name__)


class StyleConfig:
    FONT_MAIN = "DejaVu Sans Mono"
    FONT_SUBPROCESS = "Hack"

    COLORS = {
        'primary': '#7aa2f7',
        'success': '#8fffab',
        'warning': '#e0af68',
        'error': '#ff5555',
        'info': '#7dcfff',
        'text': '#c0caf5',
        'background_gradient_start': '#11141d',
        'background_gradient_end': '#222a3b',
        'muted': '#7c7c7c'
    }

    STYLE_MAP = {
        "command": (FONT_MAIN, 15, "#6ffff5"),
        "stdout": (FONT_SUBPROCESS, 13, "#f9e7ff"),
        "stderr": (FONT_SUBPROCESS, 13, "#ffaa00"),
        "stage": (FONT_MAIN, 15, "#ceec9e"),
        "success": (FONT_MAIN, 15, "#8fffab"),
        "error": (FONT_MAIN, 15, "#ff5555"),
    }

    @classmethod
    def get_style_string(cls, style_name):
        if style_name not in cls.STYLE_MAP:
            return ""
        font, size, color = cls.STYLE_MAP[style_name]
        return f"font-family: {font}; font-size: {size}px; color: {color}; padding: 2px;"


# noinspection PyUnresolvedReferences
class OperationDialog(QDialog):
    """Live view of one operation: log, progress, stage and elapsed time."""

    DIALOG_SIZE = (900, 640)
    BUTTON_SIZE = (145, 40)

    def __init__(self, key, dispatcher, pump, title=None, parent=None):
        super().__init__(parent)
        self.key = key
        self.dispatcher = dispatcher
        self.pump = pump
        self.finished_state = None
        self.setWindowTitle(title or key)
        self.resize(*self.DIALOG_SIZE)

        self.text_edit = QTextEdit()
        self.text_edit.setReadOnly(True)
        self.stage_label = QLabel("Queued")
        self.progress_bar = QProgressBar()
        self.progress_bar.setRange(0, 0)
        self.elapsed_time_label = QLabel("Elapsed time: 00s")
        self.cancel_button = QPushButton("Cancel")
        self.ok_button = QPushButton("Close")
        self.timer = QElapsedTimer()
        self.update_timer = QTimer(self)
        self.setup_ui()

        pump.eventReceived.connect(self.on_event)
        pump.operationFinished.connect(self.on_finished)

    def setup_ui(self):
        colors = StyleConfig.COLORS
        self.setStyleSheet(f"""
            QTextEdit {{
                background: qlineargradient(x1:0, y1:0, x2:1, y2:0,
                           stop:0 {colors['background_gradient_start']},
                           stop:1 {colors['background_gradient_end']});
                color: {colors['text']};
                border: none;
                border-radius: 8px;
            }}
        """)
        self.stage_label.setStyleSheet(f"color: {colors['info']}; font-size: 16px; font-weight: bold;")
        self.elapsed_time_label.setStyleSheet(f"color: {colors['info']}; font-size: 15px;")

        for button in (self.cancel_button, self.ok_button):
            button.setFixedSize(*self.BUTTON_SIZE)
        self.cancel_button.clicked.connect(self.request_cancel)
        self.ok_button.clicked.connect(self.accept)
        self.ok_button.setEnabled(False)

        self.update_timer.timeout.connect(self.update_elapsed_time)
        self.timer.start()
        self.update_timer.start(1000)

        layout = QVBoxLayout(self)
        layout.addWidget(self.stage_label)
        layout.addWidget(self.text_edit, 1)
        layout.addWidget(self.progress_bar)
        bottom = QHBoxLayout()
        bottom.addWidget(self.elapsed_time_label)
        bottom.addStretch()
        bottom.addWidget(self.cancel_button)
        bottom.addWidget(self.ok_button)
        layout.addLayout(bottom)

    @property
    def running(self) -> bool:
        return self.finished_state is None

    def append_line(self, text, style="stdout"):
        escaped = html.escape(text).replace(" ", "&nbsp;")
        self.text_edit.append(f"<span style='{StyleConfig.get_style_string(style)}'>{escaped}</span>")
        self.text_edit.moveCursor(QTextCursor.MoveOperation.End)

    def on_event(self, key, event):
        if key != self.key:
            return
        if isinstance(event, LogLine):
            self.append_line(event.text, event.stream if event.stream in StyleConfig.STYLE_MAP else "stdout")
        elif isinstance(event, PercentUpdate):
            if event.value is None:
                self.progress_bar.setRange(0, 0)
            else:
                self.progress_bar.setRange(0, 100)
                self.progress_bar.setValue(event.value)
        elif isinstance(event, StageChanged):
            self.stage_label.setText(event.name)
        elif isinstance(event, ByteProgress) and event.total:
            self.progress_bar.setFormat(f"%p%  ({event.received // 1024} / {event.total // 1024} KiB)")
        elif isinstance(event, Completed):
            self.append_line(event.message or "Finished successfully.", "success")
        elif isinstance(event, Failed):
            self.append_line(f"Failed: {event.message}", "error")
        elif isinstance(event, Cancelled):
            self.append_line(event.message or "Cancelled.", "error")

    def on_finished(self, key, snapshot):
        if key != self.key:
            return
        self.finished_state = snapshot.state if snapshot is not None else OperationState.FAILED
        self.update_timer.stop()
        self.update_elapsed_time()
        if self.finished_state is OperationState.SUCCEEDED:
            self.progress_bar.setRange(0, 100)
            self.progress_bar.setValue(100)
        self.stage_label.setText(self.finished_state.value.capitalize())
        self.cancel_button.setEnabled(False)
        self.ok_button.setEnabled(True)
        self.ok_button.setFocus()

    def request_cancel(self):
        self.cancel_button.setEnabled(False)
        self.stage_label.setText("Cancelling...")
        self.dispatcher.cancel(self.key)

    def update_elapsed_time(self):
        self.elapsed_time_label.setText(f"Elapsed time: {self._format_elapsed_time(self.timer.elapsed() // 1000)}")

    @staticmethod
    def _format_elapsed_time(elapsed):
        hours, remainder = divmod(int(elapsed), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours:
            return f"{hours:02}h {minutes:02}m {seconds:02}s"
        if minutes:
            return f"{minutes:02}m {seconds:02}s"
        return f"{seconds:02}s"

    def keyPressEvent(self, event):
        if event.key() == Qt.Key.Key_Escape and self.running:
            event.ignore()
            return
        super().keyPressEvent(event)

    def closeEvent(self, event):
        if self.running:
            event.ignore()
            return
        self.update_timer.stop()
        super().closeEvent(event)


# noinspection PyUnresolvedReferences
class ConsoleWindow(QMainWindow):
    """Search box with live results, plus install/remove/update actions run through the dispatcher."""

    def __init__(self, helper=None, dispatcher=None):
        super().__init__()
        self.setWindowTitle("Package Console")
        self.setMinimumSize(720, 520)
        self.helper = helper or LinuxDistroHelper()
        self.dispatcher = dispatcher or TaskDispatcher()
        self.pump = EventPump(self.dispatcher, parent=self)
        self.search = DebounceController(lambda text, token: search_packages(self.helper, text, token), parent=self)
        self.dialogs = {}
        self.rechecks = {}
        self.package_actions = {}

        self.search_input = QLineEdit()
        self.search_input.setPlaceholderText(f"Search packages ({Options.search_min_length}+ characters)")
        self.status_label = QLabel("")
        self.results = QListWidget()
        self.results.setSelectionMode(QListWidget.SelectionMode.ExtendedSelection)
        self.btn_install = QPushButton("Install")
        self.btn_remove = QPushButton("Remove")
        self.btn_update = QPushButton("Update System")
        self.init_ui()

    def init_ui(self):
        self.search_input.textChanged.connect(self.search.on_input)
        self.search_input.returnPressed.connect(self.search.flush)
        self.search.searchStarted.connect(lambda text: self.status_label.setText(f"Searching for '{text}'..."))
        self.search.resultsReady.connect(self.show_results)
        self.search.searchFailed.connect(lambda text, message: self.status_label.setText(f"Search failed: {message}"))
        self.search.cleared.connect(self.clear_results)

        self.btn_install.clicked.connect(lambda: self.run_on_selection("install"))
        self.btn_remove.clicked.connect(lambda: self.run_on_selection("remove"))
        self.btn_update.clicked.connect(self.update_system)
        self.pump.eventReceived.connect(self.on_reconciled)
        self.pump.operationFinished.connect(self.on_operation_finished)

        central = QWidget()
        layout = QVBoxLayout(central)
        layout.addWidget(self.search_input)
        layout.addWidget(self.status_label)
        layout.addWidget(self.results, 1)
        buttons = QHBoxLayout()
        for button in (self.btn_install, self.btn_remove, self.btn_update):
            button.setFixedHeight(40)
            buttons.addWidget(button)
        layout.addLayout(buttons)
        self.setCentralWidget(central)

    def show_results(self, text, results):
        self.results.clear()
        for result in results:
            label = " ".join(part for part in (result.name, result.version) if part)
            item = QListWidgetItem(f"{label}  {result.summary}".strip())
            item.setData(Qt.ItemDataRole.UserRole, result.name)
            self.results.addItem(item)
        self.status_label.setText(f"{len(results)} result(s) for '{text}'")

    def clear_results(self):
        self.results.clear()
        self.status_label.setText("")

    def selected_packages(self):
        return [item.data(Qt.ItemDataRole.UserRole) for item in self.results.selectedItems()]

    def run_on_selection(self, action):
        packages = self.selected_packages()
        if not packages:
            return
        try:
            spec = self.helper.install_spec(packages) if action == "install" else self.helper.remove_spec(packages)
        except ValueError as e:
            QMessageBox.warning(self, "Package Console", str(e))
            return
        key = f"package:{','.join(sorted(packages))}"
        resources = [f"package:{name}" for name in packages]
        title = f"{action.capitalize()} {', '.join(packages)}"
        if self.start_operation(key, spec, title, resources) is not None:
            self.package_actions[key] = (action, packages)

    def update_system(self):
        try:
            spec = self.helper.update_spec()
        except ValueError as e:
            QMessageBox.warning(self, "Package Console", str(e))
            return
        self.start_operation("system-update", spec, "Update System")

    def start_operation(self, key, spec, title, resources=()):
        try:
            handle = self.dispatcher.submit(key, spec, self.helper.parser, resources)
        except Busy as busy:
            dialog = self.dialogs.get(key)
            if dialog is not None:
                dialog.raise_()
                dialog.activateWindow()
            else:
                QMessageBox.information(self, "Package Console", f"'{title}' has to wait: {busy}")
            return None
        dialog = OperationDialog(key, self.dispatcher, self.pump, title, self)
        dialog.finished.connect(lambda _result, k=key: self.dialogs.pop(k, None))
        self.dialogs[key] = dialog
        self.pump.watch(key, handle.subscribe())
        dialog.show()
        return dialog

    def on_operation_finished(self, key, snapshot):
        action, packages = self.package_actions.pop(key, (None, None))
        if action is None or snapshot is None or snapshot.state is not OperationState.SUCCEEDED:
            return
        if action == "install":
            check = lambda: not self.helper.filter_not_installed(packages)
        else:
            check = lambda: not any(self.helper.package_is_installed(pkg) for pkg in packages)
        recheck = RecheckTask(f"recheck:{key}", check, interval=2.0, max_checks=3)
        self.rechecks[recheck.key] = (recheck, action, packages)
        self.pump.watch(recheck.key, recheck.start())

    def on_reconciled(self, key, event):
        if not isinstance(event, Reconciled) or key not in self.rechecks:
            return
        recheck, action, packages = self.rechecks[key]
        verb = "installed" if action == "install" else "removed"
        if event.value:
            self.status_label.setText(f"{', '.join(packages)} {verb}")
            recheck.cancel()
            self.rechecks.pop(key, None)
        else:
            self.status_label.setText(f"Waiting for {', '.join(packages)} to show up as {verb}...")

    def closeEvent(self, event):
        if any(dialog.running for dialog in self.dialogs.values()):
            answer = QMessageBox.question(self, "Package Console",
                                          "Operations are still running. Cancel them and quit?",
                                          QMessageBox.StandardButton.Yes | QMessageBox.StandardButton.No)
            if answer != QMessageBox.StandardButton.Yes:
                event.ignore()
                return
        self.search.shutdown()
        for recheck, _action, _packages in self.rechecks.values():
            recheck.cancel()
        self.pump.stop()
        self.dispatcher.shutdown()
        super().closeEvent(event)
