"""
Document session module.
Contract for editing one quote workbook, and the openpyxl implementation that
enforces cell protection and interprets named document actions.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import zipfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Any, List, Optional, Iterator, Tuple

from openpyxl import load_workbook
from openpyxl.cell.cell import MergedCell
from openpyxl.styles import PatternFill, Protection
from openpyxl.utils.exceptions import InvalidFileException, IllegalCharacterError
from openpyxl.utils.protection import hash_password

from .errors import (NotFoundError, DocumentError, LockedError, WrongCredentialError,
                     ActionNotFoundError, DocumentBusyError, ExportError)
from .schema import ActionSpec, Location

logger = logging.getLogger(__name__)

OWNER_LOCK_PREFIX = '~$'

# Open inputs are yellow, locked inputs grey
OPEN_FILL = PatternFill(start_color="FFF2CC", end_color="FFF2CC", fill_type="solid")
LOCKED_FILL = PatternFill(start_color="BFBFBF", end_color="BFBFBF", fill_type="solid")


class DocumentSession(ABC):
    """One exclusive editing session over a quote workbook."""

    @abstractmethod
    def open(self, path: str, credential: Optional[str]):
        """Open the document; raises NotFoundError, WrongCredentialError or DocumentBusyError."""

    @abstractmethod
    def is_locked(self, location: Location) -> bool:
        pass

    @abstractmethod
    def read_cell(self, location: Location) -> Any:
        pass

    @abstractmethod
    def write_cell(self, location: Location, value: Any):
        """Write a value; raises LockedError if the cell is not editable."""

    @abstractmethod
    def run_named_action(self, name: str):
        """Run a document action; raises ActionNotFoundError for unknown names."""

    @abstractmethod
    def save(self):
        pass

    @abstractmethod
    def close(self):
        pass

    @abstractmethod
    def export_to_fixed_layout_file(self, output_path: str, page_range: Optional[Tuple[int, int]] = None):
        pass

    @abstractmethod
    def sheet_names(self) -> List[str]:
        pass

    @abstractmethod
    def iter_sheet_values(self, sheet: str, min_row: Optional[int] = None, max_row: Optional[int] = None,
                          min_col: Optional[int] = None, max_col: Optional[int] = None) -> Iterator[tuple]:
        pass

    @abstractmethod
    def is_hidden(self, location: Location) -> bool:
        pass

    @abstractmethod
    def has_formula(self, location: Location) -> bool:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def apply_action(workbook, spec: ActionSpec):
    """Apply an action's declared unlocks, locks and state cells to a workbook."""
    for location in spec.unlock:
        cell = workbook[location.sheet][location.coordinate]
        cell.protection = Protection(locked=False)
        cell.fill = OPEN_FILL
    for location in spec.lock:
        cell = workbook[location.sheet][location.coordinate]
        cell.protection = Protection(locked=True)
        cell.fill = LOCKED_FILL
    for location, value in spec.set_cells:
        workbook[location.sheet][location.coordinate] = value


class WorkbookSession(DocumentSession):
    """DocumentSession over an .xlsx/.xlsm file using openpyxl."""

    def __init__(self, actions: Dict[str, ActionSpec], soffice_path: str = 'soffice',
                 export_timeout: float = 120):
        self.actions = actions
        self.soffice_path = soffice_path
        self.export_timeout = export_timeout
        self.path = None
        self.workbook = None
        self._lock_path = None

    def open(self, path: str, credential: Optional[str]):
        if not os.path.isfile(path):
            raise NotFoundError(f"Document not found: {path}")

        self._acquire_owner_lock(path)
        try:
            self.workbook = load_workbook(path, keep_vba=path.lower().endswith('.xlsm'))
            self._check_credential(credential)
        except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
            self._release_owner_lock()
            self.workbook = None
            raise DocumentError(f"Cannot open {path}: {e}") from e
        except WrongCredentialError:
            self._release_owner_lock()
            self.workbook = None
            raise

        self.path = path
        logger.debug("Opened %s", path)

    def _acquire_owner_lock(self, path: str):
        directory, name = os.path.split(os.path.abspath(path))
        lock_path = os.path.join(directory, OWNER_LOCK_PREFIX + name)
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise DocumentBusyError(f"Document is already open: {path}") from None
        with os.fdopen(fd, 'w') as f:
            f.write(str(os.getpid()))
        self._lock_path = lock_path

    def _release_owner_lock(self):
        if self._lock_path and os.path.exists(self._lock_path):
            os.remove(self._lock_path)
        self._lock_path = None

    def _check_credential(self, credential: Optional[str]):
        for ws in self.workbook.worksheets:
            stored = ws.protection.password
            if ws.protection.sheet and stored:
                if credential is None or hash_password(credential).upper() != str(stored).upper():
                    raise WrongCredentialError(f"Credential does not unlock sheet '{ws.title}'")

    def _require_open(self):
        if self.workbook is None:
            raise DocumentError("No document is open")

    def _sheet(self, name: str):
        self._require_open()
        if name not in self.workbook.sheetnames:
            raise NotFoundError(f"Sheet not found: {name}")
        return self.workbook[name]

    def _cell(self, location: Location):
        return self._sheet(location.sheet)[location.coordinate]

    def is_locked(self, location: Location) -> bool:
        ws = self._sheet(location.sheet)
        cell = ws[location.coordinate]
        if isinstance(cell, MergedCell):
            return True
        return bool(ws.protection.sheet) and bool(cell.protection.locked)

    def read_cell(self, location: Location) -> Any:
        return self._cell(location).value

    def write_cell(self, location: Location, value: Any):
        if self.is_locked(location):
            raise LockedError(location)
        try:
            self._cell(location).value = value
        except (IllegalCharacterError, ValueError) as e:
            raise DocumentError(f"Cannot write {value!r} to {location}: {e}") from e

    def has_formula(self, location: Location) -> bool:
        cell = self._cell(location)
        return cell.data_type == 'f' or (isinstance(cell.value, str) and cell.value.startswith('='))

    def is_hidden(self, location: Location) -> bool:
        ws = self._sheet(location.sheet)
        cell = ws[location.coordinate]
        if isinstance(cell, MergedCell):
            return False
        if ws.sheet_state != 'visible':
            return True
        return (bool(cell.protection.hidden)
                or bool(ws.row_dimensions[cell.row].hidden)
                or bool(ws.column_dimensions[cell.column_letter].hidden))

    def run_named_action(self, name: str):
        self._require_open()
        spec = self.actions.get(name)
        if spec is None:
            raise ActionNotFoundError(name)
        apply_action(self.workbook, spec)
        logger.debug("Ran action %s (%d unlocked, %d locked)", name, len(spec.unlock), len(spec.lock))

    def sheet_names(self) -> List[str]:
        self._require_open()
        return list(self.workbook.sheetnames)

    def iter_sheet_values(self, sheet: str, min_row: Optional[int] = None, max_row: Optional[int] = None,
                          min_col: Optional[int] = None, max_col: Optional[int] = None) -> Iterator[tuple]:
        ws = self._sheet(sheet)
        return ws.iter_rows(min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col,
                            values_only=True)

    def save(self):
        self._require_open()
        self.workbook.save(self.path)
        logger.info("Saved %s", self.path)

    def close(self):
        if self.workbook is not None:
            self.workbook.close()
        self.workbook = None
        self._release_owner_lock()

    def export_to_fixed_layout_file(self, output_path: str, page_range: Optional[Tuple[int, int]] = None):
        """
        Convert the saved document to PDF with headless LibreOffice.

        The file on disk is converted, so unsaved edits are not included.

        Args:
            output_path: Target .pdf path (overwritten)
            page_range: Optional (first, last) page numbers, 1-based
        """
        self._require_open()
        pdf_filter = 'pdf'
        if page_range:
            first, last = page_range
            pdf_filter = ('pdf:calc_pdf_Export:{"PageRange":{"type":"string","value":"%d-%d"}}'
                          % (first, last))

        with tempfile.TemporaryDirectory() as out_dir:
            cmd = [self.soffice_path, '--headless', '--convert-to', pdf_filter, '--outdir', out_dir, self.path]
            try:
                subprocess.run(cmd, check=True, capture_output=True, timeout=self.export_timeout)
            except (OSError, subprocess.SubprocessError) as e:
                raise ExportError(f"PDF export failed for {self.path}: {e}") from e

            produced = os.path.join(out_dir, os.path.splitext(os.path.basename(self.path))[0] + '.pdf')
            if not os.path.isfile(produced):
                raise ExportError(f"PDF export produced no output for {self.path}")

            os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
            shutil.move(produced, output_path)

        logger.info("Exported %s", output_path)


@contextmanager
def open_session(path: str, credential: Optional[str], actions: Dict[str, ActionSpec],
                 **kwargs) -> Iterator[WorkbookSession]:
    """Open a WorkbookSession and always release it on exit (without saving)."""
    session = WorkbookSession(actions, **kwargs)
    session.open(path, credential)
    try:
        yield session
    finally:
        session.close()
