"""
Tabular store: named sheets of cells with notes, column visibility and
edit protections.

Sheets are held in memory and persisted to .xlsx with openpyxl (cell notes
become comments, week locks become sheet protection with unlocked cells).
Rows and columns are 1-based, as in openpyxl. Analysis code reads a sheet
through Sheet.frame(), which returns a pandas DataFrame.

Every mutating call bumps Sheet.writes so callers can prove a run was a
no-op.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import IO, Any, Iterator, Optional, Union

import pandas as pd
from openpyxl import Workbook as XlsxWorkbook
from openpyxl import load_workbook
from openpyxl.comments import Comment
from openpyxl.styles import Protection as CellProtection
from openpyxl.utils import column_index_from_string, get_column_letter

from .errors import StoreAccessFault
from .schema import HEADER_ROWS, cell_text, is_blank

logger = logging.getLogger(__name__)

CellRange = tuple[int, int, int, int]  # (row, col, nrows, ncols)
NOTE_AUTHOR = "tally"


@dataclass
class Protection:
    description: str
    unprotected: list[CellRange] = field(default_factory=list)
    warning_only: bool = False


class Sheet:
    def __init__(self, name: str):
        self.name = name
        self._cells: dict[tuple[int, int], Any] = {}
        self._notes: dict[tuple[int, int], str] = {}
        self.hidden_columns: set[int] = set()
        self.column_widths: dict[int, float] = {}
        self.protections: list[Protection] = []
        self.hidden = False
        self.writes = 0

    def __repr__(self) -> str:
        return f"Sheet({self.name!r}, rows={self.last_row}, cols={self.last_column})"

    # ---- dimensions ----

    @property
    def last_row(self) -> int:
        return max((r for r, _ in self._cells), default=0)

    @property
    def last_column(self) -> int:
        return max((c for _, c in self._cells), default=0)

    # ---- values ----

    def get_value(self, row: int, col: int) -> Any:
        return self._cells.get((row, col), "")

    def _put(self, row: int, col: int, value: Any) -> None:
        if row < 1 or col < 1:
            raise ValueError(f"{self.name}: invalid cell R{row}C{col}")
        if is_blank(value):
            self._cells.pop((row, col), None)
        else:
            self._cells[(row, col)] = value

    def set_value(self, row: int, col: int, value: Any) -> None:
        self._put(row, col, value)
        self.writes += 1

    def clear(self, row: int, col: int) -> None:
        self.set_value(row, col, "")

    def get_values(self, row: int, col: int, nrows: int, ncols: int) -> list[list[Any]]:
        return [
            [self.get_value(r, c) for c in range(col, col + ncols)]
            for r in range(row, row + nrows)
        ]

    def set_values(self, row: int, col: int, rows: list[list[Any]]) -> None:
        for i, values in enumerate(rows):
            for j, value in enumerate(values):
                self._put(row + i, col + j, value)
        self.writes += 1

    def clear_range(self, row: int, col: int, nrows: int, ncols: int, notes: bool = False) -> None:
        stores = [self._cells, self._notes] if notes else [self._cells]
        for store in stores:
            for key in [k for k in store
                        if row <= k[0] < row + nrows and col <= k[1] < col + ncols]:
                del store[key]
        self.writes += 1

    def append_row(self, values: list[Any]) -> int:
        row = self.last_row + 1
        self.set_values(row, 1, [values])
        return row

    def delete_rows(self, start: int, count: int) -> None:
        """Delete rows [start, start+count) and shift everything below up."""
        if count <= 0:
            return

        def _shift(store: dict) -> dict:
            shifted = {}
            for (r, c), v in store.items():
                if r < start:
                    shifted[(r, c)] = v
                elif r >= start + count:
                    shifted[(r - count, c)] = v
            return shifted

        self._cells = _shift(self._cells)
        self._notes = _shift(self._notes)
        self.writes += 1

    def data_values(self) -> list[list[Any]]:
        """All values from A1 to the last used cell."""
        return self.get_values(1, 1, self.last_row, self.last_column)

    def header_rows(self, count: int = HEADER_ROWS, width: Optional[int] = None) -> list[list[Any]]:
        return self.get_values(1, 1, count, width or self.last_column)

    # ---- notes ----

    def get_note(self, row: int, col: int) -> str:
        return self._notes.get((row, col), "")

    def set_note(self, row: int, col: int, note: str) -> None:
        if note:
            self._notes[(row, col)] = note
        else:
            self._notes.pop((row, col), None)
        self.writes += 1

    # ---- columns ----

    def hide_columns(self, start: int, count: int) -> None:
        self.hidden_columns.update(range(start, start + count))
        self.writes += 1

    def show_columns(self, start: int, count: int) -> None:
        self.hidden_columns.difference_update(range(start, start + count))
        self.writes += 1

    def set_hidden(self, hidden: bool) -> None:
        if self.hidden != hidden:
            self.hidden = hidden
            self.writes += 1

    # ---- protections ----

    def protect(self, description: str, unprotected: list[CellRange],
                warning_only: bool = False) -> Protection:
        prot = Protection(description, list(unprotected), warning_only)
        self.protections.append(prot)
        self.writes += 1
        return prot

    def remove_protections(self, description: str) -> int:
        before = len(self.protections)
        self.protections = [p for p in self.protections if p.description != description]
        removed = before - len(self.protections)
        if removed:
            self.writes += 1
        return removed

    def is_editable(self, row: int, col: int) -> bool:
        hard = [p for p in self.protections if not p.warning_only]
        if not hard:
            return True
        return all(
            any(r <= row < r + nr and c <= col < c + nc for r, c, nr, nc in p.unprotected)
            for p in hard
        )

    # ---- pandas ----

    def frame(self, header_row: int = 1) -> pd.DataFrame:
        """
        Rows below header_row as a DataFrame keyed by the header text.
        Columns with a blank header are dropped; the first of any duplicate
        header wins. The frame index holds the 1-based sheet row.
        """
        width = self.last_column
        header = [cell_text(h) for h in self.get_values(header_row, 1, 1, width)[0]] if width else []
        keep: dict[str, int] = {}
        for idx, name in enumerate(header):
            if name and name not in keep:
                keep[name] = idx
        first = header_row + 1
        nrows = max(0, self.last_row - header_row)
        body = self.get_values(first, 1, nrows, width) if width else []
        records = [[row[idx] for idx in keep.values()] for row in body]
        return pd.DataFrame(
            records,
            columns=list(keep.keys()),
            index=pd.RangeIndex(first, first + len(records)),
            dtype=object,
        )


class Workbook:
    """Ordered collection of sheets."""

    def __init__(self):
        self._sheets: dict[str, Sheet] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._sheets

    def __iter__(self) -> Iterator[Sheet]:
        return iter(list(self._sheets.values()))

    def names(self) -> list[str]:
        return list(self._sheets)

    def get(self, name: str) -> Optional[Sheet]:
        return self._sheets.get(name)

    def require(self, name: str) -> Sheet:
        sheet = self._sheets.get(name)
        if sheet is None:
            raise StoreAccessFault(
                reason=f"Required view '{name}' not found",
                view=name,
                fix_steps=[
                    f"Restore or recreate the '{name}' tab.",
                    "Check that the tab has not been renamed.",
                ],
            )
        return sheet

    def create(self, name: str, header: Optional[list[str]] = None) -> Sheet:
        if name in self._sheets:
            raise ValueError(f"Sheet '{name}' already exists")
        sheet = Sheet(name)
        if header:
            sheet.set_values(1, 1, [list(header)])
        self._sheets[name] = sheet
        return sheet

    def get_or_create(self, name: str, header: Optional[list[str]] = None) -> Sheet:
        return self._sheets.get(name) or self.create(name, header)

    def copy_sheet(self, source: Sheet, name: str) -> Sheet:
        """Clone values, notes and layout. Protections are not copied."""
        sheet = self.create(name)
        sheet._cells = dict(source._cells)
        sheet._notes = dict(source._notes)
        sheet.hidden_columns = set(source.hidden_columns)
        sheet.column_widths = copy.copy(source.column_widths)
        sheet.writes += 1
        return sheet

    def delete(self, name: str) -> None:
        self._sheets.pop(name, None)

    # ---- persistence ----

    @classmethod
    def from_xlsx(cls, source: Union[str, IO[bytes]]) -> "Workbook":
        """
        Load values, comments, sheet and column visibility and widths.
        Protections are not read back; week locks are recomputed by
        refresh_week_locks().
        """
        xlsx = load_workbook(source, data_only=True)
        book = cls()
        for ws in xlsx.worksheets:
            sheet = book.create(ws.title)
            for row in ws.iter_rows():
                for cell in row:
                    if cell.value is not None:
                        sheet._put(cell.row, cell.column, cell.value)
                    if cell.comment is not None:
                        sheet._notes[(cell.row, cell.column)] = cell.comment.text
            for letter, dim in ws.column_dimensions.items():
                first = dim.min or column_index_from_string(letter)
                # A single dimension entry may span several columns.
                for col in range(first, max(dim.max or first, first) + 1):
                    if dim.hidden:
                        sheet.hidden_columns.add(col)
                    if dim.width:
                        sheet.column_widths[col] = dim.width
            sheet.hidden = ws.sheet_state != "visible"
            sheet.writes = 0
        logger.info("Loaded workbook with %d sheets", len(book.names()))
        return book

    def to_xlsx(self, target: Union[str, IO[bytes]]) -> None:
        xlsx = XlsxWorkbook()
        xlsx.remove(xlsx.active)
        for sheet in self:
            ws = xlsx.create_sheet(sheet.name)
            if sheet.hidden:
                ws.sheet_state = "hidden"
            for (r, c), value in sheet._cells.items():
                ws.cell(row=r, column=c, value=value)
            for (r, c), note in sheet._notes.items():
                ws.cell(row=r, column=c).comment = Comment(note, NOTE_AUTHOR)
            for col, width in sheet.column_widths.items():
                ws.column_dimensions[get_column_letter(col)].width = width
            for col in sheet.hidden_columns:
                ws.column_dimensions[get_column_letter(col)].hidden = True
            hard = [p for p in sheet.protections if not p.warning_only]
            if hard:
                ws.protection.sheet = True
                for prot in hard:
                    for r0, c0, nr, nc in prot.unprotected:
                        for r in range(r0, r0 + nr):
                            for c in range(c0, c0 + nc):
                                ws.cell(row=r, column=c).protection = CellProtection(locked=False)
        xlsx.save(target)

