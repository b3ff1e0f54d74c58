"""
Cascading option resolver.
Finds the models offered for a manufacturer by searching the workbook's own
reference tables, falling back through progressively looser strategies.
"""

import logging
import re
from typing import Dict, Any, List, Optional, NamedTuple

import pandas as pd
from openpyxl.utils import column_index_from_string

from . import catalogue
from .catalogue import normalise_name
from .errors import NotFoundError
from .session import DocumentSession

logger = logging.getLogger(__name__)

HEURISTIC_LIMIT = 50
MIN_CANDIDATE_LENGTH = 3
MAX_CANDIDATE_LENGTH = 100

# Structural words that never name a product
DENYLIST = {
    'total', 'totals', 'sheet', 'column', 'row', 'manufacturer', 'manufacturers', 'model', 'models',
    'price', 'cost', 'costs', 'sum', 'subtotal', 'average', 'count', 'header', 'table', 'range',
    'input', 'inputs', 'output', 'value', 'n/a', 'none', 'select', 'yes', 'no',
}

LETTER_RE = re.compile(r'[A-Za-z]')
CELL_REF_RE = re.compile(r"^(?:'?[^!']+'?!)?\$?[A-Z]{1,3}\$?\d+(?::\$?[A-Z]{1,3}\$?\d+)?$")
DATE_RE = re.compile(r'^\d{1,4}[/\-.]\d{1,2}[/\-.]\d{1,4}$')
WORD_SPLIT_RE = re.compile(r'[\s\-_.]+')


class HeaderRange(NamedTuple):
    """Manufacturer header row plus the rows holding that header's models."""
    header_row: int
    first_col: str
    last_col: str
    first_data_row: int
    last_data_row: int


class CategoryTables(NamedTuple):
    sheets: List[str]
    header: HeaderRange
    alternate_ranges: List[HeaderRange]


# First sheet is the expected one; the rest are tried only when it is absent
CATEGORY_TABLES: Dict[str, CategoryTables] = {
    catalogue.PANEL: CategoryTables(
        ['Panels', 'Panel', 'PanelData', 'Lookups', 'Data'],
        HeaderRange(4, 'P', 'AP', 5, 50),
        [HeaderRange(1, 'A', 'AZ', 2, 100), HeaderRange(3, 'A', 'AZ', 4, 100)]),
    catalogue.BATTERY: CategoryTables(
        ['Batteries', 'Battery', 'BatteryData', 'Lookups', 'Data'],
        HeaderRange(4, 'P', 'AP', 5, 50),
        [HeaderRange(1, 'A', 'AZ', 2, 100), HeaderRange(3, 'A', 'AZ', 4, 100)]),
    catalogue.SOLAR_INVERTER: CategoryTables(
        ['Inverters', 'Inverter', 'InverterData', 'Lookups', 'Data'],
        HeaderRange(4, 'L', 'AA', 5, 50),
        [HeaderRange(1, 'A', 'AZ', 2, 60), HeaderRange(3, 'A', 'AZ', 4, 60)]),
    catalogue.BATTERY_INVERTER: CategoryTables(
        ['Inverters', 'Inverter', 'InverterData', 'Lookups', 'Data'],
        HeaderRange(65, 'L', 'N', 66, 100),
        [HeaderRange(65, 'A', 'AZ', 66, 120), HeaderRange(64, 'A', 'AZ', 65, 120)]),
}

STRATEGY_HEADER = 'header'
STRATEGY_ALTERNATE_SHEET = 'alternate-sheet'
STRATEGY_ALTERNATE_RANGE = 'alternate-range'
STRATEGY_HEURISTIC = 'heuristic'
STRATEGY_CATALOGUE = 'catalogue'


class ModelLookup(NamedTuple):
    """Models found for a manufacturer and the strategy that found them."""
    options: List[str]
    strategy: str
    sheet: Optional[str] = None


class CascadingOptionResolver:
    """Resolves manufacturer -> model choices against an open document."""

    def __init__(self, session: DocumentSession):
        self.session = session

    def list_models(self, category: str, manufacturer: str) -> List[str]:
        return self.lookup(category, manufacturer).options

    def lookup(self, category: str, manufacturer: str) -> ModelLookup:
        """
        Run the strategies in order and return the first non-empty result.

        Args:
            category: Equipment category ('panel', 'battery', 'solar_inverter', 'battery_inverter')
            manufacturer: Manufacturer name as shown to the user

        Returns:
            ModelLookup(options, strategy, sheet)
        """
        tables = CATEGORY_TABLES.get(category)
        if tables is None:
            raise NotFoundError(f"Unknown equipment category: {category}")

        present = set(self.session.sheet_names())
        expected = tables.sheets[0]
        working_sheet = None

        # 1. Expected sheet, fixed header range
        if expected in present:
            working_sheet = expected
            models = self._search_header(expected, tables.header, manufacturer)
            if models:
                return ModelLookup(models, STRATEGY_HEADER, expected)

        # 2. Alternate sheets, only when the expected one is missing
        else:
            logger.info("Sheet %s not found, trying alternates for %s", expected, category)
            for sheet in tables.sheets[1:]:
                if sheet not in present:
                    continue
                if working_sheet is None:
                    working_sheet = sheet
                models = self._search_header(sheet, tables.header, manufacturer)
                if models:
                    return ModelLookup(models, STRATEGY_ALTERNATE_SHEET, sheet)

        if working_sheet is not None:
            # 3. Alternate header ranges on the sheet we have
            for header in tables.alternate_ranges:
                models = self._search_header(working_sheet, header, manufacturer)
                if models:
                    return ModelLookup(models, STRATEGY_ALTERNATE_RANGE, working_sheet)

            # 4. Whole-sheet scan
            models = self._heuristic_scan(working_sheet, manufacturer)
            if models:
                logger.info("Heuristic scan found %d candidates for %s on %s",
                            len(models), manufacturer, working_sheet)
                return ModelLookup(models, STRATEGY_HEURISTIC, working_sheet)

        # 5. Static catalogue
        logger.warning("No models for %s '%s' in document; using static catalogue", category, manufacturer)
        return ModelLookup(catalogue.fallback_models(category, manufacturer), STRATEGY_CATALOGUE)

    def list_manufacturers(self, category: str) -> List[str]:
        """Manufacturer names from the category's header row, or the catalogue."""
        tables = CATEGORY_TABLES.get(category)
        if tables is None:
            raise NotFoundError(f"Unknown equipment category: {category}")

        present = self.session.sheet_names()
        for sheet in tables.sheets:
            if sheet not in present:
                continue
            names = [name for _, name in self._header_cells(sheet, tables.header)]
            if names:
                return _dedupe(names)
            break

        return catalogue.manufacturers(category)

    def _read_block(self, sheet: str, header: HeaderRange) -> List[tuple]:
        return list(self.session.iter_sheet_values(
            sheet,
            min_row=header.header_row,
            max_row=header.last_data_row,
            min_col=column_index_from_string(header.first_col),
            max_col=column_index_from_string(header.last_col)))

    def _header_cells(self, sheet: str, header: HeaderRange, rows: Optional[List[tuple]] = None):
        rows = rows if rows is not None else self._read_block(sheet, header)
        if not rows:
            return []
        return [(i, str(v).strip()) for i, v in enumerate(rows[0]) if not _blank(v)]

    def _search_header(self, sheet: str, header: HeaderRange, manufacturer: str) -> List[str]:
        rows = self._read_block(sheet, header)
        column = match_header(self._header_cells(sheet, header, rows), manufacturer)
        if column is None:
            return []

        offset = header.first_data_row - header.header_row
        values = [row[column] for row in rows[offset:] if column < len(row)]
        return _dedupe(str(v).strip() for v in values if not _blank(v))

    def _heuristic_scan(self, sheet: str, manufacturer: str) -> List[str]:
        frame = pd.DataFrame(list(self.session.iter_sheet_values(sheet)))
        if frame.empty:
            return []

        # A manufacturer header anywhere on the sheet narrows the harvest to its column
        wanted = normalise_name(manufacturer) if manufacturer and manufacturer.strip() else None
        if wanted:
            for row_idx in range(len(frame)):
                for col_idx in range(len(frame.columns)):
                    value = frame.iat[row_idx, col_idx]
                    if isinstance(value, str) and normalise_name(value) == wanted:
                        below = frame.iloc[row_idx + 1:, col_idx]
                        return _dedupe(str(v).strip() for v in below
                                       if is_candidate(v, under_header=True))

        found = []
        for row in frame.itertuples(index=False):
            for value in row:
                if is_candidate(value):
                    found.append(str(value).strip())
        return _dedupe(found)[:HEURISTIC_LIMIT]


def match_header(headers: List[tuple], manufacturer: str) -> Optional[int]:
    """
    Index of the header cell naming a manufacturer.

    Tries exact (case-insensitive), then substring in either direction, then
    a comparison with one leading single-letter marker stripped from both.
    """
    if not manufacturer or not manufacturer.strip():
        return None
    target = manufacturer.strip().lower()

    for index, name in headers:
        if name.lower() == target:
            return index
    for index, name in headers:
        lowered = name.lower()
        if target in lowered or lowered in target:
            return index
    normalised = normalise_name(manufacturer)
    for index, name in headers:
        if normalise_name(name) == normalised:
            return index
    return None


def is_candidate(value: Any, under_header: bool = False) -> bool:
    """
    Whether a scanned cell plausibly holds a product name.

    Below a matched manufacturer header, short codes that look like cell
    references ("EP5") are accepted as model names.
    """
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not (MIN_CANDIDATE_LENGTH <= len(text) <= MAX_CANDIDATE_LENGTH):
        return False
    if text.startswith('=') or not LETTER_RE.search(text):
        return False
    if DATE_RE.match(text) or (CELL_REF_RE.match(text) and not under_header):
        return False
    try:
        float(text.replace(',', ''))
        return False
    except ValueError:
        pass
    words = {w for w in WORD_SPLIT_RE.split(text.lower()) if w}
    return not (words & DENYLIST)


def best_match(value: str, options: List[str]) -> Optional[str]:
    """
    Map a free-form name onto one of the given options.

    Exact, then partial containment, then a shared word of three or more
    letters, then a similarity score. Returns None when nothing scores.
    """
    if not value or not options:
        return None
    needle = value.strip().lower()

    for option in options:
        if option.strip().lower() == needle:
            return option
    for option in options:
        lowered = option.lower()
        if needle in lowered or lowered in needle:
            return option

    words = [w for w in WORD_SPLIT_RE.split(needle) if len(w) > 2]
    for word in words:
        for option in options:
            if word in option.lower():
                return option

    best, best_score = None, 20.0
    value_words = set(WORD_SPLIT_RE.split(needle))
    for option in options:
        lowered = option.lower()
        score = 20.0 * len(value_words & set(WORD_SPLIT_RE.split(lowered)))
        same = sum(1 for a, b in zip(needle, lowered) if a == b)
        score += 30.0 * same / max(len(needle), len(lowered))
        if score > best_score:
            best, best_score = option, score
    return best


def _blank(value: Any) -> bool:
    return value is None or str(value).strip() == ''


def _dedupe(values) -> List[str]:
    seen = set()
    result = []
    for v in values:
        if v not in seen:
            seen.add(v)
            result.append(v)
    return result
