"""
Quote template builder.
Creates a protected calculator workbook with the Inputs layout, option-state
cells and equipment reference tables the engine expects.
"""

from typing import Dict, List, Tuple
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Protection
from openpyxl.utils import get_column_letter, column_index_from_string
from openpyxl.worksheet.datavalidation import DataValidation
from openpyxl.workbook.defined_name import DefinedName

from . import catalogue
from .resolver import CATEGORY_TABLES
from .schema import (FieldRegistry, LogicalField, INPUTS_SHEET, OPTION_STATE_CELLS, DEFAULT_SELECTIONS,
                     ARRAY_COLUMNS, FIRST_ARRAY_ROW, MAX_ARRAYS, CUSTOMER, TARIFF, EXISTING_SYSTEM,
                     EQUIPMENT, ARRAYS, PAYMENT, NUMBER, DATE, DROPDOWN)
from .session import apply_action, OPEN_FILL

SECTION_ROWS = [
    (10, "CUSTOMER DETAILS"),
    (16, "ENERGY USE"),
    (33, "EXISTING SYSTEM"),
    (39, "NEW SYSTEM"),
    (67, "SOLAR ARRAYS"),
    (78, "PAYMENT"),
]

# Cells editable regardless of option state
ALWAYS_OPEN = {'customer_name', 'address', 'postcode', 'new_day_rate', 'new_night_rate', 'no_of_arrays',
               'panel_manufacturer', 'panel_model', 'battery_manufacturer', 'battery_model',
               'solar_inverter_manufacturer', 'solar_inverter_model',
               'battery_inverter_manufacturer', 'battery_inverter_model'}

REFERENCE_SHEETS = [
    ('Panels', [catalogue.PANEL]),
    ('Batteries', [catalogue.BATTERY]),
    ('Inverters', [catalogue.SOLAR_INVERTER, catalogue.BATTERY_INVERTER]),
]


class TemplateBuilder:
    """Writes a calculator template workbook for one profile."""

    def __init__(self, profile: str = 'off-peak', password: str = '99'):
        self.profile = profile
        self.password = password
        self.registry = FieldRegistry(profile)

        # Styling
        self.header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        self.header_font = Font(color="FFFFFF", bold=True)
        self.section_fill = PatternFill(start_color="D9E1F2", end_color="D9E1F2", fill_type="solid")
        self.section_font = Font(bold=True)
        self.output_fill = PatternFill(start_color="E2EFDA", end_color="E2EFDA", fill_type="solid")

    def write_workbook(self, output_path: str) -> str:
        """Write the complete template."""
        wb = Workbook()

        # Remove default sheet
        if 'Sheet' in wb.sheetnames:
            wb.remove(wb['Sheet'])

        self._create_inputs_tab(wb)
        for title, categories in REFERENCE_SHEETS:
            self._create_reference_tab(wb, title, categories)
        self._create_notes_tab(wb)

        # Initial option state, then no arrays
        for choice in DEFAULT_SELECTIONS:
            option = self.registry.option(choice)
            apply_action(wb, self.registry.actions[option.action])
        apply_action(wb, self.registry.actions['SetArrayCount0'])

        for ws in wb.worksheets:
            ws.protection.sheet = True
            ws.protection.password = self.password

        wb.save(output_path)
        return output_path

    def _create_inputs_tab(self, wb: Workbook):
        ws = wb.create_sheet(INPUTS_SHEET, 0)

        ws['A1'] = "Solar Quote Calculator - Inputs"
        ws['A1'].font = Font(size=16, bold=True)
        ws.merge_cells('A1:H1')
        ws['A2'] = f"Profile: {self.profile}"

        # Section titles sit in the label column; column B holds option state
        for row, name in SECTION_ROWS:
            ws[f'C{row}'] = name
            ws[f'C{row}'].font = self.section_font
            ws[f'C{row}'].fill = self.section_fill

        for group, coordinate in OPTION_STATE_CELLS.items():
            ws[coordinate].font = Font(italic=True, color="808080")

        manufacturer_lists = self._manufacturer_list_formulas()

        for category in (CUSTOMER, TARIFF, EXISTING_SYSTEM, EQUIPMENT, ARRAYS, PAYMENT):
            for fld in self.registry.primary_fields(category):
                options = manufacturer_lists.get(fld.id)
                if fld.id == 'no_of_arrays':
                    options = '"%s"' % ",".join(catalogue.ARRAY_COUNTS)
                elif fld.id == 'interest_rate_type':
                    options = '"%s"' % ",".join(catalogue.INTEREST_RATE_TYPES)
                self._add_input(ws, fld, options)

        self._create_array_table(ws)
        self._add_output_section(ws, 87, [
            ("Total Panels", "=SUM(C69:C76)", "0"),
            ("Total Array Size (kWp)", "=SUM(E69:E76)", "0.00"),
        ])

        # Column widths
        ws.column_dimensions['A'].width = 4
        ws.column_dimensions['B'].width = 22
        ws.column_dimensions['C'].width = 55
        for col in 'DEFG':
            ws.column_dimensions[col].width = 14
        ws.column_dimensions['H'].width = 28
        ws.column_dimensions['I'].width = 14

    def _add_input(self, ws, fld: LogicalField, options: str = None):
        """Label, format and name one input cell."""
        row = ws[fld.location.coordinate].row
        ws[f'C{row}'] = fld.label
        cell = ws[fld.location.coordinate]

        defn = DefinedName(name=fld.id, attr_text=f"{INPUTS_SHEET}!$H${row}")
        ws.parent.defined_names[fld.id] = defn

        if fld.value_kind == NUMBER:
            cell.number_format = '0.00'
        elif fld.value_kind == DATE:
            cell.number_format = 'dd/mm/yyyy'

        if fld.value_kind == DROPDOWN and options:
            dv = DataValidation(type="list", formula1=options, allow_blank=True)
            ws.add_data_validation(dv)
            dv.add(cell)

        if fld.id in ALWAYS_OPEN:
            cell.protection = Protection(locked=False)
            cell.fill = OPEN_FILL

    def _create_array_table(self, ws):
        header_row = FIRST_ARRAY_ROW - 1
        ws[f'B{header_row}'] = "Array"
        ws[f'B{header_row}'].font = self.header_font
        ws[f'B{header_row}'].fill = self.header_fill
        for suffix, column, label, order, short in ARRAY_COLUMNS:
            cell = ws[f'{column}{header_row}']
            cell.value = label
            cell.font = self.header_font
            cell.fill = self.header_fill
            cell.alignment = Alignment(wrap_text=True)

        for index in range(1, MAX_ARRAYS + 1):
            row = FIRST_ARRAY_ROW + index - 1
            ws[f'B{row}'] = f"Array {index}"
            for fld in self.registry.array_fields(index):
                ws[fld.location.coordinate].number_format = '0.00'

    def _add_output_section(self, ws, start_row: int, outputs: List[Tuple]):
        """Calculated summary cells (locked)."""
        ws[f'C{start_row - 1}'] = "SUMMARY"
        ws[f'C{start_row - 1}'].font = self.section_font
        ws[f'C{start_row - 1}'].fill = self.output_fill

        row = start_row
        for label, formula, number_format in outputs:
            ws[f'C{row}'] = label
            ws[f'H{row}'] = formula
            ws[f'H{row}'].number_format = number_format
            ws[f'H{row}'].fill = self.output_fill
            row += 1

    def _manufacturer_list_formulas(self) -> Dict[str, str]:
        formulas = {}
        for field_id, category in catalogue.MANUFACTURER_FIELDS.items():
            tables = CATEGORY_TABLES[category]
            header = tables.header
            formulas[field_id] = (f"{tables.sheets[0]}!${header.first_col}${header.header_row}"
                                  f":${header.last_col}${header.header_row}")
        return formulas

    def _create_reference_tab(self, wb: Workbook, title: str, categories: List[str]):
        """Manufacturer header row with each manufacturer's models beneath it."""
        ws = wb.create_sheet(title)
        ws['A1'] = f"{title} Reference Data"
        ws['A1'].font = Font(size=14, bold=True)

        for category in categories:
            header = CATEGORY_TABLES[category].header
            first_col = column_index_from_string(header.first_col)
            last_col = column_index_from_string(header.last_col)
            ws.cell(row=header.header_row, column=1, value=f"{category.replace('_', ' ').title()} manufacturers")

            for offset, (manufacturer, models) in enumerate(catalogue.CATALOGUE[category].items()):
                col = first_col + offset
                if col > last_col:
                    break
                head = ws.cell(row=header.header_row, column=col, value=manufacturer)
                head.font = self.header_font
                head.fill = self.header_fill
                for i, model in enumerate(models[:header.last_data_row - header.first_data_row + 1]):
                    ws.cell(row=header.first_data_row + i, column=col, value=model)
                ws.column_dimensions[get_column_letter(col)].width = 28

    def _create_notes_tab(self, wb: Workbook):
        """Create notes and documentation tab."""
        ws = wb.create_sheet("Notes")

        ws['A1'] = "Calculator Documentation"
        ws['A1'].font = Font(size=14, bold=True)

        notes = [
            "",
            "HOW TO USE THIS CALCULATOR:",
            "1. Go to the 'Inputs' tab",
            "2. Choose the tariff, consumption, export, existing system and warranty options",
            "3. Fill the yellow cells that the options open",
            "4. Set the number of arrays, then fill one row per array",
            "5. Choose the payment method and fill the payment terms",
            "",
            "INPUT CONTROLS:",
            "- Yellow cells = Editable inputs",
            "- Grey cells = Not used by the current options (locked)",
            "- Green cells = Calculated outputs (do not edit)",
            "- Column B records the selected option of each group",
            "",
            "REFERENCE DATA:",
            "- Panels, Batteries and Inverters tabs list models under each manufacturer",
            "- Solar inverter manufacturers are marked 'S', battery inverter manufacturers 'B'",
        ]

        for i, note in enumerate(notes, start=3):
            ws[f'A{i}'] = note

        ws.column_dimensions['A'].width = 80


def build_template(output_path: str, profile: str = 'off-peak', password: str = '99') -> str:
    """Create a calculator template workbook and return its path."""
    builder = TemplateBuilder(profile, password)
    return builder.write_workbook(output_path)
