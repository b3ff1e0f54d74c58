"""
Field schema registry.
Static catalogue of logical quote fields, their cell locations on the Inputs
sheet, option selections and the document actions they run.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Dict, Any, List, Optional, NamedTuple, Iterable, Tuple

from .errors import UnknownFieldError

INPUTS_SHEET = 'Inputs'

NUMBER = 'number'
TEXT = 'text'
DATE = 'date'
DROPDOWN = 'dropdown'
VALUE_KINDS = (NUMBER, TEXT, DATE, DROPDOWN)

CUSTOMER = 'customer'
TARIFF = 'tariff'
EXISTING_SYSTEM = 'existing-system'
EQUIPMENT = 'equipment'
ARRAYS = 'arrays'
ARRAY = 'array'
PAYMENT = 'payment'

PAYMENT_METHOD_KEY = 'payment_method'
MAX_ARRAYS = 8
FIRST_ARRAY_ROW = 69


class Location(NamedTuple):
    """Physical cell address: sheet name plus A1 coordinate."""
    sheet: str
    coordinate: str

    def __str__(self):
        return f"{self.sheet}!{self.coordinate}"


def parse_location(text: str, default_sheet: str = INPUTS_SHEET) -> Location:
    """Parse 'Sheet!A1' (or a bare 'A1') into a Location."""
    if '!' in text:
        sheet, coordinate = text.rsplit('!', 1)
        return Location(sheet.strip("'"), coordinate.replace('$', '').upper())
    return Location(default_sheet, text.replace('$', '').upper())


@dataclass(frozen=True)
class LogicalField:
    """A named, typed input mapped to one cell."""
    id: str
    location: Location
    value_kind: str
    label: str
    category: str
    alias_of: Optional[str] = None
    requires_enabled: bool = False
    array_index: Optional[int] = None
    sub_order: int = 0

    @property
    def primary_id(self) -> str:
        return self.alias_of or self.id


@dataclass(frozen=True)
class ActionSpec:
    """Declared effect of a document-native action."""
    name: str
    unlock: Tuple[Location, ...] = ()
    lock: Tuple[Location, ...] = ()
    set_cells: Tuple[Tuple[Location, Any], ...] = ()


@dataclass(frozen=True)
class OptionChoice:
    """One mutually exclusive choice inside an option group."""
    name: str
    group: str
    action: str


@dataclass
class ResolvedInput:
    """Value chosen for one primary field after alias precedence."""
    field: LogicalField
    source_id: str
    raw_value: str
    superseded: List[str] = field(default_factory=list)


# (id, cell, kind, label, category)
BASE_FIELDS = [
    # Customer details
    ('customer_name', 'H12', TEXT, 'Customer Name', CUSTOMER),
    ('address', 'H13', TEXT, 'Address', CUSTOMER),
    ('postcode', 'H14', TEXT, 'Postcode', CUSTOMER),

    # Energy use - current tariff
    ('single_day_rate', 'H19', NUMBER, 'Single / Day Rate (pence per kWh)', TARIFF),
    ('night_rate', 'H20', NUMBER, 'Night Rate (pence per kWh)', TARIFF),
    ('off_peak_hours', 'H21', NUMBER, 'No. of Off-Peak Hours', TARIFF),

    # Energy use - new tariff
    ('new_day_rate', 'H23', NUMBER, 'New Day Rate (pence per kWh)', TARIFF),
    ('new_night_rate', 'H24', NUMBER, 'New Night Rate (pence per kWh)', TARIFF),

    # Existing system
    ('existing_sem', 'H34', NUMBER, 'Existing SEM', EXISTING_SYSTEM),
    ('commissioning_date', 'H35', DATE, 'Approximate Commissioning Date', EXISTING_SYSTEM),
    ('sem_percentage', 'H36', NUMBER, 'Percentage of above SEM used to quote self-consumption savings', EXISTING_SYSTEM),

    # New system - solar
    ('panel_manufacturer', 'H41', DROPDOWN, 'Panel Manufacturer', EQUIPMENT),
    ('panel_model', 'H42', DROPDOWN, 'Panel Model', EQUIPMENT),
    ('no_of_arrays', 'H43', DROPDOWN, 'No. of Arrays', ARRAYS),

    # New system - battery
    ('battery_manufacturer', 'H45', DROPDOWN, 'Battery Manufacturer', EQUIPMENT),
    ('battery_model', 'H46', DROPDOWN, 'Battery Model', EQUIPMENT),
    ('battery_extended_warranty_period', 'H49', NUMBER, 'Battery Extended Warranty Period (years)', EQUIPMENT),
    ('battery_replacement_cost', 'H50', NUMBER, 'Battery Replacement Cost', EQUIPMENT),

    # New system - solar/hybrid inverter
    ('solar_inverter_manufacturer', 'H52', DROPDOWN, 'Solar/Hybrid Inverter Manufacturer', EQUIPMENT),
    ('solar_inverter_model', 'H53', DROPDOWN, 'Solar/Hybrid Inverter Model', EQUIPMENT),
    ('solar_inverter_extended_warranty_period', 'H56', NUMBER, 'Inverter Extended Warranty Period (years)', EQUIPMENT),
    ('solar_inverter_replacement_cost', 'H57', NUMBER, 'Inverter Replacement Cost', EQUIPMENT),

    # New system - battery inverter
    ('battery_inverter_manufacturer', 'H59', DROPDOWN, 'Battery Inverter Manufacturer', EQUIPMENT),
    ('battery_inverter_model', 'H60', DROPDOWN, 'Battery Inverter Model', EQUIPMENT),
    ('battery_inverter_extended_warranty_period', 'H63', NUMBER, 'Battery Inverter Extended Warranty Period (years)', EQUIPMENT),
    ('battery_inverter_replacement_cost', 'H64', NUMBER, 'Battery Inverter Replacement Cost', EQUIPMENT),
]

# Consumption, export and payment blocks differ between calculators
PROFILE_FIELDS = {
    'off-peak': [
        ('annual_usage', 'H26', NUMBER, 'Estimated Annual Usage (kWh)', TARIFF),
        ('standing_charge', 'H27', NUMBER, 'Standing Charge (pence per day)', TARIFF),
        ('annual_spend', 'H28', NUMBER, 'Annual Spend (£)', TARIFF),
        ('export_tariff_rate', 'H30', NUMBER, 'Export Tariff Rate (pence per kWh)', TARIFF),
        ('total_system_cost', 'H80', NUMBER, 'Total System Cost', PAYMENT),
        ('deposit', 'H81', NUMBER, 'Deposit', PAYMENT),
        ('interest_rate', 'H82', NUMBER, 'Interest Rate', PAYMENT),
        ('interest_rate_type', 'H83', DROPDOWN, 'Interest Rate Type', PAYMENT),
        ('payment_term', 'H84', NUMBER, 'Payment Term (months)', PAYMENT),
    ],
    'flux': [
        ('annual_usage', 'H26', NUMBER, 'Estimated Annual Usage (kWh)', TARIFF),
        ('estimated_peak_annual_usage', 'H27', NUMBER, 'Estimated Peak Annual Usage (kWh)', TARIFF),
        ('estimated_off_peak_usage', 'H28', NUMBER, 'Estimated Off-Peak Usage (kWh)', TARIFF),
        ('standing_charges', 'H29', NUMBER, 'Standing Charges (pence per day)', TARIFF),
        ('total_annual_spend', 'H30', NUMBER, 'Total Annual Spend (£)', TARIFF),
        ('peak_annual_spend', 'H31', NUMBER, 'Peak Annual Spend (£)', TARIFF),
        ('off_peak_annual_spend', 'H32', NUMBER, 'Off-Peak Annual Spend (£)', TARIFF),
        ('total_system_cost', 'H81', NUMBER, 'Total System Cost', PAYMENT),
        ('deposit', 'H82', NUMBER, 'Deposit', PAYMENT),
        ('interest_rate', 'H83', NUMBER, 'Interest Rate', PAYMENT),
        ('interest_rate_type', 'H84', DROPDOWN, 'Interest Rate Type', PAYMENT),
        ('payment_term', 'H85', NUMBER, 'Payment Term (months)', PAYMENT),
    ],
}

CONSUMPTION_FIELDS = {
    'off-peak': ['annual_usage', 'standing_charge', 'annual_spend'],
    'flux': ['annual_usage', 'estimated_peak_annual_usage', 'estimated_off_peak_usage',
             'standing_charges', 'total_annual_spend', 'peak_annual_spend', 'off_peak_annual_spend'],
}

# (suffix, column, label, write order within the array, short alias)
ARRAY_COLUMNS = [
    ('num_panels', 'C', 'No. of Panels', 1, 'panels'),
    ('panel_size_wp', 'D', 'Panel Size (Wp)', 5, 'panel_size'),
    ('array_size_kwp', 'E', 'Array Size (kWp)', 6, 'size'),
    ('orientation_deg_from_south', 'F', 'Orientation (deg from South)', 2, 'orientation'),
    ('pitch_deg_from_flat', 'G', 'Pitch (deg from flat)', 3, 'pitch'),
    ('irradiance_kk', 'H', 'Irradiance (kk)', 7, 'irradiance'),
    ('shading_factor', 'I', 'Shading Factor', 4, 'shading'),
]

# Primary field -> ids sharing its cell, most specific first
ALIAS_PRECEDENCE = {
    'single_day_rate': ['current_single_day_rate', 'single_day_rate'],
    'night_rate': ['current_night_rate', 'night_rate'],
    'off_peak_hours': ['current_off_peak_hours', 'off_peak_hours'],
    'annual_usage': ['estimated_annual_usage', 'annual_usage'],
    'commissioning_date': ['approximate_commissioning_date', 'commissioning_date'],
    'sem_percentage': ['percentage_above_sem', 'sem_percentage'],
    'no_of_arrays': ['number_of_arrays', 'no_of_arrays'],
    'battery_extended_warranty_period': ['battery_extended_warranty_years', 'battery_extended_warranty_period'],
    'solar_inverter_extended_warranty_period': ['solar_inverter_extended_warranty_years',
                                                'solar_inverter_extended_warranty_period'],
    'battery_inverter_extended_warranty_period': ['battery_inverter_extended_warranty_years',
                                                  'battery_inverter_extended_warranty_period'],
}

PROFILE_ALIASES = {
    'off-peak': {},
    'flux': {
        'standing_charges': ['standing_charges', 'standing_charge'],
        'total_annual_spend': ['total_annual_spend', 'annual_spend'],
    },
}

# group -> [(choice, action), ...]
OPTION_GROUPS = {
    'tariff': [('SingleRate', 'SingleRate'), ('DualRate', 'DualRate')],
    'annual_consumption': [('AnnualConsumptionYes', 'AnnualConsumptionYes'),
                           ('AnnualConsumptionNo', 'AnnualConsumptionNo')],
    'export_tariff': [('ExportYes', 'ExportYes'), ('ExportNo', 'ExportNo')],
    'existing_system': [('ExistingSolarYes', 'ExistingSolarYes'), ('ExistingSolarNo', 'ExistingSolarNo')],
    'battery_warranty': [('BatteryWarrantyYes', 'BatteryWarrantyYes'), ('BatteryWarrantyNo', 'BatteryWarrantyNo')],
    'solar_inverter_warranty': [('SolarInverterWarrantyYes', 'SolarInverterWarrantyYes'),
                                ('SolarInverterWarrantyNo', 'SolarInverterWarrantyNo')],
    'battery_inverter_warranty': [('BatteryInverterWarrantyYes', 'BatteryInverterWarrantyYes'),
                                  ('BatteryInverterWarrantyNo', 'BatteryInverterWarrantyNo')],
    'payment': [('Hometree', 'SetOptionHomeTree'), ('Cash', 'SetOptionCash'),
                ('NewFinance', 'SetOptionNewFinance')],
}

# Alternative names accepted for a choice
OPTION_ALIASES = {
    'Finance': 'NewFinance',
}

# Cell in column B recording the current choice of each group
OPTION_STATE_CELLS = {
    'tariff': 'B18',
    'annual_consumption': 'B25',
    'export_tariff': 'B29',
    'existing_system': 'B33',
    'battery_warranty': 'B48',
    'solar_inverter_warranty': 'B55',
    'battery_inverter_warranty': 'B62',
    'payment': 'B79',
}

# Business payment method -> payment option choice
PAYMENT_METHOD_OPTIONS = {
    'hometree': 'Hometree',
    'cash': 'Cash',
    'finance': 'NewFinance',
    'newfinance': 'NewFinance',
}

# action -> (unlock field ids, lock field ids); consumption ids are filled per profile
ACTION_FIELDS = {
    'SingleRate': (['single_day_rate'], ['night_rate', 'off_peak_hours']),
    'DualRate': (['single_day_rate', 'night_rate', 'off_peak_hours'], []),
    'ExportYes': (['export_tariff_rate'], []),
    'ExportNo': ([], ['export_tariff_rate']),
    'ExistingSolarYes': (['existing_sem', 'commissioning_date', 'sem_percentage'], []),
    'ExistingSolarNo': ([], ['existing_sem', 'commissioning_date', 'sem_percentage']),
    'BatteryWarrantyYes': (['battery_extended_warranty_period', 'battery_replacement_cost'], []),
    'BatteryWarrantyNo': ([], ['battery_extended_warranty_period', 'battery_replacement_cost']),
    'SolarInverterWarrantyYes': (['solar_inverter_extended_warranty_period', 'solar_inverter_replacement_cost'], []),
    'SolarInverterWarrantyNo': ([], ['solar_inverter_extended_warranty_period', 'solar_inverter_replacement_cost']),
    'BatteryInverterWarrantyYes': (['battery_inverter_extended_warranty_period',
                                    'battery_inverter_replacement_cost'], []),
    'BatteryInverterWarrantyNo': ([], ['battery_inverter_extended_warranty_period',
                                       'battery_inverter_replacement_cost']),
    'SetOptionHomeTree': (['total_system_cost', 'deposit', 'payment_term'], ['interest_rate', 'interest_rate_type']),
    'SetOptionCash': (['total_system_cost'], ['deposit', 'interest_rate', 'interest_rate_type', 'payment_term']),
    'SetOptionNewFinance': (['total_system_cost', 'deposit', 'interest_rate', 'interest_rate_type', 'payment_term'], []),
}

# Writing a trigger field runs the action named by its value
TRIGGERS = {
    'no_of_arrays': 'SetArrayCount{value}',
}

# Option choices a freshly built template starts from
DEFAULT_SELECTIONS = ['DualRate', 'AnnualConsumptionYes', 'ExportYes', 'ExistingSolarNo',
                      'BatteryWarrantyNo', 'SolarInverterWarrantyNo', 'BatteryInverterWarrantyNo', 'Hometree']

ARRAY_FIELD_RE = re.compile(r'^array_?(\d+)_')


def array_field_id(index: int, suffix: str) -> str:
    return f"array_{index}_{suffix}"


class FieldRegistry:
    """In-memory lookup of logical fields, options and document actions."""

    def __init__(self, profile: str = 'off-peak'):
        if profile not in PROFILE_FIELDS:
            raise ValueError(f"Unknown calculator profile: {profile}")
        self.profile = profile
        self.fields: Dict[str, LogicalField] = {}
        self.precedence: Dict[str, List[str]] = {}
        self.actions: Dict[str, ActionSpec] = {}
        self.options: Dict[str, OptionChoice] = {}

        self._build_fields()
        self._build_actions()
        self._build_options()
        self._mark_gated_fields()

    def _build_fields(self):
        for field_id, cell, kind, label, category in BASE_FIELDS + PROFILE_FIELDS[self.profile]:
            self.fields[field_id] = LogicalField(field_id, Location(INPUTS_SHEET, cell), kind, label, category)

        for index in range(1, MAX_ARRAYS + 1):
            row = FIRST_ARRAY_ROW + index - 1
            for suffix, column, label, order, short in ARRAY_COLUMNS:
                field_id = array_field_id(index, suffix)
                self.fields[field_id] = LogicalField(
                    field_id, Location(INPUTS_SHEET, f"{column}{row}"), NUMBER,
                    f"Array {index} {label}", ARRAY, array_index=index, sub_order=order)
                self.precedence[field_id] = [field_id, f"array{index}_{short}"]

        aliases = dict(ALIAS_PRECEDENCE)
        aliases.update(PROFILE_ALIASES[self.profile])
        for primary_id, ids in aliases.items():
            if primary_id in self.fields:
                self.precedence[primary_id] = list(ids)

        for primary_id, ids in self.precedence.items():
            primary = self.fields[primary_id]
            for alias_id in ids:
                if alias_id != primary_id:
                    self.fields[alias_id] = replace(primary, id=alias_id, alias_of=primary_id)

    def _build_actions(self):
        action_fields = dict(ACTION_FIELDS)
        consumption = CONSUMPTION_FIELDS[self.profile]
        action_fields['AnnualConsumptionYes'] = (consumption, [])
        action_fields['AnnualConsumptionNo'] = ([], consumption)

        # Each option action records the choice that runs it
        state_cells = {}
        for group, choices in OPTION_GROUPS.items():
            for choice, action in choices:
                state_cells[action] = ((Location(INPUTS_SHEET, OPTION_STATE_CELLS[group]), choice),)

        for name, (unlock_ids, lock_ids) in action_fields.items():
            self.actions[name] = ActionSpec(
                name,
                unlock=self._locations(unlock_ids),
                lock=self._locations(lock_ids),
                set_cells=state_cells.get(name, ()))

        all_rows = [[array_field_id(i, suffix) for suffix, *_ in ARRAY_COLUMNS]
                    for i in range(1, MAX_ARRAYS + 1)]
        for count in range(0, MAX_ARRAYS + 1):
            unlock = [fid for row in all_rows[:count] for fid in row]
            lock = [fid for row in all_rows[count:] for fid in row]
            self.actions[f"SetArrayCount{count}"] = ActionSpec(
                f"SetArrayCount{count}", self._locations(unlock), self._locations(lock))

    def _build_options(self):
        for group, choices in OPTION_GROUPS.items():
            for choice, action in choices:
                self.options[choice] = OptionChoice(choice, group, action)
        for alias, choice in OPTION_ALIASES.items():
            self.options[alias] = self.options[choice]

    def _mark_gated_fields(self):
        gated = set()
        for spec in self.actions.values():
            gated.update(spec.unlock)
            gated.update(spec.lock)
        for field_id, fld in list(self.fields.items()):
            if fld.location in gated:
                self.fields[field_id] = replace(fld, requires_enabled=True)

    def _locations(self, field_ids: Iterable[str]) -> Tuple[Location, ...]:
        # Profiles without a field (e.g. flux has no export rate) simply drop it
        return tuple(self.fields[fid].location for fid in field_ids if fid in self.fields)

    def resolve(self, field_id: str) -> LogicalField:
        """Return the field for an id, raising UnknownFieldError if absent."""
        try:
            return self.fields[field_id]
        except KeyError:
            raise UnknownFieldError(f"Unknown logical field: {field_id}") from None

    def get(self, field_id: str) -> Optional[LogicalField]:
        return self.fields.get(field_id)

    def classify(self, field_id: str) -> str:
        """Bucket a field id into its population step category."""
        if field_id == PAYMENT_METHOD_KEY:
            return PAYMENT
        fld = self.resolve(field_id)
        if fld.category == ARRAY:
            return f"array-{fld.array_index}"
        return fld.category

    def primary_fields(self, category: Optional[str] = None) -> List[LogicalField]:
        """Non-alias fields in schema order, optionally filtered by category."""
        return [f for f in self.fields.values()
                if f.alias_of is None and (category is None or f.category == category)]

    def array_fields(self, index: int) -> List[LogicalField]:
        """Primary fields of one array in write order."""
        fields = [f for f in self.primary_fields(ARRAY) if f.array_index == index]
        return sorted(fields, key=lambda f: f.sub_order)

    def precedence_for(self, primary_id: str) -> List[str]:
        return self.precedence.get(primary_id, [primary_id])

    def resolve_value(self, primary_id: str, inputs: Dict[str, Any]) -> Optional[ResolvedInput]:
        """
        Pick the value for one cell using the fixed alias precedence.

        The first id in precedence order with a non-blank value wins; other
        non-blank ids for the same cell are reported in ``superseded``. Returns
        None when no id sharing the cell carries a value.
        """
        candidates = [fid for fid in self.precedence_for(primary_id) if fid in inputs]
        winner = None
        for fid in candidates:
            if not is_blank(inputs[fid]):
                winner = fid
                break
        if winner is None:
            return None

        superseded = [fid for fid in candidates if fid != winner and not is_blank(inputs[fid])]
        return ResolvedInput(self.fields[primary_id], winner, str(inputs[winner]), superseded)

    def resolve_batch(self, inputs: Dict[str, Any], category: str) -> List[ResolvedInput]:
        """Resolve every primary field of a category present in the inputs."""
        resolved = []
        for fld in self.primary_fields(category):
            item = self.resolve_value(fld.id, inputs)
            if item is not None:
                resolved.append(item)
        return resolved

    def unknown_ids(self, inputs: Dict[str, Any]) -> List[str]:
        return [key for key in inputs if key not in self.fields and key != PAYMENT_METHOD_KEY]

    def option(self, name: str) -> Optional[OptionChoice]:
        return self.options.get(name)

    def payment_option(self, method: str, default_method: str) -> OptionChoice:
        """Map a business payment method onto its option choice, or the default."""
        choice = PAYMENT_METHOD_OPTIONS.get(str(method).strip().lower())
        if choice is None:
            choice = PAYMENT_METHOD_OPTIONS[default_method]
        return self.options[choice]

    def trigger_action(self, field_id: str, raw_value: str) -> Optional[str]:
        """Name of the action a written trigger value runs, if any."""
        template = TRIGGERS.get(field_id)
        if template is None:
            return None
        name = template.format(value=str(raw_value).strip())
        return name if name in self.actions else None


def array_indices(inputs: Dict[str, Any]) -> List[int]:
    """Array numbers carrying at least one non-blank value, ascending."""
    found = set()
    for key, value in inputs.items():
        match = ARRAY_FIELD_RE.match(key)
        if match and not is_blank(value):
            index = int(match.group(1))
            if 1 <= index <= MAX_ARRAYS:
                found.add(index)
    return sorted(found)


def is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ''
