"""
Static equipment catalogue.
Last-resort model lists per equipment category, also used to seed the
reference tables of a freshly built template.
"""

import re
from typing import Dict, List

from .errors import NotFoundError

PANEL = 'panel'
BATTERY = 'battery'
SOLAR_INVERTER = 'solar_inverter'
BATTERY_INVERTER = 'battery_inverter'
CATEGORIES = [PANEL, BATTERY, SOLAR_INVERTER, BATTERY_INVERTER]

# Reference table headers carry a one-letter marker on the inverter sheet ("S Fronius")
MARKER_RE = re.compile(r'^[A-Za-z]\s+(?=\S)')

CATALOGUE: Dict[str, Dict[str, List[str]]] = {
    PANEL: {
        'Aiko': ['AIKO-A450-MAH54Mw', 'AIKO-A460-MAH54Mw', 'AIKO-A470-MAH54Db'],
        'Canadian Solar': ['CS6R-430MS', 'CS6R-435H-AG', 'CS6.1-54TM-445'],
        'Hanwha Q Cells': ['Q.PEAK DUO M-G11S 410', 'Q.TRON M-G2+ 430', 'Q.TRON BLK M-G2+ 440'],
        'JA Solar': ['JAM54D40-435/GB', 'JAM54S30-420/GR', 'JAM54D41-445/LB'],
        'Jinko Solar': ['Tiger Neo N-Type 54HL4R-B 430W', 'Tiger Neo N-Type 54HL4R-B 440W'],
        'Longi': ['Hi-MO 6 LR5-54HTH-430M', 'Hi-MO X6 LR5-54HTB-440M', 'Hi-MO 6 LR5-54HTB-435M'],
        'Meyer Burger': ['Meyer Burger Black 400', 'Meyer Burger White 410'],
        'Trina Solar': ['Vertex S+ TSM-NEG9R.28 435W', 'Vertex S+ TSM-NEG9RC.27 440W'],
    },
    BATTERY: {
        'Alpha ESS': ['SMILE-G3-BAT-10.1P', 'SMILE-G3-BAT-8.2P'],
        'FoxESS': ['EP5', 'EP11', 'ECS2900-H3'],
        'GivEnergy': ['Giv-Bat 5.2', 'Giv-Bat 9.5', 'All in One 13.5kWh'],
        'Huawei': ['LUNA2000-5-S0', 'LUNA2000-10-S0', 'LUNA2000-15-S0'],
        'Pylontech': ['US3000C', 'US5000', 'Force H2 7.1kWh'],
        'Sunsynk': ['SUN-BATT-5.32', 'L5.1 5.12kWh'],
    },
    SOLAR_INVERTER: {
        'S Enphase Energy': ['IQ8MC-72-M-INT', 'IQ8HC-72-M-INT'],
        'S Fox ESS': ['H1-3.7-E', 'H1-5.0-E', 'KH8'],
        'S Fronius': ['Primo GEN24 3.6 Plus', 'Primo GEN24 5.0 Plus'],
        'S GivEnergy': ['Gen 3 Hybrid 3.6kW', 'Gen 3 Hybrid 5kW'],
        'S Huawei': ['SUN2000-3.68KTL-L1', 'SUN2000-5KTL-L1'],
        'S SolarEdge': ['SE3680H', 'SE5000H'],
        'S Solis': ['S6-EH1P3.6K-L-PLUS', 'S6-EH1P5K-L-PLUS'],
        'S Sunsynk': ['SUN-3.6K-SG01LP1-EU', 'SUN-5K-SG01LP1-EU'],
    },
    BATTERY_INVERTER: {
        'B Growatt': ['SPA3000TL BL', 'SPA3600TL BL'],
        'B Lux Power': ['ACS 3600', 'ACS 5000'],
        'B Sunsynk': ['SUN-3.6K-SG01LP1-EU-AC', 'SUN-5K-SG01LP1-EU-AC'],
    },
}

# Returned when a manufacturer is not in the catalogue at all
GENERIC_MODELS: Dict[str, List[str]] = {
    PANEL: ['Tier 1 430W', 'Tier 1 440W', 'Tier 1 450W'],
    BATTERY: ['Generic 5.12kWh', 'Generic 10.24kWh'],
    SOLAR_INVERTER: ['Generic 3.6kW Hybrid', 'Generic 5kW Hybrid'],
    BATTERY_INVERTER: ['Generic 3kW AC Coupled', 'Generic 5kW AC Coupled'],
}

INTEREST_RATE_TYPES = ['Fixed', 'APR', 'Variable']
ARRAY_COUNTS = [str(n) for n in range(1, 9)]

# Equipment dropdown fields -> catalogue category
MANUFACTURER_FIELDS = {
    'panel_manufacturer': PANEL,
    'battery_manufacturer': BATTERY,
    'solar_inverter_manufacturer': SOLAR_INVERTER,
    'battery_inverter_manufacturer': BATTERY_INVERTER,
}
MODEL_FIELDS = {
    'panel_model': PANEL,
    'battery_model': BATTERY,
    'solar_inverter_model': SOLAR_INVERTER,
    'battery_inverter_model': BATTERY_INVERTER,
}


def normalise_name(name: str) -> str:
    """Lower-case a manufacturer name and drop a leading one-letter marker."""
    return MARKER_RE.sub('', str(name).strip()).lower()


def _require_category(category: str) -> Dict[str, List[str]]:
    if category not in CATALOGUE:
        raise NotFoundError(f"Unknown equipment category: {category}")
    return CATALOGUE[category]


def manufacturers(category: str) -> List[str]:
    return list(_require_category(category).keys())


def fallback_models(category: str, manufacturer: str = '') -> List[str]:
    """
    Static model list for a category.

    Manufacturer-specific when the catalogue knows the manufacturer (marker
    prefixes ignored), otherwise the category's generic list. Never empty for
    a known category.
    """
    table = _require_category(category)
    wanted = normalise_name(manufacturer) if manufacturer else ''
    if wanted:
        for name, models in table.items():
            if normalise_name(name) == wanted:
                return list(models)
    return list(GENERIC_MODELS[category])
