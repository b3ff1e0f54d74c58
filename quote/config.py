"""
Configuration loading module.
Handles JSON config validation, defaults, and audit trail.
"""

import json
import os
from typing import Dict, Any, List, Tuple, Optional
from copy import deepcopy


CALCULATOR_TYPES = ['off-peak', 'flux']
PAYMENT_METHODS = ['hometree', 'cash', 'finance', 'newfinance']
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']

# Per-calculator file naming, taken from the quote templates in use
CALCULATOR_DEFAULTS = {
    'off-peak': {
        'template_file': 'Off peak V2.1 Eon SEG - All Options.xlsm',
        'template_label': 'Off peak V2.1 Eon SEG',
        'pdf_label': 'Off Peak Calculator',
        'storage_root': 'opportunities',
    },
    'flux': {
        'template_file': 'EPVS Calculator Creativ - 06.02.xlsm',
        'template_label': 'EPVS Calculator Creativ - 06.02',
        'pdf_label': 'EPVS Calculator',
        'storage_root': 'epvs-opportunities',
    },
}


class ConfigLoader:
    """Validates and processes config JSON with defaults and audit tracking."""

    def __init__(self):
        self.defaults_used = []
        self.validation_errors = []
        self.warnings = []

    def load_and_validate(self, json_path: Optional[str] = None) -> Dict[str, Any]:
        """Load JSON (or start empty) and validate with defaults."""
        data = {}
        if json_path:
            with open(json_path, 'r') as f:
                data = json.load(f)

        return self.validate(data)

    def validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply defaults to an in-memory config dict and validate it."""
        validated = self._apply_defaults(data)
        self._validate_config(validated)

        if self.validation_errors:
            raise ValueError(f"Config validation failed: {self.validation_errors}")

        return validated

    def _apply_defaults(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply defaults for missing values."""
        result = deepcopy(data)

        # Calculator defaults (drive the storage defaults below)
        if 'calculator' not in result:
            result['calculator'] = {}
        self._set_default(result['calculator'], 'type', 'off-peak', 'calculator.type')
        calc_defaults = CALCULATOR_DEFAULTS.get(result['calculator']['type'], CALCULATOR_DEFAULTS['off-peak'])
        self._set_default(result['calculator'], 'template_file', calc_defaults['template_file'], 'calculator.template_file')
        self._set_default(result['calculator'], 'template_label', calc_defaults['template_label'], 'calculator.template_label')
        self._set_default(result['calculator'], 'pdf_label', calc_defaults['pdf_label'], 'calculator.pdf_label')
        self._set_default(result['calculator'], 'password', '99', 'calculator.password')

        # Storage defaults
        if 'storage' not in result:
            result['storage'] = {}
        self._set_default(result['storage'], 'root', calc_defaults['storage_root'], 'storage.root')
        self._set_default(result['storage'], 'templates_dir', 'templates', 'storage.templates_dir')
        self._set_default(result['storage'], 'pdf_dir',
                          os.path.join(result['storage']['root'], 'pdfs'), 'storage.pdf_dir')

        # Session defaults
        if 'session' not in result:
            result['session'] = {}
        self._set_default(result['session'], 'timeout_seconds', 120, 'session.timeout_seconds')

        # Payment defaults
        if 'payment' not in result:
            result['payment'] = {}
        self._set_default(result['payment'], 'default_method', 'hometree', 'payment.default_method')

        # Export defaults
        if 'export' not in result:
            result['export'] = {}
        self._set_default(result['export'], 'soffice_path', 'soffice', 'export.soffice_path')
        self._set_default(result['export'], 'page_range', None, 'export.page_range')
        self._set_default(result['export'], 'timeout_seconds', 120, 'export.timeout_seconds')

        # Logging defaults
        if 'logging' not in result:
            result['logging'] = {}
        self._set_default(result['logging'], 'level', 'INFO', 'logging.level')

        return result

    def _set_default(self, section: Dict, key: str, default: Any, path: str):
        """Set a default value and track it."""
        if key not in section or section[key] is None:
            section[key] = default
            if default is not None:
                self.defaults_used.append(f"{path} = {default}")

    def _validate_config(self, data: Dict[str, Any]):
        """Validate config constraints."""
        calc_type = data['calculator']['type']
        if calc_type not in CALCULATOR_TYPES:
            self.validation_errors.append(f"Invalid calculator.type: {calc_type}")

        if not str(data['calculator']['template_file']).lower().endswith(('.xlsx', '.xlsm')):
            self.validation_errors.append("calculator.template_file must be an .xlsx or .xlsm workbook")

        timeout = data['session']['timeout_seconds']
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            self.validation_errors.append("session.timeout_seconds must be > 0")
        elif timeout > 600:
            self.warnings.append(f"session.timeout_seconds={timeout} is unusually long")

        method = str(data['payment']['default_method']).lower()
        if method not in PAYMENT_METHODS:
            self.validation_errors.append(f"Invalid payment.default_method: {data['payment']['default_method']}")
        data['payment']['default_method'] = method

        page_range = data['export']['page_range']
        if page_range is not None:
            if (not isinstance(page_range, (list, tuple)) or len(page_range) != 2
                    or not all(isinstance(p, int) and p > 0 for p in page_range)
                    or page_range[0] > page_range[1]):
                self.validation_errors.append("export.page_range must be [first, last] page numbers")

        level = str(data['logging']['level']).upper()
        if level not in LOG_LEVELS:
            self.validation_errors.append(f"Invalid logging.level: {data['logging']['level']}")
        data['logging']['level'] = level


def load_config(json_path: Optional[str] = None) -> Tuple[Dict[str, Any], List[str], List[str]]:
    """
    Load and validate config from JSON file.

    Returns:
        (validated_config, defaults_used, warnings)
    """
    loader = ConfigLoader()
    config = loader.load_and_validate(json_path)
    return config, loader.defaults_used, loader.warnings
