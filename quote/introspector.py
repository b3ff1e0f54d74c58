"""
Dropdown and enablement introspection.
Read-only report of which registry fields are editable in a document and
which options their dropdowns offer.
"""

from typing import Dict, Any, List

import pandas as pd

from . import catalogue
from .resolver import CascadingOptionResolver
from .schema import FieldRegistry, DROPDOWN
from .session import DocumentSession

FORMULA = 'formula'
HIDDEN = 'hidden'
LOCKED = 'locked'
OPEN = 'open'


class EnablementIntrospector:
    """Inspects an open document against the field registry."""

    def __init__(self, registry: FieldRegistry, session: DocumentSession):
        self.registry = registry
        self.session = session

    def field_state(self, field_id: str) -> Dict[str, Any]:
        """State of one field; the first matching reason wins (formula, hidden, locked, open)."""
        fld = self.registry.resolve(field_id)
        location = fld.location

        if self.session.has_formula(location):
            reason = FORMULA
        elif self.session.is_hidden(location):
            reason = HIDDEN
        elif self.session.is_locked(location):
            reason = LOCKED
        else:
            reason = OPEN

        return {
            'field_id': fld.id,
            'location': str(location),
            'current_value': self.session.read_cell(location),
            'enabled': reason == OPEN,
            'reason': reason,
        }

    def list_enabled_fields(self) -> List[Dict[str, Any]]:
        """State of every primary registry field, in schema order."""
        return [self.field_state(fld.id) for fld in self.registry.primary_fields()]

    def enabled_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.list_enabled_fields())
        return frame.set_index('field_id')

    def dropdown_options(self) -> Dict[str, List[str]]:
        """
        Options for every dropdown field.

        Model lists follow the manufacturer currently in the document; with no
        manufacturer set they are empty.
        """
        resolver = CascadingOptionResolver(self.session)
        options = {}
        for fld in self.registry.primary_fields():
            if fld.value_kind != DROPDOWN:
                continue
            if fld.id in catalogue.MANUFACTURER_FIELDS:
                options[fld.id] = resolver.list_manufacturers(catalogue.MANUFACTURER_FIELDS[fld.id])
            elif fld.id in catalogue.MODEL_FIELDS:
                manufacturer_id = fld.id.replace('_model', '_manufacturer')
                manufacturer = self.session.read_cell(self.registry.resolve(manufacturer_id).location)
                if manufacturer is None or str(manufacturer).strip() == '':
                    options[fld.id] = []
                else:
                    options[fld.id] = resolver.list_models(catalogue.MODEL_FIELDS[fld.id], str(manufacturer))
            elif fld.id == 'no_of_arrays':
                options[fld.id] = list(catalogue.ARRAY_COUNTS)
            elif fld.id == 'interest_rate_type':
                options[fld.id] = list(catalogue.INTEREST_RATE_TYPES)
        return options
