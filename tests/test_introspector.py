"""Unit tests for introspector module."""

import unittest
import sys
import os
import shutil
import tempfile

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from quote import catalogue
from quote.errors import UnknownFieldError
from quote.introspector import EnablementIntrospector
from quote.schema import FieldRegistry, Location
from quote.session import WorkbookSession
from quote.template import build_template


class TestEnablementIntrospector(unittest.TestCase):
    """Test enablement reasons and dropdown listing."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        path = build_template(os.path.join(self.tmp, 'calc.xlsx'))
        self.registry = FieldRegistry('off-peak')
        self.session = WorkbookSession(self.registry.actions)
        self.session.open(path, '99')
        self.introspector = EnablementIntrospector(self.registry, self.session)

    def tearDown(self):
        self.session.close()
        shutil.rmtree(self.tmp)

    def test_open_and_locked(self):
        state = self.introspector.field_state('customer_name')
        self.assertEqual(state['location'], 'Inputs!H12')
        self.assertTrue(state['enabled'])
        self.assertEqual(state['reason'], 'open')
        self.assertIsNone(state['current_value'])

        state = self.introspector.field_state('existing_sem')
        self.assertFalse(state['enabled'])
        self.assertEqual(state['reason'], 'locked')

    def test_formula_wins(self):
        self.session.write_cell(Location('Inputs', 'H12'), '=1+1')
        state = self.introspector.field_state('customer_name')
        self.assertFalse(state['enabled'])
        self.assertEqual(state['reason'], 'formula')

    def test_hidden_before_locked(self):
        ws = self.session.workbook['Inputs']
        ws.row_dimensions[13].hidden = True
        ws.row_dimensions[34].hidden = True
        self.assertEqual(self.introspector.field_state('address')['reason'], 'hidden')
        self.assertEqual(self.introspector.field_state('existing_sem')['reason'], 'hidden')

    def test_unknown_field(self):
        with self.assertRaises(UnknownFieldError):
            self.introspector.field_state('mystery')

    def test_enabled_frame(self):
        frame = self.introspector.enabled_frame()
        self.assertEqual(len(frame), len(self.introspector.list_enabled_fields()))
        self.assertTrue(frame.loc['customer_name', 'enabled'])
        self.assertFalse(frame.loc['interest_rate', 'enabled'])
        self.assertTrue(frame.loc['deposit', 'enabled'])
        self.assertNotIn('array1_panels', frame.index)

        self.session.run_named_action('SetArrayCount2')
        frame = self.introspector.enabled_frame()
        self.assertTrue(frame.loc['array_2_num_panels', 'enabled'])
        self.assertFalse(frame.loc['array_3_num_panels', 'enabled'])

    def test_dropdown_options(self):
        options = self.introspector.dropdown_options()
        self.assertEqual(options['panel_manufacturer'], catalogue.manufacturers(catalogue.PANEL))
        self.assertEqual(options['panel_model'], [])
        self.assertEqual(options['no_of_arrays'], catalogue.ARRAY_COUNTS)
        self.assertEqual(options['interest_rate_type'], ['Fixed', 'APR', 'Variable'])

        self.session.write_cell(Location('Inputs', 'H41'), 'Longi')
        options = self.introspector.dropdown_options()
        self.assertEqual(options['panel_model'], catalogue.CATALOGUE[catalogue.PANEL]['Longi'])
        self.assertEqual(options['battery_model'], [])


if __name__ == '__main__':
    unittest.main()
