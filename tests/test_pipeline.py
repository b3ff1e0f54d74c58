"""Unit tests for pipeline module."""

import unittest
import sys
import os
import time
import shutil
import tempfile
from datetime import datetime

from openpyxl import load_workbook

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from quote.config import ConfigLoader
from quote.errors import PopulationCancelled
from quote.pipeline import (PopulationPipeline, PopulationContext, QuoteRequest, WRITTEN, COERCED_RAW,
                            SKIPPED_LOCKED, SKIPPED_BLANK, SUPERSEDED, UNKNOWN_FIELD, FAILED)
from quote.schema import FieldRegistry
from quote.session import WorkbookSession
from quote.template import build_template
from quote.versions import VersionStore


def make_config(tmp, timeout=30):
    return ConfigLoader().validate({
        'calculator': {'template_file': 'calc.xlsx', 'template_label': 'Calc'},
        'storage': {'root': os.path.join(tmp, 'opportunities'), 'templates_dir': os.path.join(tmp, 'templates')},
        'session': {'timeout_seconds': timeout},
    })


class SlowSession(WorkbookSession):
    """Session whose open stalls long enough to trip the timeout."""

    def open(self, path, credential):
        time.sleep(1.0)
        super().open(path, credential)


class SlowSaveSession(WorkbookSession):
    """Session whose save outlasts the timeout."""

    def save(self):
        time.sleep(2.5)
        super().save()


class BadAddressSession(WorkbookSession):
    """Session that corrupts the address before writing it."""

    def write_cell(self, location, value):
        if location.coordinate == 'H13':
            value = f"{value}\x01"
        super().write_cell(location, value)


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        os.makedirs(os.path.join(self.tmp, 'templates'))
        self.config = make_config(self.tmp)
        build_template(os.path.join(self.tmp, 'templates', 'calc.xlsx'))
        self.registry = FieldRegistry('off-peak')
        self.store = VersionStore(self.config['storage']['root'], 'Calc', '.xlsx')
        self.pipeline = PopulationPipeline(self.config, self.registry, self.store)

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def populate(self, **kwargs):
        kwargs.setdefault('opportunity_id', 'OPP-1')
        return self.pipeline.populate(QuoteRequest(**kwargs))

    def inputs_sheet(self, result):
        return load_workbook(result.document_version_path)['Inputs']


class TestEndToEnd(PipelineTestCase):
    """Test version handling and a full request."""

    def test_first_request_creates_version_one(self):
        result = self.populate(
            customer_details={'customer_name': 'Jane Doe', 'postcode': 'AB12CD'},
            dynamic_inputs={'array1_panels': '10', 'array_1_orientation_deg_from_south': '15'})

        self.assertTrue(result.success, result.error)
        self.assertTrue(result.document_version_path.endswith('Calc-OPP-1-v1.xlsx'))

        ws = self.inputs_sheet(result)
        self.assertEqual(ws['H12'].value, 'Jane Doe')
        self.assertEqual(ws['H14'].value, 'AB12CD')
        self.assertEqual(ws['H43'].value, '1')
        self.assertEqual(ws['C69'].value, 10)
        self.assertEqual(ws['F69'].value, 15)
        self.assertEqual(ws['B79'].value, 'Hometree')

    def test_edit_in_place_then_new_version(self):
        self.populate(customer_details={'customer_name': 'Jane Doe'})

        again = self.populate(customer_details={'customer_name': 'Jane Smith'})
        self.assertTrue(again.document_version_path.endswith('-v1.xlsx'))
        self.assertEqual(self.inputs_sheet(again)['H12'].value, 'Jane Smith')

        fresh = self.populate(customer_details={'customer_name': 'John Roe'}, use_new_version=True)
        self.assertTrue(fresh.document_version_path.endswith('-v2.xlsx'))
        self.assertEqual(self.inputs_sheet(fresh)['H12'].value, 'John Roe')
        self.assertEqual(self.store.resolve_latest('OPP-1').version, 2)

    def test_existing_file_name(self):
        first = self.populate(customer_details={'customer_name': 'Jane Doe'})
        self.populate(use_new_version=True)

        result = self.populate(existing_file_name='Calc-OPP-1-v1.xlsx', dynamic_inputs={'address': '1 High St'})
        self.assertEqual(result.document_version_path, first.document_version_path)
        self.assertEqual(self.inputs_sheet(result)['H13'].value, '1 High St')

    def test_dynamic_customer_fields_override_details(self):
        result = self.populate(customer_details={'customer_name': 'Jane Doe', 'address': ''},
                               dynamic_inputs={'customer_name': 'J. Doe'})
        self.assertEqual(self.inputs_sheet(result)['H12'].value, 'J. Doe')
        self.assertIsNone(self.inputs_sheet(result)['H13'].value)


class TestFieldOutcomes(PipelineTestCase):
    """Test per-field outcomes for partial and gated batches."""

    def test_partial_batch(self):
        inputs = {
            'customer_name': 'Jane Doe', 'address': '1 High St', 'postcode': 'AB12CD',
            'new_day_rate': '24.5', 'new_night_rate': '7.5',
            'panel_manufacturer': 'Longi', 'panel_model': 'Hi-MO 6 LR5-54HTH-430M',
            'battery_manufacturer': 'GivEnergy', 'battery_model': 'Giv-Bat 9.5',
            'existing_sem': '4000',
        }
        result = self.populate(dynamic_inputs=inputs)

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.count(WRITTEN), 9)
        self.assertEqual(result.outcome_for('existing_sem').status, SKIPPED_LOCKED)
        self.assertEqual(result.outcome_for('existing_sem').location, 'Inputs!H34')

        ws = self.inputs_sheet(result)
        self.assertIsNone(ws['H34'].value)
        self.assertEqual(ws['H23'].value, 24.5)
        self.assertEqual(ws['H42'].value, 'Hi-MO 6 LR5-54HTH-430M')

    def test_option_opens_existing_system(self):
        result = self.populate(option_selections=['ExistingSolarYes'],
                               dynamic_inputs={'existing_sem': '4000',
                                               'approximate_commissioning_date': '15/03/2020'})
        ws = self.inputs_sheet(result)
        self.assertEqual(ws['H34'].value, 4000)
        self.assertEqual(ws['H35'].value, datetime(2020, 3, 15))
        self.assertEqual(ws['B33'].value, 'ExistingSolarYes')
        self.assertEqual(result.outcome_for('approximate_commissioning_date').status, WRITTEN)

    def test_alias_precedence_and_single_rate(self):
        result = self.populate(option_selections=['SingleRate'],
                               dynamic_inputs={'single_day_rate': '20', 'current_single_day_rate': '25',
                                               'night_rate': '10'})
        ws = self.inputs_sheet(result)
        self.assertEqual(ws['H19'].value, 25)
        self.assertIsNone(ws['H20'].value)
        self.assertEqual(result.outcome_for('single_day_rate').status, SUPERSEDED)
        self.assertEqual(result.outcome_for('current_single_day_rate').status, WRITTEN)
        self.assertEqual(result.outcome_for('night_rate').status, SKIPPED_LOCKED)

    def test_unknown_and_unparseable(self):
        result = self.populate(dynamic_inputs={'mystery_field': 'x', 'new_day_rate': 'abc', 'postcode': ''},
                               option_selections=['NotAnOption'])
        self.assertTrue(result.success)
        self.assertEqual(result.outcome_for('mystery_field').status, UNKNOWN_FIELD)
        self.assertEqual(result.outcome_for('NotAnOption').status, UNKNOWN_FIELD)
        self.assertEqual(result.outcome_for('new_day_rate').status, COERCED_RAW)
        self.assertEqual(result.outcome_for('postcode').status, SKIPPED_BLANK)
        self.assertEqual(self.inputs_sheet(result)['H23'].value, 'abc')

        frame = result.outcomes_frame()
        self.assertEqual(list(frame.columns), ['field_id', 'status', 'location', 'message'])
        self.assertEqual(len(frame), len(result.outcomes))

    def test_control_characters_do_not_abort_batch(self):
        result = self.populate(dynamic_inputs={'panel_manufacturer': 'Longi\x07', 'panel_model': 'Hi-MO 6',
                                               'new_day_rate': 'abc\x01', 'new_night_rate': '9'})
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.outcome_for('panel_manufacturer').status, WRITTEN)
        self.assertEqual(result.outcome_for('new_day_rate').status, COERCED_RAW)

        ws = self.inputs_sheet(result)
        self.assertEqual(ws['H41'].value, 'Longi')
        self.assertEqual(ws['H42'].value, 'Hi-MO 6')
        self.assertEqual(ws['H23'].value, 'abc')
        self.assertEqual(ws['H24'].value, 9)

    def test_rejected_write_is_recorded_and_batch_continues(self):
        pipeline = PopulationPipeline(self.config, self.registry, self.store,
                                      session_factory=lambda: BadAddressSession(self.registry.actions))
        result = pipeline.populate(QuoteRequest('OPP-1', dynamic_inputs={'customer_name': 'Jane Doe',
                                                                         'address': '1 High St',
                                                                         'postcode': 'AB12CD'}))
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.outcome_for('address').status, FAILED)
        self.assertEqual(result.count(WRITTEN), 2)

        ws = self.inputs_sheet(result)
        self.assertIsNone(ws['H13'].value)
        self.assertEqual(ws['H14'].value, 'AB12CD')

    def test_explicit_array_count(self):
        result = self.populate(dynamic_inputs={'no_of_arrays': '2', 'array1_panels': '10', 'array2_panels': '6',
                                               'array3_panels': '4'})
        ws = self.inputs_sheet(result)
        self.assertEqual(ws['H43'].value, '2')
        self.assertEqual(ws['C70'].value, 6)
        self.assertIsNone(ws['C71'].value)
        self.assertEqual(result.outcome_for('array3_panels').status, SKIPPED_LOCKED)


class TestPayment(PipelineTestCase):
    """Test payment method handling."""

    def test_cash(self):
        result = self.populate(payment_method='cash',
                               dynamic_inputs={'total_system_cost': '12000', 'deposit': '1000'})
        ws = self.inputs_sheet(result)
        self.assertEqual(ws['H80'].value, 12000)
        self.assertIsNone(ws['H81'].value)
        self.assertEqual(ws['B79'].value, 'Cash')
        self.assertEqual(result.outcome_for('deposit').status, SKIPPED_LOCKED)

    def test_payment_method_from_inputs(self):
        result = self.populate(dynamic_inputs={'payment_method': 'NewFinance', 'interest_rate': '9.9'})
        ws = self.inputs_sheet(result)
        self.assertEqual(ws['B79'].value, 'NewFinance')
        self.assertEqual(ws['H82'].value, 9.9)

    def test_unknown_method_falls_back(self):
        result = self.populate(payment_method='bitcoin', dynamic_inputs={'deposit': '500'})
        self.assertTrue(result.success)
        ws = self.inputs_sheet(result)
        self.assertEqual(ws['B79'].value, 'Hometree')
        self.assertEqual(ws['H81'].value, 500)


class TestFailures(PipelineTestCase):
    """Test fatal errors, timeout and cancellation."""

    def test_missing_template(self):
        os.remove(os.path.join(self.tmp, 'templates', 'calc.xlsx'))
        result = self.populate()
        self.assertFalse(result.success)
        self.assertIn('NotFoundError', result.error)
        self.assertIn('OPP-1', result.error)

    def test_document_busy(self):
        first = self.populate()
        lock_path = os.path.join(os.path.dirname(first.document_version_path), '~$Calc-OPP-1-v1.xlsx')
        with open(lock_path, 'w') as f:
            f.write('someone else')

        result = self.populate(customer_details={'customer_name': 'Jane Doe'})
        self.assertFalse(result.success)
        self.assertIn('DocumentBusyError', result.error)
        self.assertTrue(os.path.exists(lock_path))

    def test_timeout_cancels_without_saving(self):
        config = make_config(self.tmp, timeout=0.2)
        pipeline = PopulationPipeline(config, self.registry, self.store,
                                      session_factory=lambda: SlowSession(self.registry.actions))
        result = pipeline.populate(QuoteRequest('OPP-1', customer_details={'customer_name': 'Jane Doe'}))

        self.assertFalse(result.success)
        self.assertIn('SessionTimeoutError', result.error)

        time.sleep(2.0)
        path = self.store.resolve_latest('OPP-1').path
        self.assertFalse(os.path.exists(os.path.join(os.path.dirname(path), '~$' + os.path.basename(path))))
        self.assertIsNone(load_workbook(path)['Inputs']['H12'].value)

    def test_cancelled_context(self):
        context = PopulationContext('hometree')
        context.cancel()
        result = self.pipeline.populate(QuoteRequest('OPP-1', customer_details={'customer_name': 'Jane Doe'}),
                                        context)
        self.assertFalse(result.success)
        self.assertIn('PopulationCancelled', result.error)

    def test_timeout_during_save_reports_saved_document(self):
        config = make_config(self.tmp, timeout=1.0)
        pipeline = PopulationPipeline(config, self.registry, self.store,
                                      session_factory=lambda: SlowSaveSession(self.registry.actions))
        result = pipeline.populate(QuoteRequest('OPP-1', customer_details={'customer_name': 'Jane Doe'}))

        self.assertTrue(result.success, result.error)
        self.assertEqual(self.inputs_sheet(result)['H12'].value, 'Jane Doe')


class TestPopulationContext(unittest.TestCase):
    """Test cancellation around the save."""

    def test_cancel_before_commit(self):
        context = PopulationContext('hometree')
        self.assertTrue(context.cancel())
        with self.assertRaises(PopulationCancelled):
            context.begin_commit()
        self.assertFalse(context.committing)

    def test_cancel_after_commit_refused(self):
        context = PopulationContext('hometree')
        context.begin_commit()
        self.assertFalse(context.cancel())
        self.assertFalse(context.cancelled)


class TestQuoteRequest(unittest.TestCase):

    def test_from_dict(self):
        request = QuoteRequest.from_dict({'opportunity_id': 42, 'dynamic_inputs': {'postcode': 'AB1'},
                                          'use_new_version': True})
        self.assertEqual(request.opportunity_id, '42')
        self.assertEqual(request.option_selections, [])
        self.assertTrue(request.use_new_version)
        self.assertIsNone(request.payment_method)

    def test_single_option_string(self):
        request = QuoteRequest.from_dict({'opportunity_id': 'OPP-2', 'option_selections': 'SingleRate'})
        self.assertEqual(request.option_selections, ['SingleRate'])


if __name__ == '__main__':
    unittest.main()
