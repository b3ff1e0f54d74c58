"""Unit tests for runner module."""

import unittest
import sys
import os
import shutil
import tempfile

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from quote import catalogue
from quote.config import ConfigLoader
from quote.errors import NotFoundError, ExportError
from quote.pipeline import QuoteRequest
from quote.runner import QuoteService
from quote.template import build_template


class TestQuoteService(unittest.TestCase):
    """Test the service facade over a generated template."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        templates = os.path.join(self.tmp, 'templates')
        os.makedirs(templates)
        build_template(os.path.join(templates, 'calc.xlsx'))
        self.config = ConfigLoader().validate({
            'calculator': {'template_file': 'calc.xlsx', 'template_label': 'Calc'},
            'storage': {'root': os.path.join(self.tmp, 'opportunities'), 'templates_dir': templates},
            'export': {'soffice_path': os.path.join(self.tmp, 'no-such-soffice'), 'timeout_seconds': 5},
        })
        self.service = QuoteService(config=self.config)

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def test_models_from_template(self):
        models = self.service.list_models(catalogue.PANEL, 'Longi')
        self.assertEqual(models, catalogue.CATALOGUE[catalogue.PANEL]['Longi'])
        makers = self.service.list_manufacturers(catalogue.BATTERY)
        self.assertEqual(makers, catalogue.manufacturers(catalogue.BATTERY))

    def test_populate_and_inspect(self):
        result = self.service.populate(QuoteRequest('OPP-7', customer_details={'customer_name': 'Jane Doe'},
                                                    dynamic_inputs={'panel_manufacturer': 'Aiko'}))
        self.assertTrue(result.success, result.error)
        self.assertEqual(self.service.latest_version('OPP-7').version, 1)

        frame = self.service.list_enabled_fields('OPP-7')
        self.assertEqual(frame.loc['customer_name', 'current_value'], 'Jane Doe')

        options = self.service.dropdown_options('OPP-7')
        self.assertEqual(options['panel_model'], catalogue.CATALOGUE[catalogue.PANEL]['Aiko'])

    def test_pdf_path(self):
        path = self.service.pdf_path('OPP-7')
        self.assertEqual(os.path.basename(path), 'Off Peak Calculator - OPP-7.pdf')
        self.assertEqual(os.path.dirname(path), os.path.join(self.tmp, 'opportunities', 'pdfs'))

    def test_export_without_version(self):
        with self.assertRaises(NotFoundError):
            self.service.export_pdf('OPP-404')

    def test_export_failure(self):
        self.service.populate(QuoteRequest('OPP-7'))
        with self.assertRaises(ExportError):
            self.service.export_pdf('OPP-7')
        self.assertFalse(os.path.exists(self.service.pdf_path('OPP-7')))

    def test_missing_template(self):
        os.remove(os.path.join(self.tmp, 'templates', 'calc.xlsx'))
        with self.assertRaises(NotFoundError):
            self.service.list_models(catalogue.PANEL, 'Longi')


if __name__ == '__main__':
    unittest.main()
