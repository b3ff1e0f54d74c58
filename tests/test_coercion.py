"""Unit tests for coercion module."""

import unittest
import sys
import os
from datetime import date

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from quote.coercion import coerce, to_serial_date, from_serial_date, strip_control_chars


class TestNumberCoercion(unittest.TestCase):
    """Test number parsing."""

    def test_integer_with_whitespace(self):
        result = coerce("  7  ", 'number')
        self.assertEqual(result.value, 7)
        self.assertIsInstance(result.value, int)
        self.assertIsNone(result.warning)

    def test_decimal(self):
        result = coerce("12.5", 'number')
        self.assertAlmostEqual(result.value, 12.5)
        self.assertIsNone(result.warning)

    def test_thousands_and_currency(self):
        self.assertEqual(coerce("1,200", 'number').value, 1200)
        self.assertEqual(coerce("£5000", 'number').value, 5000)

    def test_blank_passes_through(self):
        result = coerce("", 'number')
        self.assertEqual(result.value, "")
        self.assertIsNone(result.warning)

    def test_unparseable_written_raw_with_warning(self):
        result = coerce("abc", 'number', 'single_day_rate')
        self.assertEqual(result.value, "abc")
        self.assertIsNotNone(result.warning)
        self.assertEqual(result.warning.field_id, 'single_day_rate')
        self.assertEqual(result.warning.value_kind, 'number')

    def test_overflow_is_not_a_number(self):
        result = coerce("1e400", 'number')
        self.assertEqual(result.value, "1e400")
        self.assertIsNotNone(result.warning)


class TestDateCoercion(unittest.TestCase):
    """Test date parsing to serial day counts."""

    def test_known_serial(self):
        self.assertEqual(to_serial_date(date(2020, 1, 1)), 43831)
        self.assertEqual(from_serial_date(43831), date(2020, 1, 1))

    def test_day_first(self):
        result = coerce("15/03/2020", 'date')
        self.assertEqual(result.value, to_serial_date(date(2020, 3, 15)))
        self.assertIsNone(result.warning)

    def test_iso_date(self):
        result = coerce("2020-03-04", 'date')
        self.assertEqual(result.value, to_serial_date(date(2020, 3, 4)))

    def test_invalid_date(self):
        result = coerce("2024-13-40", 'date', 'commissioning_date')
        self.assertEqual(result.value, "2024-13-40")
        self.assertIsNotNone(result.warning)

    def test_garbage_date(self):
        result = coerce("sometime last year", 'date')
        self.assertEqual(result.value, "sometime last year")
        self.assertIsNotNone(result.warning)


class TestTextCoercion(unittest.TestCase):
    """Test text and dropdown handling."""

    def test_dropdown_verbatim(self):
        result = coerce("  Longi ", 'dropdown')
        self.assertEqual(result.value, "  Longi ")
        self.assertIsNone(result.warning)

    def test_dropdown_control_chars_stripped(self):
        self.assertEqual(coerce("Longi\x07", 'dropdown').value, "Longi")

    def test_raw_fallback_control_chars_stripped(self):
        result = coerce("abc\x01", 'number', 'new_day_rate')
        self.assertEqual(result.value, "abc")
        self.assertEqual(result.warning.raw_value, "abc\x01")
        self.assertEqual(coerce("soon\x02", 'date').value, "soon")

    def test_text_control_chars_stripped(self):
        self.assertEqual(coerce("Jane\x07 Doe\x00", 'text').value, "Jane Doe")
        self.assertEqual(strip_control_chars("line1\nline2\tend"), "line1\nline2\tend")

    def test_none_is_blank(self):
        self.assertEqual(coerce(None, 'text').value, "")

    def test_never_raises(self):
        samples = ["", "abc", "12.5", "2024-13-40", "  7  ", None, "1e400", "--", "£", "31/02/2023"]
        for kind in ('number', 'date', 'dropdown', 'text'):
            for raw in samples:
                result = coerce(raw, kind)
                self.assertIsNotNone(result)


if __name__ == '__main__':
    unittest.main()
