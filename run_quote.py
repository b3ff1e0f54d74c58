"""
Populate a solar quote workbook from a JSON request.
Usage: python run_quote.py <request.json> [config.json]
"""

import json
import logging
import sys

from quote.runner import QuoteService
from quote.pipeline import QuoteRequest, SKIPPED_LOCKED, UNKNOWN_FIELD, COERCED_RAW, FAILED


def run_quote_file(request_path: str, config_path: str = None) -> int:
    """
    Run one population request and print the outcome.

    Args:
        request_path: Path to request JSON
        config_path: Optional config JSON

    Returns:
        Process exit code (0 on success)
    """
    print("Solar Quote Engine")
    print(f"  Reading request from: {request_path}")

    with open(request_path, 'r') as f:
        request = QuoteRequest.from_dict(json.load(f))

    service = QuoteService(config_path)
    for default in service.defaults_used:
        print(f"  default: {default}")
    for warning in service.warnings:
        print(f"  warning: {warning}")

    result = service.populate(request)

    for outcome in result.outcomes:
        if outcome.status in (SKIPPED_LOCKED, UNKNOWN_FIELD, COERCED_RAW, FAILED):
            location = f" ({outcome.location})" if outcome.location else ""
            print(f"  {outcome.status}: {outcome.field_id}{location} {outcome.message}".rstrip())

    if not result.success:
        return 1

    print()
    print("NEXT STEPS:")
    print(f"  1. Open {result.document_version_path}")
    print("  2. Check the Inputs tab")
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__.strip())
        sys.exit(2)
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
    sys.exit(run_quote_file(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else None))
