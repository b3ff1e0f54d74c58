"""
Main runner module.
Service facade tying config, version store, registry, pipeline and
introspection together for one calculator.
"""

import logging
import os
from typing import Dict, Any, List, Optional

import pandas as pd

from .config import load_config
from .errors import NotFoundError
from .introspector import EnablementIntrospector
from .pipeline import PopulationPipeline, PopulationResult, QuoteRequest, WRITTEN, SKIPPED_LOCKED, COERCED_RAW
from .resolver import CascadingOptionResolver
from .schema import FieldRegistry
from .session import open_session
from .versions import VersionStore, VersionRef

logger = logging.getLogger(__name__)


class QuoteService:
    """Quote population service for one calculator profile."""

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize service from a config file or an already validated config.

        Args:
            config_path: Path to config JSON file (defaults applied when None)
            config: Validated config dict; takes precedence over config_path
        """
        if config is not None:
            self.config, self.defaults_used, self.warnings = config, [], []
        else:
            self.config, self.defaults_used, self.warnings = load_config(config_path)

        logging.getLogger('quote').setLevel(self.config['logging']['level'])

        calculator = self.config['calculator']
        self.registry = FieldRegistry(calculator['type'])
        extension = os.path.splitext(calculator['template_file'])[1] or '.xlsm'
        self.store = VersionStore(self.config['storage']['root'], calculator['template_label'], extension)
        self.pipeline = PopulationPipeline(self.config, self.registry, self.store)

    def _session_kwargs(self) -> Dict[str, Any]:
        return {
            'soffice_path': self.config['export']['soffice_path'],
            'export_timeout': self.config['export']['timeout_seconds'],
        }

    def _document_for(self, opportunity_id: Optional[str]) -> str:
        """Latest version of an opportunity, or the template when there is none."""
        if opportunity_id:
            latest = self.store.resolve_latest(opportunity_id)
            if latest is not None:
                return latest.path
        template = self.pipeline.template_path()
        if not os.path.isfile(template):
            raise NotFoundError(f"Template not found: {template}")
        return template

    def populate(self, request: QuoteRequest) -> PopulationResult:
        """
        Populate the opportunity's workbook.

        Returns:
            PopulationResult with the version path and per-field outcomes
        """
        print(f"Populating quote for {request.opportunity_id}...")
        result = self.pipeline.populate(request)

        if result.success:
            print(f"  Saved: {result.document_version_path}")
            print(f"  Written: {result.count(WRITTEN)}, coerced as text: {result.count(COERCED_RAW)}, "
                  f"skipped (locked): {result.count(SKIPPED_LOCKED)}")
        else:
            print(f"  Failed: {result.error}")

        return result

    def latest_version(self, opportunity_id: str) -> Optional[VersionRef]:
        return self.store.resolve_latest(opportunity_id)

    def list_models(self, category: str, manufacturer: str, opportunity_id: Optional[str] = None) -> List[str]:
        """Models for a manufacturer, read from the opportunity's workbook or the template."""
        path = self._document_for(opportunity_id)
        with open_session(path, self.config['calculator']['password'], self.registry.actions,
                          **self._session_kwargs()) as session:
            return CascadingOptionResolver(session).list_models(category, manufacturer)

    def list_manufacturers(self, category: str, opportunity_id: Optional[str] = None) -> List[str]:
        path = self._document_for(opportunity_id)
        with open_session(path, self.config['calculator']['password'], self.registry.actions,
                          **self._session_kwargs()) as session:
            return CascadingOptionResolver(session).list_manufacturers(category)

    def list_enabled_fields(self, opportunity_id: Optional[str] = None) -> pd.DataFrame:
        """Enablement report for the opportunity's latest workbook (or the template)."""
        path = self._document_for(opportunity_id)
        with open_session(path, self.config['calculator']['password'], self.registry.actions,
                          **self._session_kwargs()) as session:
            return EnablementIntrospector(self.registry, session).enabled_frame()

    def dropdown_options(self, opportunity_id: Optional[str] = None) -> Dict[str, List[str]]:
        path = self._document_for(opportunity_id)
        with open_session(path, self.config['calculator']['password'], self.registry.actions,
                          **self._session_kwargs()) as session:
            return EnablementIntrospector(self.registry, session).dropdown_options()

    def pdf_path(self, opportunity_id: str) -> str:
        name = f"{self.config['calculator']['pdf_label']} - {opportunity_id}.pdf"
        return os.path.join(self.config['storage']['pdf_dir'], name)

    def export_pdf(self, opportunity_id: str) -> str:
        """
        Export the latest version to PDF (overwriting any previous export).

        Returns:
            Path of the written PDF
        """
        latest = self.store.resolve_latest(opportunity_id)
        if latest is None:
            raise NotFoundError(f"No quote workbook for opportunity {opportunity_id}")

        output_path = self.pdf_path(opportunity_id)
        print(f"Exporting to PDF: {output_path}")

        page_range = self.config['export']['page_range']
        with open_session(latest.path, self.config['calculator']['password'], self.registry.actions,
                          **self._session_kwargs()) as session:
            session.export_to_fixed_layout_file(output_path, tuple(page_range) if page_range else None)

        print("Export complete!")
        return output_path


def run_quote(request_data: Dict[str, Any], config_path: Optional[str] = None) -> PopulationResult:
    """
    Convenience function to populate one quote request.

    Args:
        request_data: Request dict (see QuoteRequest.from_dict)
        config_path: Optional config JSON

    Returns:
        PopulationResult
    """
    service = QuoteService(config_path)
    return service.populate(QuoteRequest.from_dict(request_data))
