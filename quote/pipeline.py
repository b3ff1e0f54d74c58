"""
Population pipeline.
Drives one quote request through a document session in fixed step order,
recording a per-field outcome and surviving individual field failures.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Callable

import pandas as pd

from .coercion import coerce
from .errors import (QuoteError, DocumentError, LockedError, SessionTimeoutError, PopulationCancelled)
from .schema import (FieldRegistry, LogicalField, ResolvedInput, CUSTOMER, TARIFF, EXISTING_SYSTEM,
                     EQUIPMENT, PAYMENT, PAYMENT_METHOD_KEY, PAYMENT_METHOD_OPTIONS, array_indices, is_blank)
from .session import DocumentSession, WorkbookSession
from .versions import VersionStore, VersionRef

logger = logging.getLogger(__name__)

WRITTEN = 'written'
COERCED_RAW = 'coerced_raw'
SKIPPED_LOCKED = 'skipped_locked'
SKIPPED_BLANK = 'skipped_blank'
SUPERSEDED = 'superseded'
UNKNOWN_FIELD = 'unknown_field'
FAILED = 'failed'

CUSTOMER_DETAIL_KEYS = ('customer_name', 'address', 'postcode')


@dataclass
class QuoteRequest:
    """One population request for an opportunity."""
    opportunity_id: str
    customer_details: Dict[str, Any] = field(default_factory=dict)
    option_selections: List[str] = field(default_factory=list)
    dynamic_inputs: Dict[str, Any] = field(default_factory=dict)
    use_new_version: bool = False
    existing_file_name: Optional[str] = None
    payment_method: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QuoteRequest':
        selections = data.get('option_selections') or []
        if isinstance(selections, str):
            selections = [selections]
        return cls(
            opportunity_id=str(data['opportunity_id']),
            customer_details=dict(data.get('customer_details') or {}),
            option_selections=list(selections),
            dynamic_inputs=dict(data.get('dynamic_inputs') or {}),
            use_new_version=bool(data.get('use_new_version', False)),
            existing_file_name=data.get('existing_file_name'),
            payment_method=data.get('payment_method'),
        )


@dataclass
class FieldOutcome:
    field_id: str
    status: str
    location: Optional[str] = None
    message: str = ''


@dataclass
class PopulationContext:
    """Request-scoped state threaded through the pipeline steps."""
    payment_method: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    outcomes: List[FieldOutcome] = field(default_factory=list)
    committing: bool = False
    _commit_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns False when the save has already begun; that save runs to
        completion and the run is not cancelled.
        """
        with self._commit_lock:
            if self.committing:
                return False
            self.cancel_event.set()
            return True

    def begin_commit(self):
        """Mark the start of the save, unless cancellation came first."""
        with self._commit_lock:
            self.check_cancelled()
            self.committing = True

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self):
        if self.cancelled:
            raise PopulationCancelled("Population cancelled")

    def record(self, field_id: str, status: str, location=None, message: str = ''):
        self.outcomes.append(FieldOutcome(field_id, status, str(location) if location else None, message))


@dataclass
class PopulationResult:
    success: bool
    document_version_path: Optional[str] = None
    error: Optional[str] = None
    outcomes: List[FieldOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def outcome_for(self, field_id: str) -> Optional[FieldOutcome]:
        for outcome in self.outcomes:
            if outcome.field_id == field_id:
                return outcome
        return None

    def outcomes_frame(self) -> pd.DataFrame:
        """Per-field outcomes as a DataFrame (one row per outcome)."""
        return pd.DataFrame([vars(o) for o in self.outcomes],
                            columns=['field_id', 'status', 'location', 'message'])


class PopulationPipeline:
    """Populates a versioned quote workbook from a QuoteRequest."""

    def __init__(self, config: Dict[str, Any], registry: FieldRegistry, store: VersionStore,
                 session_factory: Optional[Callable[[], DocumentSession]] = None):
        """
        Args:
            config: Validated config (see config.load_config)
            registry: Field registry for the calculator profile
            store: Version store for the calculator's opportunity files
            session_factory: Builds an unopened DocumentSession (default: WorkbookSession)
        """
        self.config = config
        self.registry = registry
        self.store = store
        self.session_factory = session_factory or self._default_session
        self.timeout = config['session']['timeout_seconds']

    def _default_session(self) -> DocumentSession:
        return WorkbookSession(self.registry.actions,
                               soffice_path=self.config['export']['soffice_path'],
                               export_timeout=self.config['export']['timeout_seconds'])

    def template_path(self) -> str:
        return os.path.join(self.config['storage']['templates_dir'], self.config['calculator']['template_file'])

    def populate(self, request: QuoteRequest, context: Optional[PopulationContext] = None) -> PopulationResult:
        """
        Run the full pipeline under the session timeout.

        Fatal errors come back as success=False with a readable message; field
        level problems only show up in the outcomes.
        """
        if context is None:
            context = PopulationContext(self._payment_method(request))

        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self.run, request, context)
        try:
            path = self._await(future, request, context)
        except (QuoteError, OSError) as e:
            logger.error("Population of %s failed: %s", request.opportunity_id, e)
            return self._failure(request, e, context)
        finally:
            executor.shutdown(wait=False)

        return PopulationResult(True, path, None, list(context.outcomes))

    def _await(self, future, request: QuoteRequest, context: PopulationContext) -> str:
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            if context.cancel():
                raise SessionTimeoutError(
                    f"Population of {request.opportunity_id} exceeded {self.timeout}s") from None

        # Past the deadline but already saving
        logger.warning("Population of %s exceeded %ss while saving; waiting for the save",
                       request.opportunity_id, self.timeout)
        return future.result()

    def _failure(self, request: QuoteRequest, cause: Exception, context: PopulationContext) -> PopulationResult:
        message = f"Could not populate quote for {request.opportunity_id}: {type(cause).__name__}: {cause}"
        return PopulationResult(False, None, message, list(context.outcomes))

    def _payment_method(self, request: QuoteRequest) -> str:
        if request.payment_method:
            return str(request.payment_method)
        raw = request.dynamic_inputs.get(PAYMENT_METHOD_KEY)
        if not is_blank(raw):
            return str(raw)
        for name in request.option_selections:
            option = self.registry.option(name)
            if option is not None and option.group == PAYMENT:
                return option.name
        return self.config['payment']['default_method']

    def acquire(self, request: QuoteRequest) -> VersionRef:
        """Pick (and if needed create) the version this request writes to."""
        if request.existing_file_name:
            return self.store.resolve_named(request.existing_file_name)

        latest = None if request.use_new_version else self.store.resolve_latest(request.opportunity_id)
        if latest is not None:
            logger.info("Editing %s v%d in place", request.opportunity_id, latest.version)
            return latest

        ref = self.store.allocate_next(request.opportunity_id)
        return self.store.materialize(ref, self.template_path())

    def run(self, request: QuoteRequest, context: PopulationContext) -> str:
        """Run every step in order and return the saved document path."""
        ref = self.acquire(request)
        inputs = request.dynamic_inputs

        session = self.session_factory()
        session.open(ref.path, self.config['calculator']['password'])
        try:
            self._record_unusable_inputs(inputs, context)
            self.fill_customer(session, request, context)
            self.apply_options(session, request.option_selections, context)
            for category in (TARIFF, EXISTING_SYSTEM):
                self.fill_category(session, inputs, category, context)
            self.fill_category(session, inputs, EQUIPMENT, context)
            self.fill_arrays(session, inputs, context)
            self.apply_payment(session, inputs, context)

            context.begin_commit()
            session.save()
        finally:
            session.close()

        return ref.path

    def _record_unusable_inputs(self, inputs: Dict[str, Any], context: PopulationContext):
        for field_id in self.registry.unknown_ids(inputs):
            logger.warning("Unknown logical field '%s' ignored", field_id)
            context.record(field_id, UNKNOWN_FIELD, message='not in field registry')
        for field_id, value in inputs.items():
            if field_id in self.registry.fields and is_blank(value):
                context.record(field_id, SKIPPED_BLANK, self.registry.fields[field_id].location)

    def fill_customer(self, session: DocumentSession, request: QuoteRequest, context: PopulationContext):
        """Customer identity from customer_details, overridden by non-blank dynamic inputs."""
        values = {k: request.customer_details.get(k) for k in CUSTOMER_DETAIL_KEYS
                  if not is_blank(request.customer_details.get(k))}
        for item in self.registry.resolve_batch(request.dynamic_inputs, CUSTOMER):
            values[item.field.id] = item.raw_value

        for fld in self.registry.primary_fields(CUSTOMER):
            if fld.id in values:
                self.write_field(session, fld, fld.id, values[fld.id], context)

    def apply_options(self, session: DocumentSession, selections: List[str], context: PopulationContext):
        """Run the action of each selected option; payment choices wait for the payment step."""
        chosen = {}
        for name in selections:
            option = self.registry.option(name)
            if option is None:
                logger.warning("Unknown option selection '%s' ignored", name)
                context.record(name, UNKNOWN_FIELD, message='unknown option selection')
                continue
            if option.group == PAYMENT:
                continue
            if option.group in chosen and chosen[option.group] != option.name:
                logger.warning("Options %s and %s are exclusive; %s applies",
                               chosen[option.group], option.name, option.name)
            chosen[option.group] = option.name
            self.run_action(session, option.action, context, source=name)

    def run_action(self, session: DocumentSession, action: str, context: PopulationContext,
                   source: str = '') -> bool:
        context.check_cancelled()
        try:
            session.run_named_action(action)
        except DocumentError as e:
            logger.error("Action %s failed: %s", action, e)
            context.record(source or action, FAILED, message=str(e))
            return False
        return True

    def fill_category(self, session: DocumentSession, inputs: Dict[str, Any], category: str,
                      context: PopulationContext):
        for item in self.registry.resolve_batch(inputs, category):
            self._write_resolved(session, item, context)

    def fill_arrays(self, session: DocumentSession, inputs: Dict[str, Any], context: PopulationContext):
        """
        Write the array count, run its trigger, then each present array's rows.

        The count is the explicit value if given, otherwise the highest array
        number carrying data.
        """
        present = array_indices(inputs)
        count_input = self.registry.resolve_value('no_of_arrays', inputs)
        if count_input is not None:
            count_field = count_input.field
            count_raw = count_input.raw_value.strip()
            for alias in count_input.superseded:
                context.record(alias, SUPERSEDED, count_field.location, f'{count_input.source_id} wins')
            source_id = count_input.source_id
        elif present:
            count_field = self.registry.resolve('no_of_arrays')
            count_raw = str(max(present))
            source_id = count_field.id
        else:
            return

        if self.write_field(session, count_field, source_id, count_raw, context):
            action = self.registry.trigger_action(count_field.id, count_raw)
            if action is None:
                logger.warning("No array action for no_of_arrays=%s", count_raw)
            elif self.run_action(session, action, context, source=count_field.id):
                self._verify_unlocked(session, action)

        for index in present:
            for fld in self.registry.array_fields(index):
                item = self.registry.resolve_value(fld.id, inputs)
                if item is not None:
                    self._write_resolved(session, item, context)

    def _verify_unlocked(self, session: DocumentSession, action: str):
        still_locked = [str(loc) for loc in self.registry.actions[action].unlock if session.is_locked(loc)]
        if still_locked:
            logger.warning("Action %s left %d cells locked: %s", action, len(still_locked),
                           ", ".join(still_locked))

    def apply_payment(self, session: DocumentSession, inputs: Dict[str, Any], context: PopulationContext):
        method = str(context.payment_method).strip().lower()
        option = self.registry.payment_option(method, self.config['payment']['default_method'])
        if method not in PAYMENT_METHOD_OPTIONS:
            logger.warning("Unknown payment method '%s'; using %s", context.payment_method, option.name)
        self.run_action(session, option.action, context, source=PAYMENT_METHOD_KEY)
        self.fill_category(session, inputs, PAYMENT, context)

    def _write_resolved(self, session: DocumentSession, item: ResolvedInput, context: PopulationContext):
        for alias in item.superseded:
            context.record(alias, SUPERSEDED, item.field.location, f'{item.source_id} wins')
        self.write_field(session, item.field, item.source_id, item.raw_value, context)

    def write_field(self, session: DocumentSession, fld: LogicalField, source_id: str, raw: Any,
                    context: PopulationContext) -> bool:
        """
        Coerce and write one value, recording the outcome.

        Locked targets are skipped without retry. Returns True if written.
        """
        context.check_cancelled()

        if session.is_locked(fld.location):
            logger.info("Skipping %s: %s is locked", source_id, fld.location)
            context.record(source_id, SKIPPED_LOCKED, fld.location)
            return False

        coerced = coerce(raw, fld.value_kind, source_id)
        try:
            session.write_cell(fld.location, coerced.value)
        except LockedError:
            logger.info("Skipping %s: %s is locked", source_id, fld.location)
            context.record(source_id, SKIPPED_LOCKED, fld.location)
            return False
        except DocumentError as e:
            logger.error("Writing %s to %s failed: %s", source_id, fld.location, e)
            context.record(source_id, FAILED, fld.location, str(e))
            return False

        if coerced.warning is not None:
            logger.warning(coerced.warning.message)
            context.record(source_id, COERCED_RAW, fld.location, coerced.warning.message)
        else:
            context.record(source_id, WRITTEN, fld.location)
        return True
