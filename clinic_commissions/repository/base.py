# ==============================================================================
# clinic_commissions/repository/base.py
# ------------------------------------------------------------------------------
# Storage interfaces the commission engine depends on. The engine never talks
# to the ORM directly; it receives one of these implementations.
# ==============================================================================

import abc
from decimal import Decimal

from clinic_commissions.calculator.resolver import compute_priority
from clinic_commissions.calculator.schema import (
    BeneficiaryType, CalculationType, CalculationUnit, DayOfWeek, WILDCARD,
)


class StorageError(Exception):
    """Base class for storage-layer failures."""


class DuplicateCommissionError(StorageError):
    """A non-cancelled commission already exists for the beneficiary group."""


class StorageUnavailableError(StorageError):
    """The store could not complete the operation. Safe to retry later."""


RULE_FILTER_FIELDS = ('professional_id', 'procedure', 'day_of_week', 'beneficiary_id')
RULE_FIELDS = (
    'clinic_id', 'beneficiary_type', 'professional_id', 'beneficiary_id',
    'beneficiary_name', 'procedure', 'day_of_week', 'calculation_type',
    'calculation_unit', 'value', 'is_active', 'notes',
)


def normalize_rule_fields(fields, current=None):
    """
    Coerces rule fields to their enum/decimal types, fills creation defaults
    and derives the priority. `current` holds the existing values on update.
    Any caller-provided priority is discarded.
    """
    data = {key: value for key, value in fields.items() if key in RULE_FIELDS}
    if current is None:
        data.setdefault('professional_id', WILDCARD)
        data.setdefault('procedure', WILDCARD)
        data.setdefault('day_of_week', DayOfWeek.ALL)
        data.setdefault('calculation_unit', CalculationUnit.APPOINTMENT)
        data.setdefault('is_active', True)

    for key in ('professional_id', 'procedure'):
        if key in data and not data[key]:
            data[key] = WILDCARD
    if 'beneficiary_id' in data and not data['beneficiary_id']:
        data['beneficiary_id'] = None
    if 'beneficiary_type' in data:
        data['beneficiary_type'] = BeneficiaryType(data['beneficiary_type'])
    if 'day_of_week' in data:
        data['day_of_week'] = DayOfWeek(data['day_of_week'] or DayOfWeek.ALL)
    if 'calculation_type' in data:
        data['calculation_type'] = CalculationType(data['calculation_type'])
    if 'calculation_unit' in data:
        data['calculation_unit'] = CalculationUnit(data['calculation_unit'] or CalculationUnit.APPOINTMENT)
    if 'value' in data:
        data['value'] = Decimal(str(data['value']))
        if data['value'] < 0:
            raise ValueError('Rule value must be non-negative.')

    merged = dict(current or {})
    merged.update(data)
    if current is None or any(key in data for key in RULE_FILTER_FIELDS):
        data['priority'] = compute_priority(
            merged.get('professional_id', WILDCARD),
            merged.get('procedure', WILDCARD),
            merged.get('day_of_week', DayOfWeek.ALL),
            merged.get('beneficiary_id'),
        )
    return data


class RuleStore(abc.ABC):
    """Persisted CommissionRule records, per clinic."""

    @abc.abstractmethod
    def list_rules(self, clinic_id, include_inactive=False):
        """Rules of a clinic, highest priority first."""

    @abc.abstractmethod
    def get(self, rule_id):
        """The rule or None."""

    @abc.abstractmethod
    def create(self, **fields):
        """Creates a rule; priority is derived, never taken from `fields`."""

    @abc.abstractmethod
    def update(self, rule_id, **fields):
        """Edits a rule and re-derives its priority. Returns the rule or None."""

    @abc.abstractmethod
    def set_active(self, rule_id, is_active):
        """Returns the rule or None."""

    @abc.abstractmethod
    def is_referenced(self, rule_id):
        """True if any commission was generated from the rule."""

    @abc.abstractmethod
    def delete(self, rule_id):
        """
        Physically deletes an unreferenced rule, or deactivates a referenced
        one. Returns 'deleted', 'deactivated' or None if not found.
        """

    @abc.abstractmethod
    def recompute_priorities(self, clinic_id):
        """Re-derives every rule's priority. Returns how many changed."""


class CommissionStore(abc.ABC):
    """Persisted Commission records."""

    @abc.abstractmethod
    def get(self, commission_id):
        """The commission or None."""

    @abc.abstractmethod
    def has_active(self, appointment_id, beneficiary_type=None):
        """True if a non-cancelled commission exists for the appointment (and type)."""

    @abc.abstractmethod
    def active_group_keys(self, appointment_id):
        """Group keys ('type:key') already holding a non-cancelled commission."""

    @abc.abstractmethod
    def add_all(self, records):
        """
        Inserts every record (dicts of Commission columns) atomically.
        Raises DuplicateCommissionError or StorageUnavailableError and writes
        nothing on failure.
        """

    @abc.abstractmethod
    def list_for_payment(self, payment_id):
        """Commissions generated for a payment."""

    @abc.abstractmethod
    def list_commissions(self, clinic_id, beneficiary_id=None, status=None,
                         start_date=None, end_date=None):
        """Commissions of a clinic, newest first."""

    @abc.abstractmethod
    def cancel_pending_for_payment(self, payment_id, when):
        """Moves the payment's pending commissions to cancelled. Returns the count."""

    @abc.abstractmethod
    def mark_paid(self, commission_id, paid_by, when):
        """pending -> paid, conditional on the row still being pending. Returns bool."""

    @abc.abstractmethod
    def update_pending(self, commission_id, **fields):
        """Edits a pending commission. Returns False if it is no longer pending."""

    @abc.abstractmethod
    def delete_pending(self, commission_id):
        """Deletes a pending commission. Returns False if it is no longer pending."""


class PaymentStore(abc.ABC):

    @abc.abstractmethod
    def get(self, payment_id):
        """The payment or None."""

    @abc.abstractmethod
    def create(self, **fields):
        """Creates a pending payment."""

    @abc.abstractmethod
    def transition(self, payment_id, from_status, to_status, **fields):
        """
        Compare-and-swap status change: only applies if the payment is still
        in `from_status`. Returns True if this call made the change.
        """

    @abc.abstractmethod
    def update(self, payment_id, **fields):
        """Sets non-status fields (e.g. the no-rule acknowledgement)."""


class AppointmentBook(abc.ABC):

    @abc.abstractmethod
    def get_context(self, appointment_id):
        """AppointmentContext for the appointment, or None."""

    @abc.abstractmethod
    def mark_completed(self, appointment_id):
        """Flags the appointment as completed. Returns bool."""


class StaffDirectory(abc.ABC):

    @abc.abstractmethod
    def display_name(self, clinic_id, staff_id):
        """Current display name of a staff member, or None."""


class PriceTable(abc.ABC):

    @abc.abstractmethod
    def lookup(self, clinic_id, procedure):
        """Procedure price, applying the exact / similar / default fallback."""
