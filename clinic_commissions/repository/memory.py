# ==============================================================================
# clinic_commissions/repository/memory.py
# ------------------------------------------------------------------------------
# In-memory implementation of the storage interfaces, for tests and for
# running the engine without a database. Records are transient ORM instances
# so the engine sees the same attributes as with the relational store.
# ==============================================================================

import itertools
import threading
from datetime import datetime
from decimal import Decimal

from clinic_commissions.calculator.amount import procedure_price
from clinic_commissions.calculator.schema import (
    CommissionStatus, GENERAL_BENEFICIARY, PaymentMethod, PaymentStatus,
)
from clinic_commissions.models import Commission, CommissionRule, Payment
from clinic_commissions.repository.base import (
    AppointmentBook, CommissionStore, DuplicateCommissionError, PaymentStore,
    PriceTable, RULE_FILTER_FIELDS, RuleStore, StaffDirectory,
    StorageUnavailableError, normalize_rule_fields,
)


def _group_key(commission):
    return f"{commission.beneficiary_type.value}:{commission.beneficiary_key or GENERAL_BENEFICIARY}"


class InMemoryRuleStore(RuleStore):

    def __init__(self, commissions=None):
        self._rules = {}
        self._ids = itertools.count(1)
        self._commissions = commissions

    def list_rules(self, clinic_id, include_inactive=False):
        rules = [r for r in self._rules.values()
                 if r.clinic_id == clinic_id and (include_inactive or r.is_active)]
        return sorted(rules, key=lambda r: (-r.priority, r.id))

    def get(self, rule_id):
        return self._rules.get(rule_id)

    def create(self, **fields):
        now = datetime.utcnow()
        rule = CommissionRule(id=next(self._ids), created_at=now, updated_at=now,
                              **normalize_rule_fields(fields))
        self._rules[rule.id] = rule
        return rule

    def update(self, rule_id, **fields):
        rule = self.get(rule_id)
        if rule is None:
            return None
        fields.pop('clinic_id', None)
        current = {key: getattr(rule, key) for key in RULE_FILTER_FIELDS}
        for key, value in normalize_rule_fields(fields, current=current).items():
            setattr(rule, key, value)
        rule.updated_at = datetime.utcnow()
        return rule

    def set_active(self, rule_id, is_active):
        rule = self.get(rule_id)
        if rule is not None:
            rule.is_active = bool(is_active)
        return rule

    def is_referenced(self, rule_id):
        if self._commissions is None:
            return False
        return any(c.rule_id == rule_id for c in self._commissions.all())

    def delete(self, rule_id):
        rule = self.get(rule_id)
        if rule is None:
            return None
        if self.is_referenced(rule_id):
            rule.is_active = False
            return 'deactivated'
        del self._rules[rule_id]
        return 'deleted'

    def recompute_priorities(self, clinic_id):
        changed = 0
        for rule in self._rules.values():
            if rule.clinic_id != clinic_id:
                continue
            current = {key: getattr(rule, key) for key in RULE_FILTER_FIELDS}
            priority = normalize_rule_fields(current, current=current)['priority']
            if priority != rule.priority:
                rule.priority = priority
                changed += 1
        return changed


class InMemoryCommissionStore(CommissionStore):
    """
    Emulates the partial unique index with a lock around check-and-insert.
    Set `fail_next_write` to simulate the store going away mid-generation.
    """

    def __init__(self):
        self._rows = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.fail_next_write = False

    def all(self):
        return list(self._rows.values())

    def get(self, commission_id):
        return self._rows.get(commission_id)

    def _active_for(self, appointment_id):
        return [c for c in self._rows.values()
                if c.appointment_id == appointment_id and c.status != CommissionStatus.CANCELLED]

    def has_active(self, appointment_id, beneficiary_type=None):
        return any(beneficiary_type is None or c.beneficiary_type == beneficiary_type
                   for c in self._active_for(appointment_id))

    def active_group_keys(self, appointment_id):
        return {_group_key(c) for c in self._active_for(appointment_id)}

    def add_all(self, records):
        with self._lock:
            if self.fail_next_write:
                self.fail_next_write = False
                raise StorageUnavailableError('in-memory store unavailable')
            taken = set()
            for record in records:
                key = (record['appointment_id'],
                       f"{record['beneficiary_type'].value}:{record.get('beneficiary_key') or GENERAL_BENEFICIARY}")
                existing = {(c.appointment_id, _group_key(c)) for c in self._active_for(record['appointment_id'])}
                if key in existing or key in taken:
                    raise DuplicateCommissionError(f'active commission already exists for {key}')
                taken.add(key)

            now = datetime.utcnow()
            created = []
            for record in records:
                values = dict(record)
                values.setdefault('status', CommissionStatus.PENDING)
                values.setdefault('created_at', now)
                commission = Commission(id=next(self._ids), **values)
                self._rows[commission.id] = commission
                created.append(commission)
            return created

    def list_for_payment(self, payment_id):
        return sorted((c for c in self._rows.values() if c.payment_id == payment_id), key=lambda c: c.id)

    def list_commissions(self, clinic_id, beneficiary_id=None, status=None,
                         start_date=None, end_date=None):
        rows = [c for c in self._rows.values() if c.clinic_id == clinic_id]
        if beneficiary_id:
            rows = [c for c in rows if c.beneficiary_id == beneficiary_id]
        if status:
            rows = [c for c in rows if c.status == CommissionStatus(status)]
        if start_date:
            rows = [c for c in rows if c.created_at.date() >= start_date]
        if end_date:
            rows = [c for c in rows if c.created_at.date() <= end_date]
        return sorted(rows, key=lambda c: (c.created_at, c.id), reverse=True)

    def cancel_pending_for_payment(self, payment_id, when):
        count = 0
        with self._lock:
            for c in self._rows.values():
                if c.payment_id == payment_id and c.status == CommissionStatus.PENDING:
                    c.status = CommissionStatus.CANCELLED
                    c.cancelled_at = when
                    count += 1
        return count

    def mark_paid(self, commission_id, paid_by, when):
        with self._lock:
            commission = self._rows.get(commission_id)
            if commission is None or commission.status != CommissionStatus.PENDING:
                return False
            commission.status = CommissionStatus.PAID
            commission.paid_at = when
            commission.paid_by = paid_by
            return True

    def update_pending(self, commission_id, **fields):
        with self._lock:
            commission = self._rows.get(commission_id)
            if commission is None or commission.status != CommissionStatus.PENDING:
                return False
            for key in ('notes', 'amount'):
                if key in fields:
                    setattr(commission, key, fields[key])
            return True

    def delete_pending(self, commission_id):
        with self._lock:
            commission = self._rows.get(commission_id)
            if commission is None or commission.status != CommissionStatus.PENDING:
                return False
            del self._rows[commission_id]
            return True


class InMemoryPaymentStore(PaymentStore):

    def __init__(self):
        self._rows = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def get(self, payment_id):
        return self._rows.get(payment_id)

    def create(self, **fields):
        fields.setdefault('quantity', 1)
        fields.setdefault('payment_method', PaymentMethod.CASH)
        fields.setdefault('created_at', datetime.utcnow())
        fields['status'] = PaymentStatus.PENDING
        fields['total_amount'] = Decimal(str(fields['total_amount']))
        payment = Payment(id=next(self._ids), **fields)
        self._rows[payment.id] = payment
        return payment

    def transition(self, payment_id, from_status, to_status, **fields):
        with self._lock:
            payment = self._rows.get(payment_id)
            if payment is None or payment.status != from_status:
                return False
            payment.status = to_status
            for key, value in fields.items():
                setattr(payment, key, value)
            return True

    def update(self, payment_id, **fields):
        fields.pop('status', None)
        with self._lock:
            payment = self._rows.get(payment_id)
            if payment is None:
                return False
            for key, value in fields.items():
                setattr(payment, key, value)
            return True


class InMemoryAppointmentBook(AppointmentBook):

    def __init__(self):
        self._contexts = {}
        self.completed = set()

    def add(self, context):
        self._contexts[context.appointment_id] = context
        return context

    def get_context(self, appointment_id):
        return self._contexts.get(appointment_id)

    def mark_completed(self, appointment_id):
        if appointment_id not in self._contexts:
            return False
        self.completed.add(appointment_id)
        return True


class InMemoryStaffDirectory(StaffDirectory):

    def __init__(self, members=None):
        # {(clinic_id, staff_id): name}
        self._names = dict(members or {})

    def add(self, clinic_id, staff_id, name):
        self._names[(clinic_id, staff_id)] = name

    def display_name(self, clinic_id, staff_id):
        return self._names.get((clinic_id, staff_id))


class InMemoryPriceTable(PriceTable):

    def __init__(self, entries=None, default=Decimal('150.00')):
        self.entries = list(entries or [])
        self.default = default

    def lookup(self, clinic_id, procedure):
        return procedure_price(self.entries, clinic_id, procedure, self.default)


def memory_repositories():
    """A fresh, wired in-memory bundle, keyword arguments ready for the services."""
    commissions = InMemoryCommissionStore()
    return {
        'rules': InMemoryRuleStore(commissions=commissions),
        'commissions': commissions,
        'payments': InMemoryPaymentStore(),
        'appointments': InMemoryAppointmentBook(),
        'staff': InMemoryStaffDirectory(),
        'prices': InMemoryPriceTable(),
    }
