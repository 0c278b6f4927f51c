# ==============================================================================
# clinic_commissions/repository/sql.py
# ------------------------------------------------------------------------------
# Relational implementation of the storage interfaces on Flask-SQLAlchemy.
# Must be used inside an application context.
# ==============================================================================

import logging
from contextlib import contextmanager
from datetime import datetime, time

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from clinic_commissions import db
from clinic_commissions.calculator.amount import procedure_price
from clinic_commissions.calculator.schema import (
    AppointmentContext, AppointmentStatus, CommissionStatus, GENERAL_BENEFICIARY,
    PaymentStatus,
)
from clinic_commissions.models import (
    Appointment, Commission, CommissionRule, Payment, ProcedurePrice, StaffMember,
)
from clinic_commissions.repository.base import (
    AppointmentBook, CommissionStore, DuplicateCommissionError, PaymentStore,
    PriceTable, RULE_FILTER_FIELDS, RuleStore, StaffDirectory,
    StorageUnavailableError, normalize_rule_fields,
)
from clinic_commissions.settings import load_settings


@contextmanager
def _unit_of_work(description, conflict_error=StorageUnavailableError):
    """Commits on success; rolls back and translates storage errors otherwise."""
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        logging.warning(f"Integrity violation while {description}: {e.orig}")
        raise conflict_error(str(e.orig)) from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logging.error(f"Storage failure while {description}: {e}", exc_info=True)
        raise StorageUnavailableError(str(e)) from e


class SqlRuleStore(RuleStore):

    def list_rules(self, clinic_id, include_inactive=False):
        query = CommissionRule.query.filter_by(clinic_id=clinic_id)
        if not include_inactive:
            query = query.filter_by(is_active=True)
        return query.order_by(CommissionRule.priority.desc(), CommissionRule.id).all()

    def get(self, rule_id):
        return db.session.get(CommissionRule, rule_id)

    def create(self, **fields):
        rule = CommissionRule(**normalize_rule_fields(fields))
        with _unit_of_work('creating commission rule'):
            db.session.add(rule)
        logging.info(f"Created commission rule {rule.id} for clinic '{rule.clinic_id}' (priority {rule.priority}).")
        return rule

    def update(self, rule_id, **fields):
        rule = self.get(rule_id)
        if rule is None:
            return None
        fields.pop('clinic_id', None)  # rules never move between clinics
        current = {key: getattr(rule, key) for key in RULE_FILTER_FIELDS}
        with _unit_of_work('updating commission rule'):
            for key, value in normalize_rule_fields(fields, current=current).items():
                setattr(rule, key, value)
        return rule

    def set_active(self, rule_id, is_active):
        rule = self.get(rule_id)
        if rule is None:
            return None
        with _unit_of_work('toggling commission rule'):
            rule.is_active = bool(is_active)
        return rule

    def is_referenced(self, rule_id):
        return db.session.query(Commission.id).filter_by(rule_id=rule_id).first() is not None

    def delete(self, rule_id):
        rule = self.get(rule_id)
        if rule is None:
            return None
        if self.is_referenced(rule_id):
            with _unit_of_work('deactivating referenced commission rule'):
                rule.is_active = False
            logging.info(f"Rule {rule_id} is referenced by commissions; deactivated instead of deleted.")
            return 'deactivated'
        with _unit_of_work('deleting commission rule'):
            db.session.delete(rule)
        return 'deleted'

    def recompute_priorities(self, clinic_id):
        changed = 0
        with _unit_of_work('recomputing rule priorities'):
            for rule in CommissionRule.query.filter_by(clinic_id=clinic_id).all():
                current = {key: getattr(rule, key) for key in RULE_FILTER_FIELDS}
                priority = normalize_rule_fields(current, current=current)['priority']
                if priority != rule.priority:
                    rule.priority = priority
                    changed += 1
        return changed


class SqlCommissionStore(CommissionStore):

    def get(self, commission_id):
        return db.session.get(Commission, commission_id)

    def _active(self):
        return Commission.query.filter(Commission.status != CommissionStatus.CANCELLED)

    def has_active(self, appointment_id, beneficiary_type=None):
        query = self._active().filter(Commission.appointment_id == appointment_id)
        if beneficiary_type is not None:
            query = query.filter(Commission.beneficiary_type == beneficiary_type)
        return db.session.query(query.exists()).scalar()

    def active_group_keys(self, appointment_id):
        rows = self._active().filter(Commission.appointment_id == appointment_id).all()
        return {f"{c.beneficiary_type.value}:{c.beneficiary_key or GENERAL_BENEFICIARY}" for c in rows}

    def add_all(self, records):
        commissions = [Commission(**record) for record in records]
        if not commissions:
            return []
        with _unit_of_work('persisting commissions', conflict_error=DuplicateCommissionError):
            db.session.add_all(commissions)
        return commissions

    def list_for_payment(self, payment_id):
        return Commission.query.filter_by(payment_id=payment_id).order_by(Commission.id).all()

    def list_commissions(self, clinic_id, beneficiary_id=None, status=None,
                         start_date=None, end_date=None):
        query = Commission.query.filter_by(clinic_id=clinic_id)
        if beneficiary_id:
            query = query.filter_by(beneficiary_id=beneficiary_id)
        if status:
            query = query.filter_by(status=CommissionStatus(status))
        if start_date:
            query = query.filter(Commission.created_at >= datetime.combine(start_date, time.min))
        if end_date:
            query = query.filter(Commission.created_at <= datetime.combine(end_date, time.max))
        return query.order_by(Commission.created_at.desc(), Commission.id.desc()).all()

    def _conditional_update(self, commission_id, values, description):
        with _unit_of_work(description):
            updated = Commission.query.filter_by(
                id=commission_id, status=CommissionStatus.PENDING
            ).update(values, synchronize_session='fetch')
        return updated == 1

    def cancel_pending_for_payment(self, payment_id, when):
        with _unit_of_work('cancelling commissions for payment'):
            count = Commission.query.filter_by(
                payment_id=payment_id, status=CommissionStatus.PENDING
            ).update({'status': CommissionStatus.CANCELLED, 'cancelled_at': when},
                     synchronize_session='fetch')
        return count

    def mark_paid(self, commission_id, paid_by, when):
        return self._conditional_update(
            commission_id,
            {'status': CommissionStatus.PAID, 'paid_at': when, 'paid_by': paid_by},
            'marking commission paid',
        )

    def update_pending(self, commission_id, **fields):
        allowed = {key: value for key, value in fields.items() if key in ('notes', 'amount')}
        if not allowed:
            return self.get(commission_id) is not None
        return self._conditional_update(commission_id, allowed, 'editing commission')

    def delete_pending(self, commission_id):
        with _unit_of_work('deleting commission'):
            deleted = Commission.query.filter_by(
                id=commission_id, status=CommissionStatus.PENDING
            ).delete(synchronize_session='fetch')
        return deleted == 1


class SqlPaymentStore(PaymentStore):

    def get(self, payment_id):
        return db.session.get(Payment, payment_id)

    def create(self, **fields):
        fields['status'] = PaymentStatus.PENDING
        payment = Payment(**fields)
        with _unit_of_work('creating payment'):
            db.session.add(payment)
        return payment

    def transition(self, payment_id, from_status, to_status, **fields):
        values = dict(fields, status=to_status)
        with _unit_of_work(f'moving payment {payment_id} to {to_status}'):
            updated = Payment.query.filter_by(
                id=payment_id, status=from_status
            ).update(values, synchronize_session='fetch')
        return updated == 1

    def update(self, payment_id, **fields):
        fields.pop('status', None)
        with _unit_of_work('updating payment'):
            updated = Payment.query.filter_by(id=payment_id).update(fields, synchronize_session='fetch')
        return updated == 1


class SqlAppointmentBook(AppointmentBook):

    def get_context(self, appointment_id):
        appointment = db.session.get(Appointment, appointment_id)
        if appointment is None:
            return None
        return AppointmentContext(
            appointment_id=appointment.id,
            clinic_id=appointment.clinic_id,
            professional_id=appointment.professional_id,
            procedure=appointment.procedure_name,
            date=appointment.date,
            seller_id=appointment.seller_id,
            professional_name=appointment.professional_name,
            lead_source=appointment.lead_source,
        )

    def mark_completed(self, appointment_id):
        with _unit_of_work('completing appointment'):
            updated = Appointment.query.filter_by(id=appointment_id).update(
                {'status': AppointmentStatus.COMPLETED}, synchronize_session='fetch'
            )
        return updated == 1


class SqlStaffDirectory(StaffDirectory):

    def display_name(self, clinic_id, staff_id):
        member = StaffMember.query.filter_by(id=staff_id, clinic_id=clinic_id).first()
        return member.name if member else None


class SqlPriceTable(PriceTable):

    def lookup(self, clinic_id, procedure):
        entries = ProcedurePrice.query.filter_by(is_active=True).order_by(ProcedurePrice.id).all()
        default = load_settings()['DEFAULT_PROCEDURE_PRICE']
        return procedure_price(entries, clinic_id, procedure, default)


def sql_repositories():
    """The production bundle, keyword arguments ready for the services."""
    return {
        'rules': SqlRuleStore(),
        'commissions': SqlCommissionStore(),
        'payments': SqlPaymentStore(),
        'appointments': SqlAppointmentBook(),
        'staff': SqlStaffDirectory(),
        'prices': SqlPriceTable(),
    }
