# ==============================================================================
# clinic_commissions/models.py
# ------------------------------------------------------------------------------
# Defines the database schema using SQLAlchemy ORM models.
# ==============================================================================

from datetime import datetime
from decimal import Decimal
import json

from clinic_commissions import db
from clinic_commissions.calculator.schema import (
    AppointmentStatus, BeneficiaryType, CalculationType, CalculationUnit,
    CommissionStatus, DayOfWeek, GENERAL_BENEFICIARY, PaymentMethod,
    PaymentStatus, WILDCARD,
)


def _enum_column(enum_cls, name, **kwargs):
    """Enum column that stores the lowercase value, not the member name."""
    return db.Column(
        db.Enum(enum_cls, name=name, native_enum=False, length=32,
                values_callable=lambda members: [m.value for m in members]),
        **kwargs
    )


def _money(value):
    return str(value) if value is not None else None


def _timestamp(value):
    return value.isoformat() if value is not None else None


class CommissionRule(db.Model):
    """
    How much a beneficiary earns under a condition. Rules are scoped to one
    clinic and compete by priority inside their beneficiary group.
    The priority is derived from the filters and must never be hand-entered.
    """
    __tablename__ = 'commission_rule'
    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.String(64), nullable=False, index=True)
    beneficiary_type = _enum_column(BeneficiaryType, 'beneficiary_type', nullable=False)

    # Filters. WILDCARD ('all') matches any value of the dimension.
    professional_id = db.Column(db.String(64), nullable=False, default=WILDCARD)
    beneficiary_id = db.Column(db.String(64), nullable=True)
    beneficiary_name = db.Column(db.String(128), nullable=True)
    procedure = db.Column(db.String(128), nullable=False, default=WILDCARD)
    day_of_week = _enum_column(DayOfWeek, 'day_of_week', nullable=False, default=DayOfWeek.ALL)

    calculation_type = _enum_column(CalculationType, 'calculation_type', nullable=False)
    calculation_unit = _enum_column(CalculationUnit, 'calculation_unit', nullable=False,
                                    default=CalculationUnit.APPOINTMENT)
    value = db.Column(db.Numeric(12, 2), nullable=False)
    priority = db.Column(db.Integer, nullable=False, default=1, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    commissions = db.relationship('Commission', backref='rule', lazy='dynamic')

    def __repr__(self):
        return (f'<CommissionRule {self.id}: {self.beneficiary_type} '
                f'{self.professional_id}/{self.procedure}/{self.day_of_week} p={self.priority}>')

    @property
    def group_key(self):
        """Resolution bucket: beneficiary type plus a specific person or 'general'."""
        return f'{self.beneficiary_type.value}:{self.beneficiary_id or GENERAL_BENEFICIARY}'

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'beneficiary_type': self.beneficiary_type.value,
            'professional_id': self.professional_id,
            'beneficiary_id': self.beneficiary_id,
            'beneficiary_name': self.beneficiary_name,
            'procedure': self.procedure,
            'day_of_week': self.day_of_week.value,
            'calculation_type': self.calculation_type.value,
            'calculation_unit': self.calculation_unit.value,
            'value': _money(self.value),
            'priority': self.priority,
            'is_active': self.is_active,
            'notes': self.notes,
            'created_at': _timestamp(self.created_at),
            'updated_at': _timestamp(self.updated_at),
        }


class Commission(db.Model):
    """
    A computed, owed (or already paid) amount. Every calculation input is a
    snapshot taken at generation time; later rule or staff edits never change it.
    """
    __tablename__ = 'commission'
    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.String(64), nullable=False, index=True)
    appointment_id = db.Column(db.String(64), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment.id'), nullable=True, index=True)
    rule_id = db.Column(db.Integer, db.ForeignKey('commission_rule.id'), nullable=True)

    beneficiary_type = _enum_column(BeneficiaryType, 'beneficiary_type', nullable=False)
    beneficiary_id = db.Column(db.String(64), nullable=False, index=True)
    # The winning rule's specific beneficiary, or 'general'. Part of the unique key.
    beneficiary_key = db.Column(db.String(64), nullable=False, default=GENERAL_BENEFICIARY)
    beneficiary_name = db.Column(db.String(128), nullable=True)
    professional_id = db.Column(db.String(64), nullable=True)
    lead_source = db.Column(db.String(64), nullable=True)

    procedure_name = db.Column(db.String(128), nullable=False)
    service_value = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    calculation_type = _enum_column(CalculationType, 'calculation_type', nullable=False)
    calculation_unit = _enum_column(CalculationUnit, 'calculation_unit', nullable=False)
    rule_value = db.Column(db.Numeric(12, 2), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)

    status = _enum_column(CommissionStatus, 'commission_status', nullable=False,
                          default=CommissionStatus.PENDING, index=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, index=True, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    paid_by = db.Column(db.String(64), nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    # At most one non-cancelled commission per (appointment, beneficiary group).
    # Enforced here so concurrent generations cannot both insert.
    __table_args__ = (
        db.Index(
            'uq_commission_active_group',
            'appointment_id', 'beneficiary_type', 'beneficiary_key',
            unique=True,
            sqlite_where=db.text("status != 'cancelled'"),
            postgresql_where=db.text("status != 'cancelled'"),
        ),
    )

    def __repr__(self):
        return f'<Commission {self.id}: {self.beneficiary_type} {self.beneficiary_id} {self.amount} ({self.status})>'

    @property
    def is_paid(self):
        return self.status is CommissionStatus.PAID

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'appointment_id': self.appointment_id,
            'payment_id': self.payment_id,
            'rule_id': self.rule_id,
            'beneficiary_type': self.beneficiary_type.value,
            'beneficiary_id': self.beneficiary_id,
            'beneficiary_key': self.beneficiary_key,
            'beneficiary_name': self.beneficiary_name,
            'professional_id': self.professional_id,
            'lead_source': self.lead_source,
            'procedure_name': self.procedure_name,
            'service_value': _money(self.service_value),
            'quantity': self.quantity,
            'calculation_type': self.calculation_type.value,
            'calculation_unit': self.calculation_unit.value,
            'rule_value': _money(self.rule_value),
            'amount': _money(self.amount),
            'status': self.status.value,
            'notes': self.notes,
            'created_at': _timestamp(self.created_at),
            'paid_at': _timestamp(self.paid_at),
            'paid_by': self.paid_by,
            'cancelled_at': _timestamp(self.cancelled_at),
        }


class Payment(db.Model):
    """
    Payment for a completed appointment. Owned by billing; the engine only
    reads it and drives the pending -> confirmed | cancelled transitions.
    """
    __tablename__ = 'payment'
    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.String(64), nullable=False, index=True)
    appointment_id = db.Column(db.String(64), nullable=True, index=True)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    paid_amount = db.Column(db.Numeric(12, 2), nullable=True)
    payment_method = _enum_column(PaymentMethod, 'payment_method', nullable=False,
                                  default=PaymentMethod.CASH)
    status = _enum_column(PaymentStatus, 'payment_status', nullable=False,
                          default=PaymentStatus.PENDING, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    description = db.Column(db.String(256), nullable=True)

    confirmed_at = db.Column(db.DateTime, nullable=True)
    confirmed_by = db.Column(db.String(64), nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancelled_by = db.Column(db.String(64), nullable=True)

    # Human acknowledgement to complete without a professional commission rule.
    no_rule_acknowledged_by = db.Column(db.String(64), nullable=True)
    no_rule_acknowledged_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, index=True, default=datetime.utcnow)

    commissions = db.relationship('Commission', backref='payment', lazy='dynamic')

    def __repr__(self):
        return f'<Payment {self.id}: {self.total_amount} ({self.status})>'

    def to_dict(self):
        return {
            'id': self.id,
            'clinic_id': self.clinic_id,
            'appointment_id': self.appointment_id,
            'total_amount': _money(self.total_amount),
            'paid_amount': _money(self.paid_amount),
            'payment_method': self.payment_method.value,
            'status': self.status.value,
            'quantity': self.quantity,
            'description': self.description,
            'confirmed_at': _timestamp(self.confirmed_at),
            'confirmed_by': self.confirmed_by,
            'cancelled_at': _timestamp(self.cancelled_at),
            'cancelled_by': self.cancelled_by,
            'no_rule_acknowledged_by': self.no_rule_acknowledged_by,
            'no_rule_acknowledged_at': _timestamp(self.no_rule_acknowledged_at),
            'created_at': _timestamp(self.created_at),
        }


class Appointment(db.Model):
    """The slice of the scheduling record the commission engine reads."""
    __tablename__ = 'appointment'
    id = db.Column(db.String(64), primary_key=True)
    clinic_id = db.Column(db.String(64), nullable=False, index=True)
    professional_id = db.Column(db.String(64), nullable=False)
    professional_name = db.Column(db.String(128), nullable=True)
    procedure_name = db.Column(db.String(128), nullable=False)
    date = db.Column(db.Date, nullable=False)
    seller_id = db.Column(db.String(64), nullable=True)
    lead_source = db.Column(db.String(64), nullable=True)
    status = _enum_column(AppointmentStatus, 'appointment_status', nullable=False,
                          default=AppointmentStatus.SCHEDULED)

    def __repr__(self):
        return f'<Appointment {self.id}: {self.procedure_name} on {self.date}>'


class StaffMember(db.Model):
    """Staff directory entry. Only used to snapshot a display name."""
    __tablename__ = 'staff_member'
    id = db.Column(db.String(64), primary_key=True)
    clinic_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    role = _enum_column(BeneficiaryType, 'staff_role', nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f'<StaffMember {self.id}: {self.name} ({self.role})>'


class ProcedurePrice(db.Model):
    """Procedure price table entry, looked up by (clinic, exact name)."""
    __tablename__ = 'procedure_price'
    id = db.Column(db.Integer, primary_key=True)
    clinic_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    category = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (db.UniqueConstraint('clinic_id', 'name', name='_clinic_procedure_uc'),)

    def __repr__(self):
        return f'<ProcedurePrice {self.clinic_id}/{self.name}: {self.price}>'


class AppSetting(db.Model):
    """
    Stores key-value pairs for business settings that administrators may
    change at runtime without a deploy.
    """
    __tablename__ = 'app_setting'
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(128), unique=True, nullable=False, index=True)
    value = db.Column(db.String(256), nullable=False)
    description = db.Column(db.String(512)) # For hints in the admin panel
    value_type = db.Column(db.String(32), default='string') # e.g., 'decimal', 'int', 'bool', 'json'

    def __repr__(self):
        return f'<AppSetting {self.key}: {self.value}>'

    def get_value(self):
        """Casts the string value to its correct Python type."""
        if self.value_type == 'decimal':
            return Decimal(self.value)
        if self.value_type == 'int':
            return int(self.value)
        if self.value_type == 'bool':
            return self.value.strip().lower() in ('1', 'true', 'yes', 'sim')
        if self.value_type == 'json':
            return json.loads(self.value)
        return self.value
