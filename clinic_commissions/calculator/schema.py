# ==============================================================================
# clinic_commissions/calculator/schema.py
# ------------------------------------------------------------------------------
# Closed enumerations and value types shared by the resolver, the calculator,
# the guard and the generator. This module is the single source of truth for
# every status, type and unit the engine switches on.
# ==============================================================================

import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

WILDCARD = 'all'
GENERAL_BENEFICIARY = 'general'


class LabeledEnum(str, enum.Enum):
    """String enum whose members carry a display label for the clinic UI."""

    def __new__(cls, value, label):
        obj = str.__new__(cls, value)
        obj._value_ = value
        obj.label = label
        return obj

    def __str__(self):
        return self.value

    @classmethod
    def choices(cls):
        return [(member.value, member.label) for member in cls]


class BeneficiaryType(LabeledEnum):
    PROFESSIONAL = ('professional', 'Profissional')
    SELLER = ('seller', 'Vendedor')
    RECEPTION = ('reception', 'Recepção')


class CalculationType(LabeledEnum):
    PERCENTAGE = ('percentage', 'Percentual (%)')
    FIXED = ('fixed', 'Valor Fixo (R$)')


class CalculationUnit(LabeledEnum):
    APPOINTMENT = ('appointment', 'Por Atendimento')
    ML = ('ml', 'Por mL')
    ARCH = ('arch', 'Por Arcada')
    UNIT = ('unit', 'Por Unidade')
    SESSION = ('session', 'Por Sessão')


class DayOfWeek(LabeledEnum):
    # Declared in calendar order, Sunday first.
    SUNDAY = ('sunday', 'Domingo')
    MONDAY = ('monday', 'Segunda-feira')
    TUESDAY = ('tuesday', 'Terça-feira')
    WEDNESDAY = ('wednesday', 'Quarta-feira')
    THURSDAY = ('thursday', 'Quinta-feira')
    FRIDAY = ('friday', 'Sexta-feira')
    SATURDAY = ('saturday', 'Sábado')
    ALL = ('all', 'Todos os dias')

    @classmethod
    def from_date(cls, value):
        """Sunday=0 ... Saturday=6, on the date's own calendar day."""
        return CALENDAR_DAYS[value.isoweekday() % 7]


CALENDAR_DAYS = [
    DayOfWeek.SUNDAY, DayOfWeek.MONDAY, DayOfWeek.TUESDAY, DayOfWeek.WEDNESDAY,
    DayOfWeek.THURSDAY, DayOfWeek.FRIDAY, DayOfWeek.SATURDAY,
]


class CommissionStatus(LabeledEnum):
    PENDING = ('pending', 'Pendente')
    PAID = ('paid', 'Pago')
    CANCELLED = ('cancelled', 'Cancelado')


class PaymentStatus(LabeledEnum):
    PENDING = ('pending', 'Pendente')
    CONFIRMED = ('confirmed', 'Confirmado')
    CANCELLED = ('cancelled', 'Cancelado')


class PaymentMethod(LabeledEnum):
    CASH = ('cash', 'Dinheiro')
    CREDIT = ('credit', 'Cartão de Crédito')
    DEBIT = ('debit', 'Cartão de Débito')
    PIX = ('pix', 'PIX')
    VOUCHER = ('voucher', 'Voucher/Convênio')
    SPLIT = ('split', 'Pagamento Misto')


class AppointmentStatus(LabeledEnum):
    SCHEDULED = ('scheduled', 'Agendado')
    COMPLETED = ('completed', 'Concluído')


class Outcome(LabeledEnum):
    VALID = ('valid', 'Válido')
    DUPLICATE = ('duplicate', 'Este atendimento já possui comissão calculada.')
    NO_APPLICABLE_RULE = (
        'no_applicable_rule',
        'Nenhuma regra de comissão válida encontrada para este atendimento.',
    )
    INVALID_VALUE = ('invalid_value', 'Valor de serviço ou quantidade inválidos.')
    ALREADY_PAID = ('already_paid', 'Não é possível alterar uma comissão já paga.')


# --- Value types ---------------------------------------------------------------

@dataclass(frozen=True)
class AppointmentContext:
    """What the engine needs to know about the appointment being paid for."""
    appointment_id: str
    clinic_id: str
    professional_id: str
    procedure: str
    date: date
    seller_id: Optional[str] = None
    professional_name: Optional[str] = None
    lead_source: Optional[str] = None


@dataclass(frozen=True)
class GenerationRequest:
    payment_id: Optional[int]
    context: AppointmentContext
    service_value: object
    quantity: object = 1
    reception_id: Optional[str] = None
    proceed_without_rule: bool = False


@dataclass(frozen=True)
class GuardResult:
    outcome: Outcome
    message: Optional[str] = None

    @property
    def is_valid(self):
        return self.outcome is Outcome.VALID


@dataclass
class PlannedCommission:
    """A commission the generator intends to persist, before it has an id."""
    rule: object
    beneficiary_type: BeneficiaryType
    beneficiary_id: str
    beneficiary_key: str
    beneficiary_name: str
    amount: Decimal


@dataclass
class GenerationResult:
    outcome: Outcome
    commissions: List[object] = field(default_factory=list)
    planned: List[PlannedCommission] = field(default_factory=list)
    total: Decimal = Decimal('0.00')
    message: Optional[str] = None
    skipped_groups: List[str] = field(default_factory=list)

    @property
    def created(self):
        return len(self.commissions)

    def to_dict(self):
        return {
            'outcome': self.outcome.value,
            'message': self.message,
            'created': self.created,
            'total': str(self.total),
            'commissions': [c.to_dict() for c in self.commissions],
            'planned': [
                {
                    'rule_id': p.rule.id,
                    'beneficiary_type': p.beneficiary_type.value,
                    'beneficiary_id': p.beneficiary_id,
                    'beneficiary_name': p.beneficiary_name,
                    'amount': str(p.amount),
                }
                for p in self.planned
            ],
            'skipped_groups': list(self.skipped_groups),
        }
