# ==============================================================================
# clinic_commissions/calculator/validator.py
# ------------------------------------------------------------------------------
# Checks that must pass before commissions are generated, edited or deleted.
# Every check returns a GuardResult value; none of them raise.
# ==============================================================================

import logging
from decimal import Decimal, InvalidOperation

from clinic_commissions.calculator.schema import (
    BeneficiaryType, CommissionStatus, GuardResult, Outcome,
)

VALID = GuardResult(Outcome.VALID)


def parse_service_value(value):
    """Returns the service value as a Decimal, or None if it is malformed."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).replace(',', ''))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite() or parsed < 0:
        return None
    return parsed


def validate_generation_input(service_value, quantity):
    """
    Rejects malformed caller input before any rule is resolved.

    Args:
        service_value: non-negative amount (Decimal, int, float or numeric string).
        quantity: positive integer.

    Returns:
        GuardResult: VALID or INVALID_VALUE with a human-readable message.
    """
    if parse_service_value(service_value) is None:
        return GuardResult(Outcome.INVALID_VALUE, f"Valor do serviço inválido: {service_value!r}.")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        return GuardResult(Outcome.INVALID_VALUE, f"Quantidade inválida: {quantity!r}.")
    return VALID


class GenerationGuard:
    """
    Enforces the invariants that must hold before any commission is created:

    - duplicate: a non-cancelled professional commission already exists for
      the appointment. Never overridable.
    - no_applicable_rule: no professional rule resolved. Overridable only by an
      explicit human acknowledgement (`proceed_without_rule`).

    Seller and reception rules never block; their absence just yields no
    commission for that beneficiary type.
    """

    def __init__(self, commission_store, require_professional_rule=True):
        self.commissions = commission_store
        self.require_professional_rule = require_professional_rule

    def check_duplicate(self, appointment_id):
        if self.commissions.has_active(appointment_id, BeneficiaryType.PROFESSIONAL):
            logging.warning(f"Blocked generation for appointment '{appointment_id}': professional commission exists.")
            return GuardResult(Outcome.DUPLICATE, Outcome.DUPLICATE.label)
        return VALID

    def check_rules(self, winners, proceed_without_rule=False):
        if not self.require_professional_rule:
            return VALID
        if any(rule.beneficiary_type == BeneficiaryType.PROFESSIONAL for rule in winners):
            return VALID
        if proceed_without_rule:
            logging.info("No professional rule resolved; proceeding on explicit acknowledgement.")
            return VALID
        return GuardResult(
            Outcome.NO_APPLICABLE_RULE,
            Outcome.NO_APPLICABLE_RULE.label + ' Configure uma regra antes de finalizar.',
        )

    def evaluate(self, appointment_id, winners, proceed_without_rule=False):
        """Duplicate first: it can never be bypassed, so it must win over no-rule."""
        result = self.check_duplicate(appointment_id)
        if not result.is_valid:
            return result
        return self.check_rules(winners, proceed_without_rule)


def validate_commission_edit(commission):
    """Paid commissions are immutable; cancelled ones are closed."""
    if commission.status == CommissionStatus.PAID:
        return GuardResult(Outcome.ALREADY_PAID, 'Não é possível editar uma comissão já paga.')
    if commission.status == CommissionStatus.CANCELLED:
        return GuardResult(Outcome.INVALID_VALUE, 'Não é possível editar uma comissão cancelada.')
    return VALID


def validate_commission_delete(commission):
    if commission.status == CommissionStatus.PAID:
        return GuardResult(Outcome.ALREADY_PAID, 'Não é possível excluir uma comissão já paga.')
    if commission.status == CommissionStatus.CANCELLED:
        return GuardResult(Outcome.INVALID_VALUE, 'Não é possível excluir uma comissão cancelada.')
    return VALID
