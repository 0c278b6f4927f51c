# ==============================================================================
# clinic_commissions/calculator/amount.py
# ------------------------------------------------------------------------------
# Monetary calculation for a winning rule, and the procedure price lookup.
# ==============================================================================

import logging
from decimal import Decimal, ROUND_HALF_UP

from clinic_commissions.calculator.schema import CalculationType, CalculationUnit

CENTS = Decimal('0.01')
HUNDRED = Decimal('100')


def to_decimal(value):
    """Converts ints, floats and numeric strings without float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value, places=2):
    return to_decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def calculate_amount(rule, service_value, quantity=1):
    """
    Computes the commission a rule yields.

    - percentage: service_value * value / 100
    - fixed per appointment: value (quantity ignored)
    - fixed per ml/arch/unit/session: value * quantity

    service_value is assumed validated by the caller; quantity must be a
    positive integer.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValueError(f"Quantity must be a positive integer, got {quantity!r}.")

    rule_value = to_decimal(rule.value)
    if rule.calculation_type == CalculationType.PERCENTAGE:
        amount = to_decimal(service_value) * rule_value / HUNDRED
    elif rule.calculation_unit == CalculationUnit.APPOINTMENT:
        amount = rule_value
    else:
        amount = rule_value * quantity
    return quantize(amount)


def describe_rule(rule):
    """Short human-readable description, e.g. '30% do valor' or 'R$ 25.00/ml'."""
    if rule is None:
        return 'Sem regra de comissão aplicável'
    if rule.calculation_type == CalculationType.PERCENTAGE:
        return f"{to_decimal(rule.value).normalize():f}% do valor"
    unit = '' if rule.calculation_unit == CalculationUnit.APPOINTMENT else f"/{rule.calculation_unit.value}"
    return f"R$ {quantize(rule.value)}{unit}"


def procedure_price(entries, clinic_id, procedure, default):
    """
    Looks up a procedure price with the clinic's tolerance for incomplete
    price catalogs:

    1. exact (clinic, name) match among active entries;
    2. otherwise the first active entry, of any clinic, whose name contains
       the procedure name case-insensitively;
    3. otherwise `default`.
    """
    active = [e for e in entries if e.is_active]
    for entry in active:
        if entry.clinic_id == clinic_id and entry.name == procedure:
            return quantize(entry.price)

    needle = (procedure or '').lower()
    for entry in active:
        if needle in entry.name.lower():
            logging.warning(
                f"No exact price for '{procedure}' in clinic '{clinic_id}'. "
                f"Using similar entry '{entry.name}' ({entry.clinic_id})."
            )
            return quantize(entry.price)

    logging.warning(f"No price entry for '{procedure}' in clinic '{clinic_id}'. Using default {default}.")
    return quantize(default)
