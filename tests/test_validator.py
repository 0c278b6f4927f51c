# tests/test_validator.py

from decimal import Decimal

import pytest

from clinic_commissions.calculator.schema import BeneficiaryType, CommissionStatus, Outcome
from clinic_commissions.calculator.validator import (
    GenerationGuard, parse_service_value, validate_commission_delete,
    validate_commission_edit, validate_generation_input,
)
from clinic_commissions.models import Commission


def _commission_record(appointment_id='apt1', beneficiary_type=BeneficiaryType.PROFESSIONAL, key='general'):
    return {
        'clinic_id': 'clinic1', 'appointment_id': appointment_id, 'beneficiary_type': beneficiary_type,
        'beneficiary_id': 'prof1', 'beneficiary_key': key, 'procedure_name': 'Retorno',
        'service_value': Decimal('80.00'), 'quantity': 1, 'calculation_type': 'percentage',
        'calculation_unit': 'appointment', 'rule_value': Decimal('30'), 'amount': Decimal('24.00'),
    }


@pytest.mark.parametrize('raw, expected', [
    (200, Decimal('200')),
    ('1,500.50', Decimal('1500.50')),
    (Decimal('0'), Decimal('0')),
    (-1, None),
    ('abc', None),
    (None, None),
    (True, None),
    (float('nan'), None),
    ('Infinity', None),
])
def test_parse_service_value(raw, expected):
    assert parse_service_value(raw) == expected


def test_valid_input():
    assert validate_generation_input('200.00', 1).is_valid


@pytest.mark.parametrize('service_value, quantity', [
    (-10, 1), ('abc', 1), (None, 1), (100, 0), (100, -3), (100, 2.5), (100, True),
])
def test_invalid_input(service_value, quantity):
    result = validate_generation_input(service_value, quantity)
    assert result.outcome is Outcome.INVALID_VALUE
    assert result.message


def test_guard_valid_with_professional_winner(repos, make_rule):
    guard = GenerationGuard(repos['commissions'])
    assert guard.evaluate('apt1', [make_rule()]).is_valid


def test_guard_blocks_without_professional_rule(repos, make_rule):
    guard = GenerationGuard(repos['commissions'])
    seller_only = [make_rule(beneficiary_type='seller', value='5')]

    assert guard.evaluate('apt1', seller_only).outcome is Outcome.NO_APPLICABLE_RULE
    assert guard.evaluate('apt1', []).outcome is Outcome.NO_APPLICABLE_RULE
    assert guard.evaluate('apt1', seller_only, proceed_without_rule=True).is_valid


def test_no_rule_check_can_be_switched_off(repos):
    guard = GenerationGuard(repos['commissions'], require_professional_rule=False)
    assert guard.evaluate('apt1', []).is_valid


def test_duplicate_wins_over_no_rule_and_is_never_bypassed(repos):
    repos['commissions'].add_all([_commission_record()])
    guard = GenerationGuard(repos['commissions'])

    assert guard.evaluate('apt1', []).outcome is Outcome.DUPLICATE
    assert guard.evaluate('apt1', [], proceed_without_rule=True).outcome is Outcome.DUPLICATE


def test_cancelled_commission_is_not_a_duplicate(repos):
    store = repos['commissions']
    store.add_all([dict(_commission_record(), payment_id=7)])
    store.cancel_pending_for_payment(7, None)

    assert GenerationGuard(store).check_duplicate('apt1').is_valid


def test_seller_commission_alone_is_not_a_duplicate(repos):
    repos['commissions'].add_all([_commission_record(beneficiary_type=BeneficiaryType.SELLER)])
    assert GenerationGuard(repos['commissions']).check_duplicate('apt1').is_valid


@pytest.mark.parametrize('validate', [validate_commission_edit, validate_commission_delete])
def test_paid_commissions_are_immutable(validate):
    paid = Commission(status=CommissionStatus.PAID)
    assert validate(paid).outcome is Outcome.ALREADY_PAID


@pytest.mark.parametrize('validate', [validate_commission_edit, validate_commission_delete])
def test_cancelled_commissions_are_closed(validate):
    assert validate(Commission(status=CommissionStatus.CANCELLED)).outcome is Outcome.INVALID_VALUE
    assert validate(Commission(status=CommissionStatus.PENDING)).is_valid
