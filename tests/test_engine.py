# tests/test_engine.py

import threading
from decimal import Decimal

import pytest

from clinic_commissions.calculator.engine import CommissionGenerator
from clinic_commissions.calculator.schema import (
    BeneficiaryType, CommissionStatus, Outcome, PaymentStatus,
)
from clinic_commissions.repository.base import StorageUnavailableError
from clinic_commissions.repository.memory import InMemoryCommissionStore

from conftest import SATURDAY, context, request_for


@pytest.fixture
def generator(repos):
    return CommissionGenerator(repos['rules'], repos['commissions'], repos['staff'])


def _by_type(commissions):
    return {c.beneficiary_type: c for c in commissions}


# --- CommissionGenerator ---

def test_generates_professional_and_seller_commissions(clinic1, generator):
    result = generator.generate(request_for(context(lead_source='instagram')))

    assert result.outcome is Outcome.VALID
    assert result.created == 2
    rows = _by_type(result.commissions)
    professional = rows[BeneficiaryType.PROFESSIONAL]
    seller = rows[BeneficiaryType.SELLER]

    assert professional.amount == Decimal('1575.00')
    assert professional.rule_id == clinic1['implant'].id
    assert professional.beneficiary_id == 'prof1'
    assert professional.beneficiary_name == 'Dr. Carlos Mendes'
    assert professional.status is CommissionStatus.PENDING
    assert professional.lead_source == 'instagram'

    assert seller.amount == Decimal('175.00')
    assert seller.beneficiary_id == 'staff2'
    assert seller.beneficiary_name == 'Carlos Vendas'
    assert result.total == Decimal('1750.00')


def test_no_seller_means_no_seller_commission(clinic1, generator):
    result = generator.generate(request_for(context(procedure='Limpeza Dental', seller_id=None),
                                            service_value='200.00'))

    assert result.outcome is Outcome.VALID
    assert [c.beneficiary_type for c in result.commissions] == [BeneficiaryType.PROFESSIONAL]
    assert result.commissions[0].amount == Decimal('60.00')


def test_reception_commission_uses_caller_supplied_reception(clinic1, make_rule, generator):
    make_rule(beneficiary_type='reception', calculation_type='fixed', value='10')
    result = generator.generate(request_for(context(), reception_id='staff1'))

    reception = _by_type(result.commissions)[BeneficiaryType.RECEPTION]
    assert reception.beneficiary_id == 'staff1'
    assert reception.beneficiary_name == 'Ana Souza'
    assert reception.amount == Decimal('10.00')


def test_snapshot_survives_rule_edits(repos, clinic1, generator):
    result = generator.generate(request_for(context()))
    professional = _by_type(result.commissions)[BeneficiaryType.PROFESSIONAL]

    repos['rules'].update(clinic1['implant'].id, value='10')
    assert professional.rule_value == Decimal('45')
    assert professional.amount == Decimal('1575.00')


def test_generating_twice_leaves_one_row_per_group(repos, clinic1, generator):
    first = generator.generate(request_for(context()))
    second = generator.generate(request_for(context()))

    assert first.created == 2
    assert second.outcome is Outcome.DUPLICATE
    assert second.created == 0
    assert len(repos['commissions'].all()) == 2


def test_existing_professional_commission_blocks_regeneration(repos, clinic1, generator):
    generator.generate(request_for(context(seller_id=None)))
    result = generator.generate(request_for(context(seller_id='staff2')))
    assert result.outcome is Outcome.DUPLICATE
    assert len(repos['commissions'].all()) == 1


def test_no_professional_rule_blocks_generation(repos, make_rule, generator):
    make_rule(beneficiary_type='seller', value='5')
    result = generator.generate(request_for(context()))

    assert result.outcome is Outcome.NO_APPLICABLE_RULE
    assert result.created == 0
    assert repos['commissions'].all() == []


def test_acknowledged_no_rule_still_pays_seller(repos, make_rule, generator):
    make_rule(beneficiary_type='seller', value='5')
    result = generator.generate(request_for(context(), proceed_without_rule=True))

    assert result.outcome is Outcome.VALID
    assert [c.beneficiary_type for c in result.commissions] == [BeneficiaryType.SELLER]


@pytest.mark.parametrize('service_value, quantity', [(-1, 1), ('abc', 1), (100, 0), (100, 1.5)])
def test_invalid_input_writes_nothing(repos, clinic1, generator, service_value, quantity):
    result = generator.generate(request_for(context(), service_value=service_value, quantity=quantity))
    assert result.outcome is Outcome.INVALID_VALUE
    assert repos['commissions'].all() == []


def test_fixed_rules_use_quantity(repos, make_rule, generator):
    make_rule(procedure='Toxina (ml)', calculation_type='fixed', calculation_unit='ml', value='25')
    make_rule(day_of_week='saturday', calculation_type='fixed', value='50', procedure='Retorno')

    ml = generator.generate(request_for(context('apt-ml', procedure='Toxina (ml)'), service_value=0, quantity=4))
    sat = generator.generate(request_for(context('apt-sat', procedure='Retorno', on=SATURDAY), quantity=7))

    assert ml.commissions[0].amount == Decimal('100.00')
    assert sat.commissions[0].amount == Decimal('50.00')


def test_preview_writes_nothing(repos, clinic1, generator):
    result = generator.preview(request_for(context()))
    assert result.outcome is Outcome.VALID
    assert [p.amount for p in result.planned] == [Decimal('1575.00'), Decimal('175.00')]
    assert repos['commissions'].all() == []


def test_storage_failure_is_atomic(repos, clinic1, generator):
    repos['commissions'].fail_next_write = True
    with pytest.raises(StorageUnavailableError):
        generator.generate(request_for(context()))
    assert repos['commissions'].all() == []


class StaleReadCommissionStore(InMemoryCommissionStore):
    """Reads never see existing rows, as when two generations interleave."""

    def has_active(self, appointment_id, beneficiary_type=None):
        return False

    def active_group_keys(self, appointment_id):
        return set()


def test_uniqueness_violation_at_insert_reports_duplicate(repos, clinic1):
    store = StaleReadCommissionStore()
    generator = CommissionGenerator(repos['rules'], store, repos['staff'])

    assert generator.generate(request_for(context())).created == 2
    result = generator.generate(request_for(context()))

    assert result.outcome is Outcome.DUPLICATE
    assert result.created == 0
    assert len(store.all()) == 2


# --- PaymentWorkflow ---

@pytest.fixture
def workflow(repos, clinic1):
    from clinic_commissions.billing import PaymentWorkflow

    repos['appointments'].add(context('apt1', lead_source='instagram'))
    repos['appointments'].add(context('apt2', procedure='Limpeza Dental', seller_id=None))
    return PaymentWorkflow.from_repositories(repos)


def test_open_payment_uses_price_table(repos, workflow):
    payment = workflow.open_payment('clinic1', 'apt1')

    assert payment.status is PaymentStatus.PENDING
    assert payment.total_amount == Decimal('3500.00')
    assert 'apt1' in repos['appointments'].completed


def test_open_payment_rejects_unknown_appointment(workflow):
    from clinic_commissions.billing import AppointmentNotFoundError

    with pytest.raises(AppointmentNotFoundError):
        workflow.open_payment('clinic1', 'missing')
    with pytest.raises(AppointmentNotFoundError):
        workflow.open_payment('clinic2', 'apt1')


def test_confirm_generates_once(repos, workflow):
    payment = workflow.open_payment('clinic1', 'apt1')

    first = workflow.confirm(payment.id, 'user1')
    assert first.confirmed
    assert first.generation.created == 2
    assert first.warning is None
    assert payment.status is PaymentStatus.CONFIRMED
    assert payment.confirmed_by == 'user1'

    second = workflow.confirm(payment.id, 'user1')
    assert second.already_confirmed
    assert second.generation is None
    assert len(repos['commissions'].all()) == 2


def test_confirm_uses_paid_amount(repos, workflow):
    payment = workflow.open_payment('clinic1', 'apt2')
    result = workflow.confirm(payment.id, 'user1', paid_amount='180.00')

    assert payment.paid_amount == Decimal('180.00')
    assert result.generation.commissions[0].amount == Decimal('54.00')


def test_generation_failure_keeps_payment_confirmed(repos, workflow):
    payment = workflow.open_payment('clinic1', 'apt1')
    repos['commissions'].fail_next_write = True

    result = workflow.confirm(payment.id, 'user1')
    assert result.confirmed
    assert result.warning
    assert payment.status is PaymentStatus.CONFIRMED
    assert repos['commissions'].all() == []

    retry = workflow.retry_generation(payment.id, 'user1')
    assert retry.generation.created == 2

    again = workflow.retry_generation(payment.id, 'user1')
    assert again.generation.outcome is Outcome.DUPLICATE
    assert len(repos['commissions'].all()) == 2


def test_retry_requires_confirmed_payment(workflow):
    payment = workflow.open_payment('clinic1', 'apt1')
    result = workflow.retry_generation(payment.id, 'user1')
    assert result.generation.outcome is Outcome.INVALID_VALUE


def test_missing_rule_blocks_confirmation_until_acknowledged(repos, workflow, clinic1):
    repos['rules'].set_active(clinic1['general'].id, False)
    payment = workflow.open_payment('clinic1', 'apt2')

    blocked = workflow.confirm(payment.id, 'user1')
    assert not blocked.confirmed
    assert blocked.generation.outcome is Outcome.NO_APPLICABLE_RULE
    assert payment.status is PaymentStatus.PENDING

    acknowledged = workflow.confirm(payment.id, 'manager1', proceed_without_rule=True)
    assert acknowledged.confirmed
    assert acknowledged.generation.created == 0
    assert payment.no_rule_acknowledged_by == 'manager1'
    assert payment.no_rule_acknowledged_at is not None


@pytest.fixture
def seller_only(repos, clinic1):
    repos['rules'].set_active(clinic1['general'].id, False)
    repos['rules'].set_active(clinic1['implant'].id, False)


def test_acknowledgement_survives_failed_generation(repos, workflow, seller_only):
    payment = workflow.open_payment('clinic1', 'apt1')
    repos['commissions'].fail_next_write = True

    result = workflow.confirm(payment.id, 'manager1', proceed_without_rule=True)
    assert result.confirmed
    assert result.warning
    assert payment.no_rule_acknowledged_by == 'manager1'
    assert repos['commissions'].all() == []

    retry = workflow.retry_generation(payment.id, 'user1')
    assert retry.generation.outcome is Outcome.VALID
    assert [c.beneficiary_type for c in retry.generation.commissions] == [BeneficiaryType.SELLER]
    assert retry.generation.commissions[0].amount == Decimal('175.00')

    again = workflow.retry_generation(payment.id, 'user1')
    assert again.generation.outcome is Outcome.DUPLICATE
    assert len(repos['commissions'].all()) == 1


def test_retry_after_acknowledged_generation_is_a_noop(repos, workflow, seller_only):
    payment = workflow.open_payment('clinic1', 'apt1')
    assert workflow.confirm(payment.id, 'manager1', proceed_without_rule=True).generation.created == 1

    retry = workflow.retry_generation(payment.id, 'user1')
    assert retry.generation.outcome is Outcome.DUPLICATE
    assert retry.generation.created == 0
    assert len(repos['commissions'].all()) == 1


def test_acknowledgement_given_on_retry_is_recorded(repos, workflow, seller_only, make_rule):
    general = make_rule(value='30')
    payment = workflow.open_payment('clinic1', 'apt1')
    workflow.confirm(payment.id, 'user1')
    assert payment.no_rule_acknowledged_by is None

    # The only professional rule disappears before the retry.
    repos['rules'].set_active(general.id, False)
    repos['commissions'].cancel_pending_for_payment(payment.id, None)

    blocked = workflow.retry_generation(payment.id, 'user1')
    assert blocked.generation.outcome is Outcome.NO_APPLICABLE_RULE

    retry = workflow.retry_generation(payment.id, 'manager1', proceed_without_rule=True)
    assert retry.generation.outcome is Outcome.VALID
    assert payment.no_rule_acknowledged_by == 'manager1'


def test_invalid_quantity_does_not_confirm(workflow):
    payment = workflow.open_payment('clinic1', 'apt1')
    result = workflow.confirm(payment.id, 'user1', quantity=0)

    assert not result.confirmed
    assert result.generation.outcome is Outcome.INVALID_VALUE
    assert payment.status is PaymentStatus.PENDING


def test_cancel_pending_payment(repos, workflow):
    payment = workflow.open_payment('clinic1', 'apt1')
    result = workflow.cancel(payment.id, 'user1')

    assert result.cancelled
    assert payment.status is PaymentStatus.CANCELLED
    assert payment.cancelled_by == 'user1'
    assert not workflow.confirm(payment.id, 'user1').confirmed


def test_confirmed_payment_is_terminal(repos, workflow):
    payment = workflow.open_payment('clinic1', 'apt1')
    workflow.confirm(payment.id, 'user1')

    result = workflow.cancel(payment.id, 'user1')
    assert not result.cancelled
    assert payment.status is PaymentStatus.CONFIRMED
    assert all(c.status is CommissionStatus.PENDING for c in repos['commissions'].all())


def test_cancelling_cancels_pending_but_never_paid_commissions(repos, workflow):
    from clinic_commissions.payroll import PayrollService

    payment = workflow.open_payment('clinic1', 'apt1')
    store = repos['commissions']
    generated = workflow.generator.generate(request_for(context(), payment_id=payment.id))
    professional, seller = generated.commissions
    PayrollService(store).mark_paid(professional.id, 'payroll1')

    result = workflow.cancel(payment.id, 'user1')

    assert result.cancelled_commissions == 1
    assert professional.status is CommissionStatus.PAID
    assert seller.status is CommissionStatus.CANCELLED


def test_unknown_payment(workflow):
    from clinic_commissions.billing import PaymentNotFoundError

    with pytest.raises(PaymentNotFoundError):
        workflow.confirm(999, 'user1')


def test_concurrent_confirms_generate_once(repos, workflow):
    payment = workflow.open_payment('clinic1', 'apt1')
    barrier = threading.Barrier(8)
    results = []

    def confirm():
        barrier.wait()
        results.append(workflow.confirm(payment.id, 'user1'))

    threads = [threading.Thread(target=confirm) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.confirmed) == 1
    assert len(repos['commissions'].all()) == 2


def test_two_payments_for_one_appointment_generate_once(repos, workflow):
    first = workflow.open_payment('clinic1', 'apt1')
    second = workflow.open_payment('clinic1', 'apt1')

    workflow.confirm(first.id, 'user1')
    result = workflow.confirm(second.id, 'user1')

    assert result.confirmed
    assert result.generation.outcome is Outcome.DUPLICATE
    assert result.warning
    assert len(repos['commissions'].all()) == 2


# --- Payroll ---

@pytest.fixture
def generated(repos, clinic1, generator):
    return generator.generate(request_for(context())).commissions


def test_mark_paid(repos, generated):
    from clinic_commissions.payroll import PayrollService

    payroll = PayrollService(repos['commissions'])
    result = payroll.mark_paid(generated[0].id, 'payroll1')

    assert result.ok
    assert generated[0].status is CommissionStatus.PAID
    assert generated[0].paid_by == 'payroll1'
    assert generated[0].paid_at is not None
    assert payroll.mark_paid(generated[0].id, 'payroll2').outcome is Outcome.ALREADY_PAID
    assert generated[0].paid_by == 'payroll1'


def test_paid_commission_cannot_be_edited_or_deleted(repos, generated):
    from clinic_commissions.payroll import PayrollService

    payroll = PayrollService(repos['commissions'])
    payroll.mark_paid(generated[0].id, 'payroll1')

    assert payroll.update(generated[0].id, notes='ajuste', amount='1.00').outcome is Outcome.ALREADY_PAID
    assert payroll.delete(generated[0].id).outcome is Outcome.ALREADY_PAID
    assert generated[0].amount == Decimal('1575.00')
    assert repos['commissions'].get(generated[0].id) is generated[0]


def test_pending_commission_can_be_edited_and_deleted(repos, generated):
    from clinic_commissions.payroll import PayrollService

    payroll = PayrollService(repos['commissions'])
    result = payroll.update(generated[1].id, notes='ajuste manual', amount='150.555')

    assert result.ok
    assert generated[1].notes == 'ajuste manual'
    assert generated[1].amount == Decimal('150.56')
    assert payroll.update(generated[1].id, amount='-5').outcome is Outcome.INVALID_VALUE

    assert payroll.delete(generated[1].id).ok
    assert repos['commissions'].get(generated[1].id) is None


def test_bulk_payment_reports_each_row(repos, generated):
    from clinic_commissions.payroll import PayrollService

    payroll = PayrollService(repos['commissions'])
    payroll.mark_paid(generated[0].id, 'payroll1')

    results = payroll.mark_paid_bulk([generated[0].id, generated[1].id, 999], 'payroll1')
    assert [r.outcome for r in results] == [Outcome.ALREADY_PAID, Outcome.VALID, Outcome.INVALID_VALUE]
