# ==============================================================================
# clinic_commissions/calculator/engine.py
# ------------------------------------------------------------------------------
# CommissionGenerator: validates, resolves, calculates and persists the
# commissions of one confirmed payment as a single atomic unit.
# ==============================================================================

import logging
from decimal import Decimal

from clinic_commissions.calculator.amount import calculate_amount, describe_rule
from clinic_commissions.calculator.resolver import resolve
from clinic_commissions.calculator.schema import (
    BeneficiaryType, CommissionStatus, GENERAL_BENEFICIARY, GenerationResult,
    Outcome, PlannedCommission,
)
from clinic_commissions.calculator.validator import (
    GenerationGuard, parse_service_value, validate_generation_input,
)
from clinic_commissions.repository.base import DuplicateCommissionError


class CommissionGenerator:
    """
    Orchestrates RuleResolver, AmountCalculator and GenerationGuard.

    Business conditions (duplicate, no rule, invalid input) come back as the
    `outcome` of a GenerationResult. Only storage failures raise
    (StorageUnavailableError), and they leave nothing written.
    """

    def __init__(self, rules, commissions, staff=None, require_professional_rule=True):
        self.rules = rules
        self.commissions = commissions
        self.staff = staff
        self.guard = GenerationGuard(commissions, require_professional_rule=require_professional_rule)

    # --- Planning ---

    def _beneficiary_id(self, rule, request):
        ctx = request.context
        if rule.beneficiary_type == BeneficiaryType.PROFESSIONAL:
            return rule.beneficiary_id or ctx.professional_id
        if rule.beneficiary_type == BeneficiaryType.SELLER:
            return ctx.seller_id
        return request.reception_id

    def _display_name(self, rule, beneficiary_id, request):
        name = None
        if self.staff is not None:
            name = self.staff.display_name(request.context.clinic_id, beneficiary_id)
        if not name and rule.beneficiary_type == BeneficiaryType.PROFESSIONAL:
            name = request.context.professional_name
        return name or rule.beneficiary_name or rule.beneficiary_type.label

    def _plan(self, request):
        ctx = request.context

        check = validate_generation_input(request.service_value, request.quantity)
        if not check.is_valid:
            logging.warning(f"Rejected generation for appointment '{ctx.appointment_id}': {check.message}")
            return GenerationResult(check.outcome, message=check.message)

        check = self.guard.check_duplicate(ctx.appointment_id)
        if not check.is_valid:
            return GenerationResult(check.outcome, message=check.message)

        winners = resolve(
            self.rules.list_rules(ctx.clinic_id),
            ctx.professional_id, ctx.clinic_id, ctx.procedure, ctx.date,
            seller_id=ctx.seller_id, reception_id=request.reception_id,
        )
        check = self.guard.check_rules(winners, request.proceed_without_rule)
        if not check.is_valid:
            logging.warning(f"Blocked generation for appointment '{ctx.appointment_id}': {check.message}")
            return GenerationResult(check.outcome, message=check.message)

        service_value = parse_service_value(request.service_value)
        existing = self.commissions.active_group_keys(ctx.appointment_id)
        result = GenerationResult(Outcome.VALID)

        for rule in winners:
            if rule.group_key in existing:
                result.skipped_groups.append(rule.group_key)
                continue
            beneficiary_id = self._beneficiary_id(rule, request)
            if not beneficiary_id:
                continue
            amount = calculate_amount(rule, service_value, request.quantity)
            result.planned.append(PlannedCommission(
                rule=rule,
                beneficiary_type=rule.beneficiary_type,
                beneficiary_id=beneficiary_id,
                beneficiary_key=rule.beneficiary_id or GENERAL_BENEFICIARY,
                beneficiary_name=self._display_name(rule, beneficiary_id, request),
                amount=amount,
            ))
            logging.debug(
                f"  - {rule.group_key}: rule {rule.id} ({describe_rule(rule)}) "
                f"-> {beneficiary_id} = {amount}"
            )

        result.total = sum((p.amount for p in result.planned), Decimal('0.00'))
        if not result.planned and result.skipped_groups:
            result.outcome = Outcome.DUPLICATE
            result.message = Outcome.DUPLICATE.label
        return result

    def _record(self, planned, request, service_value):
        ctx = request.context
        rule = planned.rule
        return {
            'clinic_id': ctx.clinic_id,
            'appointment_id': ctx.appointment_id,
            'payment_id': request.payment_id,
            'rule_id': rule.id,
            'beneficiary_type': planned.beneficiary_type,
            'beneficiary_id': planned.beneficiary_id,
            'beneficiary_key': planned.beneficiary_key,
            'beneficiary_name': planned.beneficiary_name,
            'professional_id': ctx.professional_id,
            'lead_source': ctx.lead_source,
            'procedure_name': ctx.procedure,
            'service_value': service_value,
            'quantity': request.quantity,
            'calculation_type': rule.calculation_type,
            'calculation_unit': rule.calculation_unit,
            'rule_value': rule.value,
            'amount': planned.amount,
            'status': CommissionStatus.PENDING,
        }

    # --- Public API ---

    def preview(self, request):
        """Runs every check and calculation without writing anything."""
        return self._plan(request)

    def generate(self, request):
        """
        Generates the commissions of one payment.

        Either every resolved commission is created or none is. Calling it
        again for a payment that was fully generated yields outcome DUPLICATE
        and writes nothing.
        """
        ctx = request.context
        logging.info("=" * 60)
        logging.info(f"GENERATING COMMISSIONS | payment {request.payment_id} | appointment '{ctx.appointment_id}'")
        logging.info("=" * 60)

        result = self._plan(request)
        if result.outcome is not Outcome.VALID or not result.planned:
            logging.info(f"Generation finished without writes: {result.outcome.value} ({len(result.planned)} planned).")
            return result

        service_value = parse_service_value(request.service_value)
        records = [self._record(p, request, service_value) for p in result.planned]
        try:
            result.commissions = self.commissions.add_all(records)
        except DuplicateCommissionError:
            # A concurrent generation won the race for at least one group.
            logging.warning(f"Concurrent generation detected for appointment '{ctx.appointment_id}'; nothing written.")
            return GenerationResult(Outcome.DUPLICATE, message=Outcome.DUPLICATE.label,
                                    planned=result.planned, skipped_groups=result.skipped_groups)

        logging.info(
            f"Generated {result.created} commission(s) for payment {request.payment_id}, "
            f"total {result.total}."
        )
        return result
