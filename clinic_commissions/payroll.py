# ==============================================================================
# clinic_commissions/payroll.py
# ------------------------------------------------------------------------------
# Payroll actions on generated commissions. Paid is terminal: a paid
# commission can never be edited, deleted or paid again.
# ==============================================================================

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from clinic_commissions.calculator.amount import quantize
from clinic_commissions.calculator.schema import GuardResult, Outcome
from clinic_commissions.calculator.validator import (
    parse_service_value, validate_commission_delete, validate_commission_edit,
)


class CommissionNotFoundError(LookupError):
    pass


@dataclass
class PayrollResult:
    commission_id: int
    outcome: Outcome
    message: Optional[str] = None
    commission: object = None

    @property
    def ok(self):
        return self.outcome is Outcome.VALID

    def to_dict(self):
        return {
            'commission_id': self.commission_id,
            'outcome': self.outcome.value,
            'message': self.message,
            'commission': self.commission.to_dict() if self.commission is not None else None,
        }


class PayrollService:
    """
    Every write is conditional on the row still being pending, so a payroll
    action racing another one can never overwrite a paid commission.
    """

    def __init__(self, commissions):
        self.commissions = commissions

    def _get(self, commission_id):
        commission = self.commissions.get(commission_id)
        if commission is None:
            raise CommissionNotFoundError(f"Commission {commission_id} not found.")
        return commission

    def _lost_race(self, commission_id):
        """Re-reads a row whose conditional write matched nothing."""
        commission = self.commissions.get(commission_id)
        if commission is None:
            raise CommissionNotFoundError(f"Commission {commission_id} not found.")
        check = validate_commission_edit(commission)
        return PayrollResult(commission_id, check.outcome, check.message, commission)

    def mark_paid(self, commission_id, acting_user_id):
        commission = self._get(commission_id)
        check = validate_commission_edit(commission)
        if not check.is_valid:
            if check.outcome is Outcome.ALREADY_PAID:
                check = GuardResult(Outcome.ALREADY_PAID, 'Comissão já foi paga.')
            return PayrollResult(commission_id, check.outcome, check.message, commission)

        if not self.commissions.mark_paid(commission_id, acting_user_id, datetime.utcnow()):
            return self._lost_race(commission_id)
        logging.info(f"Commission {commission_id} marked paid by '{acting_user_id}'.")
        return PayrollResult(commission_id, Outcome.VALID, commission=self._get(commission_id))

    def mark_paid_bulk(self, commission_ids, acting_user_id):
        """
        Pays a batch. Each row is decided independently; unknown ids are
        reported as INVALID_VALUE instead of aborting the batch.
        """
        results = []
        for commission_id in commission_ids:
            try:
                results.append(self.mark_paid(commission_id, acting_user_id))
            except CommissionNotFoundError as e:
                results.append(PayrollResult(commission_id, Outcome.INVALID_VALUE, str(e)))
        paid = sum(1 for r in results if r.ok)
        logging.info(f"Bulk payroll by '{acting_user_id}': {paid}/{len(results)} commission(s) paid.")
        return results

    def update(self, commission_id, notes=None, amount=None):
        commission = self._get(commission_id)
        check = validate_commission_edit(commission)
        if not check.is_valid:
            return PayrollResult(commission_id, check.outcome, check.message, commission)

        fields = {}
        if notes is not None:
            fields['notes'] = notes
        if amount is not None:
            parsed = parse_service_value(amount)
            if parsed is None:
                return PayrollResult(commission_id, Outcome.INVALID_VALUE,
                                     f"Valor de comissão inválido: {amount!r}.", commission)
            fields['amount'] = quantize(parsed)
        if fields and not self.commissions.update_pending(commission_id, **fields):
            return self._lost_race(commission_id)
        return PayrollResult(commission_id, Outcome.VALID, commission=self._get(commission_id))

    def delete(self, commission_id):
        commission = self._get(commission_id)
        check = validate_commission_delete(commission)
        if not check.is_valid:
            return PayrollResult(commission_id, check.outcome, check.message, commission)

        if not self.commissions.delete_pending(commission_id):
            return self._lost_race(commission_id)
        logging.info(f"Commission {commission_id} deleted.")
        return PayrollResult(commission_id, Outcome.VALID)
