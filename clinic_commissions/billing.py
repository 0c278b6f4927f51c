# ==============================================================================
# clinic_commissions/billing.py
# ------------------------------------------------------------------------------
# Payment lifecycle at the boundary of the commission engine:
#   pending --confirm--> confirmed   (the only trigger for generation)
#   pending --cancel-->  cancelled
# Both target states are terminal.
# ==============================================================================

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from clinic_commissions.calculator.amount import quantize
from clinic_commissions.calculator.engine import CommissionGenerator
from clinic_commissions.calculator.schema import (
    GenerationRequest, GenerationResult, Outcome,
    PaymentMethod, PaymentStatus,
)
from clinic_commissions.calculator.validator import parse_service_value, validate_generation_input
from clinic_commissions.repository.base import StorageError


class PaymentNotFoundError(LookupError):
    pass


class AppointmentNotFoundError(LookupError):
    pass


@dataclass
class ConfirmationResult:
    payment: object
    confirmed: bool = False
    already_confirmed: bool = False
    generation: Optional[GenerationResult] = None
    warning: Optional[str] = None

    def to_dict(self):
        return {
            'payment': self.payment.to_dict() if self.payment is not None else None,
            'confirmed': self.confirmed,
            'already_confirmed': self.already_confirmed,
            'generation': self.generation.to_dict() if self.generation is not None else None,
            'warning': self.warning,
        }


@dataclass
class CancellationResult:
    payment: object
    cancelled: bool = False
    cancelled_commissions: int = 0
    message: Optional[str] = None

    def to_dict(self):
        return {
            'payment': self.payment.to_dict(),
            'cancelled': self.cancelled,
            'cancelled_commissions': self.cancelled_commissions,
            'message': self.message,
        }


class PaymentWorkflow:
    """
    Drives payment transitions and hands confirmed payments to the
    CommissionGenerator. Every transition is a compare-and-swap on the
    payment store, so only one concurrent confirm can win.
    """

    def __init__(self, payments, appointments, prices, commissions, generator):
        self.payments = payments
        self.appointments = appointments
        self.prices = prices
        self.commissions = commissions
        self.generator = generator

    @classmethod
    def from_repositories(cls, repos, require_professional_rule=True):
        """Wires a workflow from a repository bundle (sql_repositories / memory_repositories)."""
        generator = CommissionGenerator(
            repos['rules'], repos['commissions'], repos['staff'],
            require_professional_rule=require_professional_rule,
        )
        return cls(repos['payments'], repos['appointments'], repos['prices'],
                   repos['commissions'], generator)

    def _get_payment(self, payment_id):
        payment = self.payments.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found.")
        return payment

    # --- Opening ---

    def open_payment(self, clinic_id, appointment_id, total_amount=None,
                     method=PaymentMethod.CASH, quantity=1, description=None):
        """
        Marks the appointment completed and registers a pending payment.
        Without an explicit total the procedure price table is consulted.
        """
        context = self.appointments.get_context(appointment_id)
        if context is None or context.clinic_id != clinic_id:
            raise AppointmentNotFoundError(f"Appointment '{appointment_id}' not found in clinic '{clinic_id}'.")

        if total_amount is None:
            total_amount = self.prices.lookup(clinic_id, context.procedure)
        else:
            total_amount = parse_service_value(total_amount)
            if total_amount is None:
                raise ValueError('Total amount must be a non-negative number.')

        self.appointments.mark_completed(appointment_id)
        payment = self.payments.create(
            clinic_id=clinic_id,
            appointment_id=appointment_id,
            total_amount=quantize(total_amount),
            payment_method=PaymentMethod(method),
            quantity=quantity,
            description=description or context.procedure,
        )
        logging.info(f"Opened payment {payment.id} for appointment '{appointment_id}' ({payment.total_amount}).")
        return payment

    # --- Generation ---

    def _request(self, payment, context, service_value, quantity, reception_id, proceed_without_rule):
        return GenerationRequest(
            payment_id=payment.id,
            context=context,
            service_value=service_value,
            quantity=quantity,
            reception_id=reception_id,
            proceed_without_rule=proceed_without_rule,
        )

    def _generate(self, payment, service_value, quantity, reception_id, proceed_without_rule):
        context = self.appointments.get_context(payment.appointment_id)
        if context is None:
            message = f"Agendamento '{payment.appointment_id}' não encontrado; comissões não geradas."
            logging.warning(f"Payment {payment.id}: appointment '{payment.appointment_id}' missing.")
            return None, message

        request = self._request(payment, context, service_value, quantity, reception_id, proceed_without_rule)
        try:
            result = self.generator.generate(request)
        except StorageError as e:
            logging.error(f"Commission generation failed for payment {payment.id}: {e}", exc_info=True)
            return None, 'Pagamento confirmado, mas as comissões não puderam ser geradas. Tente novamente.'

        if result.outcome is not Outcome.VALID:
            return result, result.message
        return result, None

    def confirm(self, payment_id, acting_user_id, paid_amount=None, quantity=None,
                reception_id=None, proceed_without_rule=False):
        """
        Confirms a pending payment and generates its commissions.

        A payment is confirmed at most once; re-confirming reports
        `already_confirmed` and never re-triggers generation. A generation
        failure leaves the payment confirmed and is reported as `warning`.
        """
        payment = self._get_payment(payment_id)
        if payment.status == PaymentStatus.CONFIRMED:
            return ConfirmationResult(payment, already_confirmed=True)
        if payment.status == PaymentStatus.CANCELLED:
            return ConfirmationResult(payment, warning='Pagamento cancelado não pode ser confirmado.')

        if quantity is None:
            quantity = payment.quantity or 1
        service_value = payment.total_amount if paid_amount is None else paid_amount
        check = validate_generation_input(service_value, quantity)
        if not check.is_valid:
            return ConfirmationResult(payment, generation=GenerationResult(check.outcome, message=check.message),
                                      warning=check.message)

        # A missing professional rule blocks completion unless acknowledged.
        context = self.appointments.get_context(payment.appointment_id)
        if context is not None:
            preview = self.generator.preview(self._request(
                payment, context, service_value, quantity, reception_id, proceed_without_rule))
            if preview.outcome is Outcome.NO_APPLICABLE_RULE:
                return ConfirmationResult(payment, generation=preview, warning=preview.message)

        now = datetime.utcnow()
        fields = {
            'confirmed_at': now,
            'confirmed_by': acting_user_id,
            'paid_amount': quantize(parse_service_value(service_value)),
            'quantity': quantity,
        }
        if proceed_without_rule:
            # Stored with the confirmation so retries honour it.
            fields['no_rule_acknowledged_by'] = acting_user_id
            fields['no_rule_acknowledged_at'] = now
        won = self.payments.transition(payment_id, PaymentStatus.PENDING, PaymentStatus.CONFIRMED, **fields)
        payment = self._get_payment(payment_id)
        if not won:
            if payment.status == PaymentStatus.CONFIRMED:
                logging.info(f"Payment {payment_id} was confirmed concurrently; not re-triggering generation.")
                return ConfirmationResult(payment, already_confirmed=True)
            return ConfirmationResult(payment, warning='Pagamento cancelado não pode ser confirmado.')

        logging.info(f"Payment {payment_id} confirmed by '{acting_user_id}'.")
        if proceed_without_rule:
            logging.info(f"Payment {payment_id}: no-rule completion acknowledged by '{acting_user_id}'.")
        result, warning = self._generate(payment, payment.paid_amount, quantity, reception_id, proceed_without_rule)
        return ConfirmationResult(payment, confirmed=True, generation=result, warning=warning)

    def retry_generation(self, payment_id, acting_user_id, reception_id=None, proceed_without_rule=False):
        """
        Re-runs generation for a confirmed payment. Safe to repeat: groups that
        already hold an active commission are skipped, and a fully generated
        payment yields outcome DUPLICATE with nothing written.
        """
        payment = self._get_payment(payment_id)
        if payment.status != PaymentStatus.CONFIRMED:
            message = 'Somente pagamentos confirmados geram comissões.'
            return ConfirmationResult(payment, generation=GenerationResult(Outcome.INVALID_VALUE, message=message),
                                      warning=message)

        acknowledged = payment.no_rule_acknowledged_by is not None
        if proceed_without_rule and not acknowledged:
            self.payments.update(payment_id, no_rule_acknowledged_by=acting_user_id,
                                 no_rule_acknowledged_at=datetime.utcnow())
            payment = self._get_payment(payment_id)
            logging.info(f"Payment {payment_id}: no-rule completion acknowledged by '{acting_user_id}'.")

        service_value = payment.paid_amount if payment.paid_amount is not None else payment.total_amount
        logging.info(f"Retrying commission generation for payment {payment_id} (requested by '{acting_user_id}').")
        result, warning = self._generate(payment, service_value, payment.quantity or 1,
                                         reception_id, proceed_without_rule or acknowledged)
        return ConfirmationResult(payment, confirmed=True, already_confirmed=True,
                                  generation=result, warning=warning)

    # --- Cancellation ---

    def cancel(self, payment_id, acting_user_id):
        """
        Cancels a pending payment. Pending commissions linked to it are
        cancelled as well; paid commissions are never touched.
        """
        payment = self._get_payment(payment_id)
        if payment.status != PaymentStatus.PENDING:
            return CancellationResult(payment, message=f"Pagamento já está {payment.status.label.lower()}.")

        now = datetime.utcnow()
        won = self.payments.transition(
            payment_id, PaymentStatus.PENDING, PaymentStatus.CANCELLED,
            cancelled_at=now, cancelled_by=acting_user_id,
        )
        payment = self._get_payment(payment_id)
        if not won:
            return CancellationResult(payment, message=f"Pagamento já está {payment.status.label.lower()}.")

        count = self.commissions.cancel_pending_for_payment(payment_id, now)
        logging.info(f"Payment {payment_id} cancelled by '{acting_user_id}'; {count} pending commission(s) cancelled.")
        return CancellationResult(payment, cancelled=True, cancelled_commissions=count)
