# ==============================================================================
# clinic_commissions/main/routes.py
# ------------------------------------------------------------------------------
# JSON endpoints through which the surrounding clinic application drives the
# commission engine. Identity (clinic, acting user) is always explicit.
# ==============================================================================

import json
from http import HTTPStatus

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from clinic_commissions import db
from clinic_commissions.billing import AppointmentNotFoundError, PaymentNotFoundError, PaymentWorkflow
from clinic_commissions.calculator.amount import describe_rule
from clinic_commissions.calculator.engine import CommissionGenerator
from clinic_commissions.calculator.resolver import explain
from clinic_commissions.calculator.schema import (
    AppointmentContext, GenerationRequest, Outcome, PaymentMethod,
)
from clinic_commissions.main import bp
from clinic_commissions.main.forms import (
    ActingUserForm, AppSettingForm, CommissionEditForm, CommissionFilterForm,
    CommissionRuleEditForm, CommissionRuleForm, ConfirmPaymentForm,
    OpenPaymentForm, RetryGenerationForm, RulePreviewForm,
)
from clinic_commissions.main.utils import beneficiary_totals, summarize_commissions
from clinic_commissions.models import AppSetting
from clinic_commissions.payroll import CommissionNotFoundError, PayrollService
from clinic_commissions.repository.base import StorageUnavailableError
from clinic_commissions.repository.sql import sql_repositories
from clinic_commissions.settings import load_settings

OUTCOME_STATUS = {
    Outcome.VALID: HTTPStatus.OK,
    Outcome.DUPLICATE: HTTPStatus.CONFLICT,
    Outcome.ALREADY_PAID: HTTPStatus.CONFLICT,
    Outcome.NO_APPLICABLE_RULE: HTTPStatus.UNPROCESSABLE_ENTITY,
    Outcome.INVALID_VALUE: HTTPStatus.UNPROCESSABLE_ENTITY,
}

# --- Helper Functions ---

def _workflow(repos):
    settings = load_settings()
    return PaymentWorkflow.from_repositories(
        repos, require_professional_rule=settings['REQUIRE_PROFESSIONAL_RULE'])


def _form_errors(form):
    return jsonify({'error': 'validation_failed', 'fields': form.errors}), HTTPStatus.UNPROCESSABLE_ENTITY


def _not_found(message):
    return jsonify({'error': 'not_found', 'message': message}), HTTPStatus.NOT_FOUND


def _payroll_response(result):
    return jsonify(result.to_dict()), OUTCOME_STATUS[result.outcome]


# --- Error Handlers ---

@bp.errorhandler(PaymentNotFoundError)
@bp.errorhandler(AppointmentNotFoundError)
@bp.errorhandler(CommissionNotFoundError)
def handle_not_found(e):
    return _not_found(str(e))


@bp.errorhandler(StorageUnavailableError)
def handle_storage_unavailable(e):
    current_app.logger.error(f"Storage unavailable: {e}")
    return jsonify({'error': 'storage_unavailable', 'message': 'Tente novamente em instantes.'}), \
        HTTPStatus.SERVICE_UNAVAILABLE


@bp.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return jsonify({'error': e.name, 'message': e.description}), e.code
    db.session.rollback()
    current_app.logger.error(f"Unexpected failure on {request.method} {request.path}: {e}", exc_info=True)
    return jsonify({'error': 'internal_error'}), HTTPStatus.INTERNAL_SERVER_ERROR


# --- Commission Rules ---

@bp.route('/clinics/<clinic_id>/rules', methods=['GET'])
def list_rules(clinic_id):
    include_inactive = request.args.get('include_inactive', '').lower() in ('1', 'true', 'yes')
    rules = sql_repositories()['rules'].list_rules(clinic_id, include_inactive=include_inactive)
    return jsonify([dict(rule.to_dict(), description=describe_rule(rule)) for rule in rules])


@bp.route('/clinics/<clinic_id>/rules', methods=['POST'])
def create_rule(clinic_id):
    form = CommissionRuleForm.from_json()
    if not form.validate():
        return _form_errors(form)
    fields = form.data
    if 'is_active' not in form.payload:
        fields.pop('is_active')
    rule = sql_repositories()['rules'].create(clinic_id=clinic_id, **fields)
    current_app.logger.info(f"Rule {rule.id} created for clinic '{clinic_id}'.")
    return jsonify(rule.to_dict()), HTTPStatus.CREATED


@bp.route('/rules/<int:rule_id>', methods=['PUT', 'PATCH'])
def edit_rule(rule_id):
    form = CommissionRuleEditForm.from_json()
    if not form.validate():
        return _form_errors(form)
    rule = sql_repositories()['rules'].update(rule_id, **form.submitted_data())
    if rule is None:
        return _not_found(f"Rule {rule_id} not found.")
    return jsonify(rule.to_dict())


@bp.route('/rules/<int:rule_id>/toggle', methods=['POST'])
def toggle_rule(rule_id):
    store = sql_repositories()['rules']
    rule = store.get(rule_id)
    if rule is None:
        return _not_found(f"Rule {rule_id} not found.")
    rule = store.set_active(rule_id, not rule.is_active)
    return jsonify(rule.to_dict())


@bp.route('/rules/<int:rule_id>', methods=['DELETE'])
def delete_rule(rule_id):
    result = sql_repositories()['rules'].delete(rule_id)
    if result is None:
        return _not_found(f"Rule {rule_id} not found.")
    return jsonify({'id': rule_id, 'result': result})


@bp.route('/clinics/<clinic_id>/rules/preview', methods=['POST'])
def preview_rules(clinic_id):
    """Shows which rules would win for an appointment, and why others lose."""
    form = RulePreviewForm.from_json()
    if not form.validate():
        return _form_errors(form)

    repos = sql_repositories()
    rules = repos['rules'].list_rules(clinic_id, include_inactive=True)
    context = AppointmentContext(
        appointment_id='preview',
        clinic_id=clinic_id,
        professional_id=form.professional_id.data,
        procedure=form.procedure.data,
        date=form.date.data,
        seller_id=form.seller_id.data or None,
    )
    service_value = form.service_value.data
    if service_value is None:
        service_value = repos['prices'].lookup(clinic_id, context.procedure)

    generator = CommissionGenerator(repos['rules'], repos['commissions'], repos['staff'],
                                    require_professional_rule=load_settings()['REQUIRE_PROFESSIONAL_RULE'])
    result = generator.preview(GenerationRequest(
        payment_id=None, context=context, service_value=service_value,
        quantity=form.quantity.data or 1, reception_id=form.reception_id.data or None,
        proceed_without_rule=False,
    ))
    trace = explain(rules, context.professional_id, clinic_id, context.procedure, context.date,
                    context.seller_id, form.reception_id.data or None)
    return jsonify({
        'service_value': str(service_value),
        'result': result.to_dict(),
        'rules': [{'id': rule.id, 'priority': rule.priority, 'matched': reason is None, 'reason': reason}
                  for rule, reason in trace],
    })


# --- Payments ---

@bp.route('/appointments/<appointment_id>/payments', methods=['POST'])
def open_payment(appointment_id):
    form = OpenPaymentForm.from_json()
    if not form.validate():
        return _form_errors(form)
    payment = _workflow(sql_repositories()).open_payment(
        form.clinic_id.data, appointment_id,
        total_amount=form.total_amount.data,
        method=PaymentMethod(form.payment_method.data),
        quantity=form.quantity.data or 1,
        description=form.description.data or None,
    )
    return jsonify(payment.to_dict()), HTTPStatus.CREATED


@bp.route('/payments/<int:payment_id>/confirm', methods=['POST'])
def confirm_payment(payment_id):
    form = ConfirmPaymentForm.from_json()
    if not form.validate():
        return _form_errors(form)
    result = _workflow(sql_repositories()).confirm(
        payment_id, form.acting_user_id.data,
        paid_amount=form.paid_amount.data,
        quantity=form.quantity.data,
        reception_id=form.reception_id.data or None,
        proceed_without_rule=form.proceed_without_rule.data,
    )
    if result.confirmed or result.already_confirmed:
        status = HTTPStatus.OK
    elif result.generation is not None:
        status = OUTCOME_STATUS[result.generation.outcome]
    else:
        status = HTTPStatus.CONFLICT
    return jsonify(result.to_dict()), status


@bp.route('/payments/<int:payment_id>/cancel', methods=['POST'])
def cancel_payment(payment_id):
    form = ActingUserForm.from_json()
    if not form.validate():
        return _form_errors(form)
    result = _workflow(sql_repositories()).cancel(payment_id, form.acting_user_id.data)
    return jsonify(result.to_dict()), HTTPStatus.OK if result.cancelled else HTTPStatus.CONFLICT


@bp.route('/payments/<int:payment_id>/commissions/retry', methods=['POST'])
def retry_generation(payment_id):
    form = RetryGenerationForm.from_json()
    if not form.validate():
        return _form_errors(form)
    result = _workflow(sql_repositories()).retry_generation(
        payment_id, form.acting_user_id.data,
        reception_id=form.reception_id.data or None,
        proceed_without_rule=form.proceed_without_rule.data,
    )
    if result.generation is None:
        status = HTTPStatus.SERVICE_UNAVAILABLE
    else:
        status = OUTCOME_STATUS[result.generation.outcome]
    return jsonify(result.to_dict()), status


# --- Commissions & Payroll ---

@bp.route('/clinics/<clinic_id>/commissions', methods=['GET'])
def list_commissions(clinic_id):
    form = CommissionFilterForm.from_args()
    if not form.validate():
        return _form_errors(form)
    commissions = sql_repositories()['commissions'].list_commissions(
        clinic_id,
        beneficiary_id=form.beneficiary_id.data or None,
        status=form.status.data or None,
        start_date=form.start_date.data,
        end_date=form.end_date.data,
    )
    return jsonify({
        'commissions': [c.to_dict() for c in commissions],
        'totals': beneficiary_totals(commissions),
    })


@bp.route('/clinics/<clinic_id>/commissions/summary', methods=['GET'])
def commission_summary(clinic_id):
    form = CommissionFilterForm.from_args()
    if not form.validate():
        return _form_errors(form)
    commissions = sql_repositories()['commissions'].list_commissions(
        clinic_id,
        status=form.status.data or None,
        start_date=form.start_date.data,
        end_date=form.end_date.data,
    )
    return jsonify({
        'beneficiaries': summarize_commissions(commissions),
        'totals': beneficiary_totals(commissions),
    })


@bp.route('/commissions/<int:commission_id>/pay', methods=['POST'])
def pay_commission(commission_id):
    form = ActingUserForm.from_json()
    if not form.validate():
        return _form_errors(form)
    result = PayrollService(sql_repositories()['commissions']).mark_paid(commission_id, form.acting_user_id.data)
    return _payroll_response(result)


@bp.route('/commissions/pay', methods=['POST'])
def pay_commissions_bulk():
    form = ActingUserForm.from_json()
    if not form.validate():
        return _form_errors(form)
    ids = form.payload.get('commission_ids')
    if not isinstance(ids, list) or not all(isinstance(i, int) and not isinstance(i, bool) for i in ids):
        return jsonify({'error': 'validation_failed',
                        'fields': {'commission_ids': ['Informe uma lista de ids.']}}), \
            HTTPStatus.UNPROCESSABLE_ENTITY
    results = PayrollService(sql_repositories()['commissions']).mark_paid_bulk(ids, form.acting_user_id.data)
    return jsonify({
        'paid': sum(1 for r in results if r.ok),
        'results': [r.to_dict() for r in results],
    })


@bp.route('/commissions/<int:commission_id>', methods=['PATCH'])
def edit_commission(commission_id):
    form = CommissionEditForm.from_json()
    if not form.validate():
        return _form_errors(form)
    result = PayrollService(sql_repositories()['commissions']).update(
        commission_id, **form.submitted_data())
    return _payroll_response(result)


@bp.route('/commissions/<int:commission_id>', methods=['DELETE'])
def delete_commission(commission_id):
    result = PayrollService(sql_repositories()['commissions']).delete(commission_id)
    return _payroll_response(result)


# --- Settings ---

@bp.route('/settings', methods=['GET'])
def list_settings():
    settings = AppSetting.query.order_by(AppSetting.key).all()
    return jsonify([
        {'key': s.key, 'value': s.value, 'value_type': s.value_type, 'description': s.description}
        for s in settings
    ])


@bp.route('/settings/<key>', methods=['PUT'])
def edit_setting(key):
    setting = AppSetting.query.filter_by(key=key).first_or_404()
    form = AppSettingForm.from_json()
    if not form.validate():
        return _form_errors(form)

    new_value = form.value.data
    if setting.value_type == 'json':
        try:
            new_value = json.dumps(json.loads(new_value), ensure_ascii=False)
        except json.JSONDecodeError:
            return jsonify({'error': 'validation_failed',
                            'fields': {'value': ['O valor informado não é um JSON válido.']}}), \
                HTTPStatus.UNPROCESSABLE_ENTITY
    previous = setting.value
    setting.value = new_value
    try:
        setting.get_value()
    except (ValueError, ArithmeticError):
        setting.value = previous
        return jsonify({'error': 'validation_failed',
                        'fields': {'value': [f"Valor inválido para o tipo '{setting.value_type}'."]}}), \
            HTTPStatus.UNPROCESSABLE_ENTITY
    db.session.commit()
    current_app.logger.info(f"Setting '{key}' updated.")
    return jsonify({'key': setting.key, 'value': setting.value, 'value_type': setting.value_type})
