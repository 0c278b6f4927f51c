# ==============================================================================
# clinic_commissions/main/forms.py
# ------------------------------------------------------------------------------
# Defines the Flask-WTF forms that validate JSON request bodies.
# ==============================================================================

from flask import request
from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import BooleanField, DateField, DecimalField, IntegerField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional

from clinic_commissions.calculator.schema import (
    BeneficiaryType, CalculationType, CalculationUnit, CommissionStatus,
    DayOfWeek, PaymentMethod, WILDCARD,
)

REQUIRED = "Este campo é obrigatório."


def _formdata(payload):
    """
    JSON body -> form data. Nulls are dropped so optional fields stay empty;
    numbers become strings so DecimalField never sees a float.
    """
    data = MultiDict()
    for key, value in (payload or {}).items():
        if value is None:
            continue
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        data.add(key, value)
    return data


class JsonForm(FlaskForm):
    """Base for the API forms. Bodies are JSON, so there is no CSRF token."""

    class Meta:
        csrf = False

    @classmethod
    def from_json(cls, payload=None):
        if payload is None:
            payload = request.get_json(silent=True) or {}
        form = cls(formdata=_formdata(payload))
        form.payload = payload
        return form

    @classmethod
    def from_args(cls):
        form = cls(formdata=request.args)
        form.payload = request.args.to_dict()
        return form

    def submitted_data(self):
        """Only the fields the caller actually sent, for partial updates."""
        return {name: field.data for name, field in self._fields.items() if name in self.payload}


class CommissionRuleForm(JsonForm):
    """Form for adding a commission rule."""
    beneficiary_type = SelectField('Tipo de beneficiário', choices=BeneficiaryType.choices(),
                                   validators=[InputRequired(message=REQUIRED)])
    professional_id = StringField('Profissional', default=WILDCARD, validators=[Optional(), Length(max=64)])
    beneficiary_id = StringField('Beneficiário específico', validators=[Optional(), Length(max=64)])
    beneficiary_name = StringField('Nome do beneficiário', validators=[Optional(), Length(max=128)])
    procedure = StringField('Procedimento', default=WILDCARD, validators=[Optional(), Length(max=128)])
    day_of_week = SelectField('Dia da semana', choices=DayOfWeek.choices(), default=DayOfWeek.ALL.value)
    calculation_type = SelectField('Tipo de cálculo', choices=CalculationType.choices(),
                                   validators=[InputRequired(message=REQUIRED)])
    calculation_unit = SelectField('Unidade', choices=CalculationUnit.choices(),
                                   default=CalculationUnit.APPOINTMENT.value)
    value = DecimalField('Valor', validators=[InputRequired(message=REQUIRED), NumberRange(min=0)])
    is_active = BooleanField('Ativa', default=True)
    notes = TextAreaField('Observações', validators=[Optional()])


class CommissionRuleEditForm(CommissionRuleForm):
    """Same fields, all optional: only what is sent gets changed."""
    beneficiary_type = SelectField('Tipo de beneficiário', choices=BeneficiaryType.choices(),
                                   default=BeneficiaryType.PROFESSIONAL.value)
    calculation_type = SelectField('Tipo de cálculo', choices=CalculationType.choices(),
                                   default=CalculationType.PERCENTAGE.value)
    value = DecimalField('Valor', validators=[Optional(), NumberRange(min=0)])


class RulePreviewForm(JsonForm):
    professional_id = StringField('Profissional', validators=[DataRequired(message=REQUIRED)])
    procedure = StringField('Procedimento', validators=[DataRequired(message=REQUIRED)])
    date = DateField('Data', format='%Y-%m-%d', validators=[InputRequired(message=REQUIRED)])
    seller_id = StringField('Vendedor', validators=[Optional()])
    reception_id = StringField('Recepção', validators=[Optional()])
    service_value = DecimalField('Valor do serviço', validators=[Optional()])
    quantity = IntegerField('Quantidade', default=1, validators=[Optional()])


class OpenPaymentForm(JsonForm):
    clinic_id = StringField('Clínica', validators=[DataRequired(message=REQUIRED)])
    total_amount = DecimalField('Valor total', validators=[Optional(), NumberRange(min=0)])
    payment_method = SelectField('Forma de pagamento', choices=PaymentMethod.choices(),
                                 default=PaymentMethod.CASH.value)
    quantity = IntegerField('Quantidade', default=1, validators=[Optional(), NumberRange(min=1)])
    description = StringField('Descrição', validators=[Optional(), Length(max=256)])


class ActingUserForm(JsonForm):
    acting_user_id = StringField('Usuário', validators=[DataRequired(message=REQUIRED)])


class ConfirmPaymentForm(ActingUserForm):
    # Quantity and amount are range-checked by the workflow, which reports
    # them as invalid_value outcomes.
    paid_amount = DecimalField('Valor pago', validators=[Optional()])
    quantity = IntegerField('Quantidade', validators=[Optional()])
    reception_id = StringField('Recepção', validators=[Optional()])
    proceed_without_rule = BooleanField('Prosseguir sem regra')


class RetryGenerationForm(ActingUserForm):
    reception_id = StringField('Recepção', validators=[Optional()])
    proceed_without_rule = BooleanField('Prosseguir sem regra')


class CommissionEditForm(JsonForm):
    notes = TextAreaField('Observações', validators=[Optional()])
    amount = DecimalField('Valor', validators=[Optional()])


class CommissionFilterForm(JsonForm):
    beneficiary_id = StringField('Beneficiário', validators=[Optional()])
    status = SelectField('Status', choices=[('', 'Todos')] + CommissionStatus.choices(), default='')
    start_date = DateField('De', format='%Y-%m-%d', validators=[Optional()])
    end_date = DateField('Até', format='%Y-%m-%d', validators=[Optional()])


class AppSettingForm(JsonForm):
    """Form for editing a single application setting."""
    value = TextAreaField('Valor', validators=[DataRequired(message=REQUIRED)])
