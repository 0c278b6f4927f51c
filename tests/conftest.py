# tests/conftest.py

from datetime import date

import pytest

from clinic_commissions.calculator.schema import AppointmentContext, GenerationRequest
from clinic_commissions.repository.memory import memory_repositories

# 2025-01-15 is a Wednesday, 2025-01-18 a Saturday.
WEDNESDAY = date(2025, 1, 15)
SATURDAY = date(2025, 1, 18)


@pytest.fixture
def app():
    """
    Creates a new app instance for each test with an in-memory database,
    and yields the app within an application context.
    """
    from clinic_commissions import create_app, db
    from config import TestConfig

    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app  # The tests will run here
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def repos():
    """A fresh in-memory repository bundle."""
    return memory_repositories()


@pytest.fixture
def make_rule(repos):
    """Factory for rules in the in-memory rule store. Defaults: clinic1, general 30% professional."""
    def _make_rule(**fields):
        values = {
            'clinic_id': 'clinic1',
            'beneficiary_type': 'professional',
            'calculation_type': 'percentage',
            'value': '30',
        }
        values.update(fields)
        return repos['rules'].create(**values)
    return _make_rule


@pytest.fixture
def clinic1(repos, make_rule):
    """
    The demo clinic: a general 30% rule, a 45% implant rule for prof1,
    a 5% seller rule, staff names and a price table.
    """
    from clinic_commissions.models import ProcedurePrice

    rules = {
        'general': make_rule(notes='Comissão padrão'),
        'implant': make_rule(professional_id='prof1', procedure='Implante Unitário', value='45'),
        'seller': make_rule(beneficiary_type='seller', value='5'),
    }
    repos['staff'].add('clinic1', 'prof1', 'Dr. Carlos Mendes')
    repos['staff'].add('clinic1', 'staff1', 'Ana Souza')
    repos['staff'].add('clinic1', 'staff2', 'Carlos Vendas')
    repos['prices'].entries.extend([
        ProcedurePrice(clinic_id='clinic1', name='Implante Unitário', price=3500, is_active=True),
        ProcedurePrice(clinic_id='clinic1', name='Limpeza Dental', price=200, is_active=True),
    ])
    return rules


def context(appointment_id='apt1', procedure='Implante Unitário', on=WEDNESDAY, seller_id='staff2',
            professional_id='prof1', clinic_id='clinic1', **extra):
    return AppointmentContext(
        appointment_id=appointment_id,
        clinic_id=clinic_id,
        professional_id=professional_id,
        procedure=procedure,
        date=on,
        seller_id=seller_id,
        **extra
    )


def request_for(ctx, service_value='3500.00', quantity=1, payment_id=1, **extra):
    return GenerationRequest(payment_id=payment_id, context=ctx, service_value=service_value,
                             quantity=quantity, **extra)
