# tests/test_reports.py

from decimal import Decimal

from clinic_commissions.calculator.schema import BeneficiaryType, CommissionStatus
from clinic_commissions.main.utils import beneficiary_totals, summarize_commissions
from clinic_commissions.models import Commission


def _commission(beneficiary_id, amount, service_value, appointment_id, status=CommissionStatus.PENDING,
                beneficiary_type=BeneficiaryType.PROFESSIONAL, name=None):
    return Commission(
        beneficiary_type=beneficiary_type, beneficiary_id=beneficiary_id, beneficiary_name=name,
        appointment_id=appointment_id, service_value=Decimal(service_value), amount=Decimal(amount),
        status=status,
    )


def test_summary_per_beneficiary():
    commissions = [
        _commission('prof1', '1575.00', '3500.00', 'apt1', name='Dr. Carlos Mendes'),
        _commission('prof1', '60.00', '200.00', 'apt2', status=CommissionStatus.PAID, name='Dr. Carlos Mendes'),
        _commission('staff2', '175.00', '3500.00', 'apt1', beneficiary_type=BeneficiaryType.SELLER),
        _commission('prof2', '999.00', '1000.00', 'apt3', status=CommissionStatus.CANCELLED),
    ]

    summary = summarize_commissions(commissions)

    assert [row['beneficiary_id'] for row in summary] == ['prof1', 'staff2']
    prof1 = summary[0]
    assert prof1['beneficiary_name'] == 'Dr. Carlos Mendes'
    assert prof1['total_services'] == 2
    assert prof1['total_revenue'] == '3700.00'
    assert prof1['total_commission'] == '1635.00'
    assert prof1['pending_commission'] == '1575.00'
    assert prof1['paid_commission'] == '60.00'
    assert prof1['average_rate'] == 44.2

    seller = summary[1]
    assert seller['beneficiary_type'] == 'seller'
    assert seller['beneficiary_name'] == 'staff2'
    assert seller['average_rate'] == 5.0


def test_zero_revenue_has_zero_rate():
    summary = summarize_commissions([_commission('prof1', '100.00', '0', 'apt-ml')])
    assert summary[0]['average_rate'] == 0.0


def test_empty_reports():
    assert summarize_commissions([]) == []
    totals = beneficiary_totals([])
    assert totals['total'] == '0.00'
    assert totals['count'] == 0
    assert totals['by_type']['reception'] == {'total': '0.00', 'pending': '0.00', 'paid': '0.00'}


def test_totals_by_type_ignore_cancelled():
    totals = beneficiary_totals([
        _commission('prof1', '1575.00', '3500.00', 'apt1'),
        _commission('staff2', '175.00', '3500.00', 'apt1', status=CommissionStatus.PAID,
                    beneficiary_type=BeneficiaryType.SELLER),
        _commission('staff2', '40.00', '800.00', 'apt4', status=CommissionStatus.CANCELLED,
                    beneficiary_type=BeneficiaryType.SELLER),
    ])

    assert totals == {
        'total': '1750.00',
        'pending': '1575.00',
        'paid': '175.00',
        'count': 2,
        'by_type': {
            'professional': {'total': '1575.00', 'pending': '1575.00', 'paid': '0.00'},
            'seller': {'total': '175.00', 'pending': '0.00', 'paid': '175.00'},
            'reception': {'total': '0.00', 'pending': '0.00', 'paid': '0.00'},
        },
    }
