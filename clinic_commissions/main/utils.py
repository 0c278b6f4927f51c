# ==============================================================================
# clinic_commissions/main/utils.py
# (Reporting aggregations over generated commissions)
# ==============================================================================
import pandas as pd

from clinic_commissions.calculator.schema import BeneficiaryType, CommissionStatus

SUMMARY_COLUMNS = ['beneficiary_type', 'beneficiary_id', 'beneficiary_name', 'status',
                   'appointment_id', 'service_value', 'amount']


def _money(value):
    return f"{value:.2f}"


def _commission_frame(commissions):
    """Flattens commissions into a DataFrame. Cancelled rows never count."""
    rows = [
        {
            'beneficiary_type': c.beneficiary_type.value,
            'beneficiary_id': c.beneficiary_id,
            'beneficiary_name': c.beneficiary_name or c.beneficiary_id,
            'status': c.status.value,
            'appointment_id': c.appointment_id,
            'service_value': float(c.service_value),
            'amount': float(c.amount),
        }
        for c in commissions
        if c.status != CommissionStatus.CANCELLED
    ]
    df = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
    df['pending_amount'] = df['amount'].where(df['status'] == CommissionStatus.PENDING.value, 0.0)
    df['paid_amount'] = df['amount'].where(df['status'] == CommissionStatus.PAID.value, 0.0)
    return df


def summarize_commissions(commissions):
    """
    Per-beneficiary report: number of services, revenue those services
    brought in, commission totals split by status and the effective rate
    (total commission / total revenue, in percent).
    Sorted by total commission, highest first.
    """
    df = _commission_frame(commissions)
    if df.empty:
        return []

    grouped = df.groupby(['beneficiary_type', 'beneficiary_id'], sort=False).agg(
        beneficiary_name=('beneficiary_name', 'first'),
        total_services=('appointment_id', 'nunique'),
        total_revenue=('service_value', 'sum'),
        total_commission=('amount', 'sum'),
        pending_commission=('pending_amount', 'sum'),
        paid_commission=('paid_amount', 'sum'),
    ).reset_index()
    grouped['average_rate'] = (
        grouped['total_commission'] / grouped['total_revenue'].where(grouped['total_revenue'] > 0)
    ).fillna(0.0) * 100
    grouped = grouped.sort_values('total_commission', ascending=False, kind='stable')

    summary = []
    for row in grouped.itertuples(index=False):
        summary.append({
            'beneficiary_type': row.beneficiary_type,
            'beneficiary_id': row.beneficiary_id,
            'beneficiary_name': row.beneficiary_name,
            'total_services': int(row.total_services),
            'total_revenue': _money(row.total_revenue),
            'total_commission': _money(row.total_commission),
            'pending_commission': _money(row.pending_commission),
            'paid_commission': _money(row.paid_commission),
            'average_rate': round(float(row.average_rate), 1),
        })
    return summary


def beneficiary_totals(commissions):
    """Overall and per-beneficiary-type totals, ignoring cancelled rows."""
    df = _commission_frame(commissions)
    by_type = {}
    for beneficiary_type in BeneficiaryType:
        subset = df[df['beneficiary_type'] == beneficiary_type.value]
        by_type[beneficiary_type.value] = {
            'total': _money(subset['amount'].sum()),
            'pending': _money(subset['pending_amount'].sum()),
            'paid': _money(subset['paid_amount'].sum()),
        }
    return {
        'total': _money(df['amount'].sum()),
        'pending': _money(df['pending_amount'].sum()),
        'paid': _money(df['paid_amount'].sum()),
        'count': int(len(df)),
        'by_type': by_type,
    }
