# ==============================================================================
# clinic_commissions/calculator/resolver.py
# ------------------------------------------------------------------------------
# Picks the winning commission rule for each beneficiary group of an
# appointment, and derives rule priority from filter specificity.
# ==============================================================================

import logging

from clinic_commissions.calculator.schema import (
    BeneficiaryType, DayOfWeek, WILDCARD,
)

# --- Priority Derivation ---

# Each specific filter adds SIGNAL_WEIGHT, so a rule with more specific filters
# always outranks one with fewer. The per-dimension bonuses (all < SIGNAL_WEIGHT
# even when summed) order rules with the same number of specific filters.
BASE_PRIORITY = 1
SIGNAL_WEIGHT = 100
DIMENSION_BONUS = {
    'professional': 8,
    'procedure': 4,
    'day_of_week': 2,
    'beneficiary': 1,
}


def _is_specific(value):
    if value is None:
        return False
    value = getattr(value, 'value', value)
    return str(value).strip() not in ('', WILDCARD)


def compute_priority(professional_id=WILDCARD, procedure=WILDCARD,
                     day_of_week=DayOfWeek.ALL, beneficiary_id=None):
    """
    Returns the priority for a rule with the given filters.

    Strictly more specific filters always yield a strictly higher priority.
    Callers must never store a hand-entered priority.
    """
    signals = {
        'professional': _is_specific(professional_id),
        'procedure': _is_specific(procedure),
        'day_of_week': _is_specific(day_of_week),
        'beneficiary': _is_specific(beneficiary_id),
    }
    present = [name for name, on in signals.items() if on]
    return BASE_PRIORITY + SIGNAL_WEIGHT * len(present) + sum(DIMENSION_BONUS[name] for name in present)


def priority_for(rule):
    return compute_priority(rule.professional_id, rule.procedure, rule.day_of_week, rule.beneficiary_id)


# --- Matching ---

def rejection_reason(rule, professional_id, clinic_id, procedure, day,
                     seller_id=None, reception_id=None):
    """
    Returns why `rule` does not apply to the appointment, or None if it does.
    `day` is the appointment's DayOfWeek.
    """
    if not rule.is_active:
        return 'inactive'
    if rule.clinic_id != clinic_id:
        return 'other clinic'

    # The professional filter is the primary key for professional rules and a
    # secondary filter for seller/reception rules tied to one professional.
    if rule.professional_id != WILDCARD and rule.professional_id != professional_id:
        return 'professional mismatch'

    if rule.procedure != WILDCARD and rule.procedure != procedure:
        return 'procedure mismatch'

    if rule.day_of_week != DayOfWeek.ALL and rule.day_of_week != day:
        return 'day of week mismatch'

    if rule.beneficiary_type == BeneficiaryType.PROFESSIONAL:
        # Extra check: a professional rule naming someone else never pays on
        # this appointment, even when its professional filter is a wildcard.
        if rule.beneficiary_id and rule.beneficiary_id != professional_id:
            return 'different professional'
    elif rule.beneficiary_type == BeneficiaryType.SELLER:
        if not seller_id:
            return 'no seller assigned'
        if rule.beneficiary_id and rule.beneficiary_id != seller_id:
            return 'different seller'
    elif rule.beneficiary_type == BeneficiaryType.RECEPTION:
        if not reception_id:
            return 'no reception assigned'
        if rule.beneficiary_id and rule.beneficiary_id != reception_id:
            return 'different reception'

    return None


def match_rule(rule, professional_id, clinic_id, procedure, on_date,
               seller_id=None, reception_id=None):
    """True if `rule` applies to an appointment on `on_date`."""
    day = DayOfWeek.from_date(on_date)
    return rejection_reason(rule, professional_id, clinic_id, procedure, day,
                            seller_id, reception_id) is None


def explain(rules, professional_id, clinic_id, procedure, on_date,
            seller_id=None, reception_id=None):
    """
    Returns (rule, reason) pairs for every rule, reason None for matches.
    Used for previews and audit logs.
    """
    day = DayOfWeek.from_date(on_date)
    return [
        (rule, rejection_reason(rule, professional_id, clinic_id, procedure, day,
                                seller_id, reception_id))
        for rule in rules or []
    ]


def resolve(rules, professional_id, clinic_id, procedure, on_date,
            seller_id=None, reception_id=None):
    """
    Returns the winning rules for the appointment, at most one per
    beneficiary group, in descending priority order.

    Within a group the highest priority wins. On equal priority the rule that
    came first in `rules` wins (stable sort).
    """
    candidates = []
    for rule, reason in explain(rules, professional_id, clinic_id, procedure, on_date,
                                seller_id, reception_id):
        if reason is None:
            candidates.append(rule)
        else:
            logging.debug(f"Rule {rule.id} rejected for appointment context: {reason}")

    candidates.sort(key=lambda r: r.priority, reverse=True)

    winners = {}
    for rule in candidates:
        if rule.group_key not in winners:
            winners[rule.group_key] = rule

    logging.debug(
        f"Resolved {len(winners)} winning rule(s) from {len(candidates)} candidate(s) "
        f"for professional '{professional_id}', procedure '{procedure}' in clinic '{clinic_id}'."
    )
    return list(winners.values())


def find_professional_rule(rules, professional_id, clinic_id, procedure, on_date):
    """The winning professional rule, or None."""
    for rule in resolve(rules, professional_id, clinic_id, procedure, on_date):
        if rule.beneficiary_type == BeneficiaryType.PROFESSIONAL:
            return rule
    return None
