# ==============================================================================
# clinic_commissions/settings.py
# ------------------------------------------------------------------------------
# Runtime business settings: AppSetting rows from the database layered over the
# defaults in the Flask config.
# ==============================================================================

import logging
from decimal import Decimal

from flask import current_app, has_app_context

DEFAULTS = {
    'DEFAULT_PROCEDURE_PRICE': Decimal('150.00'),
    'REQUIRE_PROFESSIONAL_RULE': True,
}


def load_settings():
    """
    Returns the effective settings. Database values win over config values,
    which win over the built-in defaults.
    """
    from clinic_commissions.models import AppSetting

    settings = dict(DEFAULTS)
    if not has_app_context():
        return settings

    if current_app.config.get('DEFAULT_PROCEDURE_PRICE') is not None:
        settings['DEFAULT_PROCEDURE_PRICE'] = Decimal(str(current_app.config['DEFAULT_PROCEDURE_PRICE']))

    for setting in AppSetting.query.filter(AppSetting.key.in_(list(DEFAULTS))).all():
        try:
            settings[setting.key] = setting.get_value()
        except (ValueError, ArithmeticError) as e:
            logging.error(f"Ignoring malformed setting {setting.key}={setting.value!r}: {e}")
    return settings
