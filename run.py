# ==============================================================================
# run.py
# ------------------------------------------------------------------------------
# The main entry point to launch the Flask application.
# ==============================================================================

from clinic_commissions import create_app, db
from clinic_commissions.models import (
    AppSetting, Appointment, Commission, CommissionRule, Payment, ProcedurePrice, StaffMember,
)
from clinic_commissions.repository.sql import sql_repositories

# Create the Flask application instance using the factory function
app = create_app()

@app.shell_context_processor
def make_shell_context():
    """Provides a shell context for the `flask shell` command."""
    return {
        'db': db,
        'repos': sql_repositories,
        'AppSetting': AppSetting,
        'Appointment': Appointment,
        'Commission': Commission,
        'CommissionRule': CommissionRule,
        'Payment': Payment,
        'ProcedurePrice': ProcedurePrice,
        'StaffMember': StaffMember,
    }

if __name__ == '__main__':
    app.run(debug=True)
