from flask import Blueprint

bp = Blueprint('main', __name__, url_prefix='/api')

# Import routes and forms at the bottom
from clinic_commissions.main import routes, forms  # noqa: E402,F401
