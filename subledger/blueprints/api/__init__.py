from flask import Blueprint

bp = Blueprint("api", __name__)

# Importing the modules is what registers their routes
from . import subscriptions  # noqa: E402,F401  /api/subscriptions/...
from . import customers      # noqa: E402,F401  /api/customers/...
from . import plans          # noqa: E402,F401  /api/plans/...
from . import payments       # noqa: E402,F401  /api/payments/...
