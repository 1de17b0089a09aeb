# Package
from flask import Blueprint

from propertyops.logging_config import get_logger

logger = get_logger(__name__)

billing_bp = Blueprint("billing", __name__)

from propertyops.billing import routes
