# Package
from flask import Blueprint

from propertyops.logging_config import get_logger

logger = get_logger(__name__)

outbox_bp = Blueprint("outbox", __name__)

from propertyops.outbox import routes
