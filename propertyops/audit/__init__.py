# Package
from flask import Blueprint

audit_bp = Blueprint("audit", __name__)

from propertyops.audit import routes
