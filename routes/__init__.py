"""
Flask blueprints for the concept alignment API.
"""

from flask import Blueprint

# Create blueprints
audit_bp = Blueprint('audit', __name__)
# Import routes to register them
from . import audit
