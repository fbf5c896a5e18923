"""
Centralized router registry for all API endpoints
"""
from . import messages, partner

ROUTERS = [
    messages.router,
    partner.router,
]
