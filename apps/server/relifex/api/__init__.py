"""API package initialization.

Exposes a Flask ``Blueprint`` named ``api_bp`` used by the application factory
to register all API routes under the ``/api`` prefix. Route modules attach
themselves to the blueprint on import.
"""

from flask import Blueprint

from ..errors import register_error_handlers

api_bp = Blueprint("api", __name__)
register_error_handlers(api_bp)

from . import (  # noqa: E402,F401  (route registration)
    bills,
    citizens,
    complaints,
    disasters,
    donations,
    fraud,
    merchants,
    ngos,
    routes,
    transactions,
)
