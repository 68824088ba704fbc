"""REST API layer for kubeconverge.

Exposes:
    create_app -- FastAPI application factory.
"""

from kubeconverge.api.app import create_app

__all__ = ["create_app"]
