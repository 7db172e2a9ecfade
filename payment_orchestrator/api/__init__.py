"""HTTP API package for the payment orchestrator."""
from .main import create_app

__all__ = ["create_app"]
