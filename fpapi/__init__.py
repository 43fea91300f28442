"""
Fingerprint Correlator API Module
=================================

Flask REST API over the correlation buffer and identity pipeline.
"""

from .app import create_app

__all__ = [
    "create_app"
]
