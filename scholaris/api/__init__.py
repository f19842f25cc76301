"""
API module for the REST adapter.
"""

from .rest_api import ScholarisRestAPI

__all__ = [
    "ScholarisRestAPI",
]
