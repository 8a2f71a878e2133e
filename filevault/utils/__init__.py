"""
Utility functions package.
"""
from filevault.utils.logger import (
    generate_request_id,
    get_request_id,
    set_request_id,
    setup_logging,
)
from filevault.utils.periodic import PeriodicTask

__all__ = [
    "generate_request_id",
    "get_request_id",
    "set_request_id",
    "setup_logging",
    "PeriodicTask",
]
