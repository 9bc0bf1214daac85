"""
Utilities package initialization.
"""
from .logger import get_logger, job_log_context, log_business_event, log_performance, setup_logging

__all__ = ["get_logger", "job_log_context", "log_business_event", "log_performance", "setup_logging"]
