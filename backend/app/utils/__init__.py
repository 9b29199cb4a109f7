"""Utils package."""
from app.utils.clock import iso, ms_ago, ms_between, utcnow

__all__ = ["utcnow", "ms_between", "ms_ago", "iso"]
