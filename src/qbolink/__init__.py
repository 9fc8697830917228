"""
qbolink — QuickBooks Online credential lifecycle and rate-limited data fetching.

Keeps one usable OAuth credential per owner and pulls financial reports
through it without exceeding the provider's request budget.
"""

__version__ = "0.1.0"
__all__ = [
    "AggregateResult",
    "FetchRequest",
    "QBOLink",
    "QBOLinkConfig",
    "RunStatus",
]

from qbolink.config import QBOLinkConfig  # noqa: E402
from qbolink.link import QBOLink  # noqa: E402
from qbolink.models.fetch import AggregateResult, FetchRequest, RunStatus  # noqa: E402
