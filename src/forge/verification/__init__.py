"""Post-execution verification layers."""

from .agent import VerificationAgent, summarise
from .api_smoke import ApiSmokeTester, extract_routes
from .functional import FunctionalReviewer
from .static_checks import run_static_checks

__all__ = [
    "ApiSmokeTester",
    "FunctionalReviewer",
    "VerificationAgent",
    "extract_routes",
    "run_static_checks",
    "summarise",
]
