"""nvdsync — resumable, rate-limited client for the NVD CVE API 2.0.

This package provides the paginated fetch engine, its rate-limited
transport, and the builder, aggregation and CLI around them.
"""

__version__ = "0.1.0"

from .api import NvdCveApi  # noqa: E402
from .builder import Filter, NvdCveApiBuilder  # noqa: E402
from .errors import ErrorKind, NvdApiError  # noqa: E402
from .output import CveOutput  # noqa: E402

__all__ = [
    "CveOutput",
    "ErrorKind",
    "Filter",
    "NvdApiError",
    "NvdCveApi",
    "NvdCveApiBuilder",
    "__version__",
]
