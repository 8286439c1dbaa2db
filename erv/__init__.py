"""ERV Modbus TCP communication library."""

from importlib import metadata as _metadata

try:
    __version__ = _metadata.version("erv")
except _metadata.PackageNotFoundError:  # pragma: no cover - package not installed
    __version__ = "0.0.0"

from .client import ERVClient
from .config import Config
from .models import FanSide, TelemetrySnapshot
from .poller import TelemetryService
__all__ = ["ERVClient", "Config", "FanSide", "TelemetrySnapshot", "TelemetryService", "__version__"]
