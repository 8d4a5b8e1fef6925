"""Serial MSP console for INAV and Betaflight flight controllers."""

from importlib import metadata

try:
    __version__ = metadata.version("msp-tool")
except metadata.PackageNotFoundError:  # pragma: no cover - source checkout
    __version__ = "0.0.0+local"
