"""prusti-bridge package root."""

from prusti_bridge.exceptions import NeverThrown, ServerError
from prusti_bridge.invariants import never

__all__ = ["__version__", "NeverThrown", "ServerError", "never"]

__version__ = "0.1.0"
