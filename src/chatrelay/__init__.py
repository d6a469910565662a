"""chatrelay - resilient outbound messaging and closed-hours auto replies over a chat channel."""

from chatrelay.config import Settings, load_settings
from chatrelay.delivery import NoChannel, SendError, SendJob, Sent
from chatrelay.runtime import RelayRuntime, build_runtime

__version__ = "0.1.0"

__all__ = ["NoChannel", "RelayRuntime", "SendError", "SendJob", "Sent", "Settings", "build_runtime", "load_settings"]
