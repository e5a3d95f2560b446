"""wa_gateway - Bridges one messaging web session to HTTP and a webhook.

Architecture:
- A session driver (browser client behind a websocket bridge) publishes events
- The lifecycle machine turns them into one canonical status
- The relay forwards inbound messages to a webhook
- An aiohttp server exposes commands, status, and a push channel
"""

from .config import Settings
from .errors import BadRequest, DriverError, DriverFailure, GatewayError, ServiceUnavailable
from .gateway import Gateway
from .observability import configure as configure_observability
from .server import create_app
from .state import BehaviorConfig, ContactEntry, SessionInfo, SessionState, SessionStatus

__all__ = [
    # Composition
    "Gateway",
    "Settings",
    "create_app",
    # State
    "SessionStatus",
    "SessionState",
    "SessionInfo",
    "ContactEntry",
    "BehaviorConfig",
    # Errors
    "GatewayError",
    "BadRequest",
    "ServiceUnavailable",
    "DriverFailure",
    "DriverError",
    # Observability
    "configure_observability",
]
__version__ = "0.1.0"
