"""WhatsApp session gateway: realtime notices and a send API over one session."""

from .api import create_app
from .manager import SessionManager

__all__ = ["create_app", "SessionManager"]
