"""WhatsApp session management microservice."""

from .api import create_app
from .orchestrator import SessionOrchestrator

__all__ = ["create_app", "SessionOrchestrator"]
