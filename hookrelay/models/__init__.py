"""
Database models - import all models here so Alembic can discover them.
"""
from hookrelay.models.tunnel import Tunnel
from hookrelay.models.webhook import Webhook
from hookrelay.models.webhook_event import WebhookEvent

__all__ = [
    "Tunnel",
    "Webhook",
    "WebhookEvent",
]
