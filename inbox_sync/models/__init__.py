from inbox_sync.models.app_log import AppLog
from inbox_sync.models.base import Base, TimestampMixin
from inbox_sync.models.conversation import CONVERSATION_NATURAL_KEY, Conversation
from inbox_sync.models.integration_instance import IntegrationInstance
from inbox_sync.models.message import MESSAGE_EXTERNAL_ID_KEY, ConversationMessage
from inbox_sync.models.sync_run import SyncRun

__all__ = [
    "AppLog",
    "Base",
    "TimestampMixin",
    "CONVERSATION_NATURAL_KEY",
    "Conversation",
    "ConversationMessage",
    "IntegrationInstance",
    "MESSAGE_EXTERNAL_ID_KEY",
    "SyncRun",
]
