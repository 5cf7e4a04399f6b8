"""Messaging services."""

from chatcore.services.conversation_manager import ConversationManager
from chatcore.services.encryption_service import E2EEMessageEncryptionService, MessageEncryptionService
from chatcore.services.facade import MessagingFacade
from chatcore.services.message_repository import MessageRepository
from chatcore.services.realtime import PollingTrigger, RealtimeSyncManager, UpdateTrigger

__all__ = [
    "ConversationManager",
    "E2EEMessageEncryptionService",
    "MessageEncryptionService",
    "MessagingFacade",
    "MessageRepository",
    "PollingTrigger",
    "RealtimeSyncManager",
    "UpdateTrigger",
]
