"""
localchat - chat with local GGUF models through a supervised llama-server.

The engine has two halves:
- BackendSupervisor launches, health-checks and stops the backend
- ChatSession owns the transcript and streams replies from it
"""

from localchat.config import EngineSettings, GenerationParams
from localchat.models import ModelReference
from localchat.session import ChatMessage, ChatSession, MessageStatus
from localchat.supervisor import BackendSupervisor

__all__ = [
    "BackendSupervisor",
    "ChatMessage",
    "ChatSession",
    "EngineSettings",
    "GenerationParams",
    "MessageStatus",
    "ModelReference",
]
