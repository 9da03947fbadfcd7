"""IMAP protocol engine port, its aioimaplib adapter and protocol events."""

from .aioimap import AioImapEngine
from .engine import ProtocolEngine

__all__ = ["AioImapEngine", "ProtocolEngine"]
