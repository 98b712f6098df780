"""Model client, conversation model, context budgeting and agent tools."""

from .client import AIClient, ClientSettings, TiktokenCounter

__all__ = ["AIClient", "ClientSettings", "TiktokenCounter"]
