"""
KutAgent CLI - line-based chat with a tool-using model.
"""

from kutagent.cli.chat import ChatSession, ConsoleUser, main

__all__ = ["ChatSession", "ConsoleUser", "main"]
