"""
Chat conversation formatting.

Provides:
- format_chat / format_chat_full: Render messages through a Jinja2 chat template
- ChatMessage, Role: Conversation data model
- RenderedPrompt, ChatFormat: Rendering result and detected layout
"""

from pocket_infer.chat.template import (
    ChatFormat,
    ChatMessage,
    RenderedPrompt,
    Role,
    TemplateDefaults,
    format_chat,
    format_chat_full,
    parse_messages,
)

__all__ = [
    "ChatFormat",
    "ChatMessage",
    "RenderedPrompt",
    "Role",
    "TemplateDefaults",
    "format_chat",
    "format_chat_full",
    "parse_messages",
]
