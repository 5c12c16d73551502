"""
SupportBot - chat-ops autoresponder for support channels.
"""

__version__ = "0.1.0"
__logo__ = "🛟"
