"""
telecode - Telegram bridge for OpenCode coding agents
"""

__version__ = "0.3.0"
__logo__ = "📡"
