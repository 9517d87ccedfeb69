"""Chat channels module."""

from telecode.channels.base import (
    BaseChannel,
    Button,
    CallbackPress,
    IncomingCommand,
    IncomingFile,
    IncomingText,
    Keyboard,
    split_message,
)

__all__ = [
    "BaseChannel",
    "Button",
    "CallbackPress",
    "IncomingCommand",
    "IncomingFile",
    "IncomingText",
    "Keyboard",
    "split_message",
]
