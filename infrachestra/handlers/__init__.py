"""
Action handlers for step dispatch.

- Handler: abstract base
- NoOpHandler: returns a description without side effects
- CommandHandler: runs terraform/aws/kubectl/helm style commands
- HandlerRegistry: name -> handler dispatch
"""

from .base import Handler, NoOpHandler
from .command import CommandHandler
from .registry import HandlerRegistry

__all__ = [
    "Handler",
    "NoOpHandler",
    "CommandHandler",
    "HandlerRegistry",
]
