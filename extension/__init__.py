from __future__ import annotations

from .blocks import ArgumentInfo, ArgumentType, BlockInfo, BlockType, ExtensionInfo
from .googletm import TeachableMachineExtension, create_extension

__all__ = [
    "ArgumentInfo",
    "ArgumentType",
    "BlockInfo",
    "BlockType",
    "ExtensionInfo",
    "TeachableMachineExtension",
    "create_extension",
]
