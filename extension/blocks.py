from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class BlockType(str, Enum):
    BUTTON = "button"
    COMMAND = "command"
    REPORTER = "reporter"


class ArgumentType(str, Enum):
    TEXT = "string"
    NUMBER = "number"


class ArgumentInfo(BaseModel):
    type: ArgumentType
    default_value: Any = Field(default=None, description="Value shown in the block slot")


class BlockInfo(BaseModel):
    opcode: str = Field(..., description="Handler name invoked by the host runtime")
    block_type: BlockType
    text: str
    arguments: Dict[str, ArgumentInfo] = Field(default_factory=dict)


class ExtensionInfo(BaseModel):
    id: str
    name: str
    blocks: List[BlockInfo]
    menus: Dict[str, Any] = Field(default_factory=dict)

    def opcodes(self) -> list[str]:
        return [block.opcode for block in self.blocks]


__all__ = ["ArgumentInfo", "ArgumentType", "BlockInfo", "BlockType", "ExtensionInfo"]
