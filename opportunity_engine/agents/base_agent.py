"""
Base Agent class for the report agents.

Agents receive their text generator from the caller; they never build
their own client or reach into another agent's.
"""

import json
import logging
from abc import ABC
from dataclasses import dataclass
from typing import Any, Dict, List

from opportunity_engine.core.llm_client import (
    StructuredResult, TextGenerator, generate_structured,
)

logger = logging.getLogger(__name__)


@dataclass
class AgentMessage:
    """Record of one exchange with the generator"""
    sender: str
    message_type: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "sender": self.sender,
            "type": self.message_type,
            "payload": self.payload
        }


class BaseAgent(ABC):
    """Abstract base class for generation agents."""

    def __init__(self, name: str, generator: TextGenerator, description: str = ""):
        self.name = name
        self.generator = generator
        self.description = description
        self.message_log: List[AgentMessage] = []

    def get_status(self) -> Dict:
        parse_failures = sum(1 for m in self.message_log if m.message_type == "parse_error")
        return {
            "name": self.name,
            "description": self.description,
            "messages_processed": len(self.message_log),
            "parse_failures": parse_failures,
        }

    async def _generate_text(self, prompt: str) -> str:
        text = await self.generator.generate(prompt)
        self.message_log.append(AgentMessage(self.name, "text", {"chars": len(text or "")}))
        return text or ""

    async def _generate_structured(self, prompt: str, schema: Dict = None,
                                   purpose: str = "") -> StructuredResult:
        """Structured call; malformed output is logged and returned as an error result."""
        result = await generate_structured(self.generator, prompt, schema)
        if result.ok:
            self.message_log.append(AgentMessage(self.name, "structured", {"purpose": purpose}))
        else:
            logger.warning(f"{self.name}: unparseable {purpose or 'output'}: {result.error.message}")
            self.message_log.append(AgentMessage(
                self.name, "parse_error",
                {"purpose": purpose, "error": result.error.message}
            ))
        return result

    @staticmethod
    def _json(data: Any) -> str:
        return json.dumps(data, ensure_ascii=False, indent=2, default=str)

    def __repr__(self):
        return f"<{self.name}>"
