"""
Unified LLM Client - DeepSeek and Gemini with automatic fallback.

Generation returns plain text; structured output goes through
``parse_structured`` which hands back a ``StructuredResult`` instead of
raising, so callers handle malformed output by contract.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from dotenv import load_dotenv

from opportunity_engine.config.settings import settings

load_dotenv()

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class TextGenerator(Protocol):
    """Text-generation capability consumed by the agents."""

    async def generate(self, prompt: str) -> str:
        ...


@dataclass(frozen=True)
class ParseError:
    message: str
    raw_text: str = ""


@dataclass(frozen=True)
class StructuredResult:
    """Either a parsed JSON object or the reason it could not be parsed."""
    value: Optional[Dict[str, Any]] = None
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None

    def unwrap_or(self, default: Dict[str, Any]) -> Dict[str, Any]:
        return self.value if self.ok else default


def parse_structured(text: Optional[str]) -> StructuredResult:
    """
    Extract a JSON object from generated text.

    Accepts bare JSON, fenced ```json blocks, or JSON embedded in prose.
    Never raises.
    """
    if not text or not text.strip():
        return StructuredResult(error=ParseError("empty response", text or ""))

    candidates = []
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    last_error = "no JSON object found"
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = f"invalid JSON: {e.msg}"
            continue
        if isinstance(parsed, dict):
            return StructuredResult(value=parsed)
        last_error = f"expected a JSON object, got {type(parsed).__name__}"

    return StructuredResult(error=ParseError(last_error, text[:500]))


class LLMClient:
    """
    Unified interface for multiple LLM providers.
    Supports DeepSeek and Gemini with automatic fallback.
    """

    def __init__(self, primary: str = "deepseek", fallback: str = "gemini",
                 timeout: float = None, temperature: float = 0.2):
        """
        Initialize LLM client.

        Args:
            primary: Primary LLM to use ('deepseek' or 'gemini')
            fallback: Fallback LLM if primary fails
            timeout: Seconds allowed per generation call
            temperature: Sampling temperature for every call
        """
        self.primary = primary
        self.fallback = fallback
        self.timeout = timeout or settings.GENERATION_TIMEOUT_SECONDS
        self.temperature = temperature

        # DeepSeek setup (OpenAI-compatible)
        self.deepseek_client = None
        if settings.DEEPSEEK_API_KEY:
            from openai import OpenAI
            self.deepseek_client = OpenAI(
                api_key=settings.DEEPSEEK_API_KEY,
                base_url="https://api.deepseek.com"
            )
            logger.info("DeepSeek client initialized")

        # Gemini setup
        self.gemini_model = None
        if settings.GEMINI_API_KEY:
            import google.generativeai as genai
            genai.configure(api_key=settings.GEMINI_API_KEY)
            self.gemini_model = genai.GenerativeModel('gemini-2.0-flash')
            logger.info("Gemini client initialized")

    @property
    def available(self) -> bool:
        return self.deepseek_client is not None or self.gemini_model is not None

    async def generate(self, prompt: str) -> str:
        """Generate text off the event loop, bounded by the client timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(self.generate_text, prompt),
            timeout=self.timeout
        )

    def generate_text(self, prompt: str, use_llm: Optional[str] = None) -> str:
        """Generate plain text, falling back to the secondary provider once."""
        llm_to_use = use_llm or self.primary

        try:
            if llm_to_use == "deepseek" and self.deepseek_client:
                return self._call_deepseek(prompt)
            elif llm_to_use == "gemini" and self.gemini_model:
                return self._call_gemini(prompt)
            else:
                raise ValueError(f"LLM '{llm_to_use}' not available")

        except Exception as e:
            logger.warning(f"⚠️  {llm_to_use} failed: {e}")

            if self.fallback and llm_to_use != self.fallback:
                logger.info(f"🔄 Trying fallback: {self.fallback}")
                return self.generate_text(prompt, use_llm=self.fallback)
            raise

    def _call_deepseek(self, prompt: str) -> str:
        """Call DeepSeek API"""
        response = self.deepseek_client.chat.completions.create(
            model="deepseek-chat",
            messages=[{"role": "user", "content": prompt}],
            temperature=self.temperature
        )
        return response.choices[0].message.content

    def _call_gemini(self, prompt: str) -> str:
        """Call Gemini API"""
        import google.generativeai as genai

        response = self.gemini_model.generate_content(
            prompt,
            generation_config=genai.types.GenerationConfig(
                temperature=self.temperature,
            )
        )
        return response.text


async def generate_structured(generator: TextGenerator, prompt: str,
                              schema: Dict[str, Any] = None) -> StructuredResult:
    """
    Ask for a JSON object and parse it.

    Provider failures propagate; malformed output comes back as a
    ``StructuredResult`` carrying a ``ParseError``.
    """
    if schema:
        prompt = (
            f"{prompt}\n\nRespond with valid JSON matching this schema:\n"
            f"{json.dumps(schema, indent=2, ensure_ascii=False)}\n\n"
            "IMPORTANT: Respond with ONLY valid JSON, no markdown code blocks."
        )
    text = await generator.generate(prompt)
    return parse_structured(text)
