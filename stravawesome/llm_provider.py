"""
LLM Provider Abstraction
Supports OpenAI, OpenRouter and Gemini for the training coach.
"""
import hashlib
import logging
from typing import Optional

import httpx
from google import genai
from google.genai import types
from openai import AsyncOpenAI

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
FALLBACK_RESPONSE = "Sorry, I could not generate a response."


class LLMProvider:
    """
    Unified interface for the supported LLM providers: a system prompt and a
    user prompt go in, text comes out.
    """

    def __init__(self, settings: Settings = default_settings, http: Optional[httpx.AsyncClient] = None):
        self.provider = settings.LLM_PROVIDER.lower()
        self.model = settings.LLM_MODEL
        self._http = http

        if self.provider == "openai":
            self.api_key = settings.OPENAI_API_KEY.strip()
            if not self.api_key:
                raise ValueError("OPENAI_API_KEY not set")
            self.client = AsyncOpenAI(api_key=self.api_key)
        elif self.provider == "openrouter":
            self.api_key = settings.OPENROUTER_API_KEY.strip()
            if not self.api_key:
                raise ValueError("OPENROUTER_API_KEY not set")
            # Log confirmation that the key is loaded without leaking it
            key_hash = hashlib.sha256(self.api_key.encode()).hexdigest()[:16]
            logger.info(f"Loaded OpenRouter Key (sha256-hash: {key_hash})")
            self.referer = settings.OPENROUTER_REFERER
        elif self.provider == "gemini":
            self.api_key = settings.GEMINI_API_KEY.strip()
            if not self.api_key:
                raise ValueError("GEMINI_API_KEY not set")
            self.client = genai.Client(api_key=self.api_key)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider}")

    async def generate(
        self,
        prompt: str,
        system_instruction: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> str:
        logger.info(f"LLM request: provider={self.provider} model={self.model} max_tokens={max_tokens}")
        if self.provider == "openai":
            return await self._generate_openai(prompt, system_instruction, temperature, max_tokens)
        if self.provider == "openrouter":
            return await self._generate_openrouter(prompt, system_instruction, temperature, max_tokens)
        return await self._generate_gemini(prompt, system_instruction, temperature, max_tokens)

    async def _generate_openai(self, prompt: str, system_instruction: str,
                               temperature: float, max_tokens: int) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if not completion.choices:
            return FALLBACK_RESPONSE
        return completion.choices[0].message.content or FALLBACK_RESPONSE

    async def _generate_openrouter(self, prompt: str, system_instruction: str,
                                   temperature: float, max_tokens: int) -> str:
        """Generate using OpenRouter's OpenAI-compatible endpoint via httpx."""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": "StravAwesome",
        }

        try:
            if self._http is not None:
                response = await self._http.post(OPENROUTER_URL, headers=headers, json=payload, timeout=60.0)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(OPENROUTER_URL, headers=headers, json=payload, timeout=60.0)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"OpenRouter HTTP Error: {e.response.status_code} - {e.response.text}")
            raise ValueError(f"OpenRouter HTTP Error {e.response.status_code}: {e.response.text}") from e

        data = response.json()
        if "error" in data:
            logger.error(f"OpenRouter API returned error in JSON: {data}")
            raise ValueError(f"OpenRouter API Error: {data['error']}")
        return data["choices"][0]["message"].get("content") or FALLBACK_RESPONSE

    async def _generate_gemini(self, prompt: str, system_instruction: str,
                               temperature: float, max_tokens: int) -> str:
        # Clean model name if it has a prefix (OpenRouter style)
        clean_model = self.model.split("/")[-1]
        if not clean_model.startswith("gemini-"):
            clean_model = "gemini-2.0-flash"

        response = await self.client.aio.models.generate_content(
            model=clean_model,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=system_instruction,
                temperature=temperature,
                max_output_tokens=max_tokens,
            ),
        )
        return response.text or FALLBACK_RESPONSE
