"""
LLM Provider Abstraction Layer
Reasoning-model backends used by the decision loop.

Supported Providers:
- Ollama (Local, Free)
- Groq (Fast inference)
- Anthropic Claude
- OpenAI GPT
- Scripted (deterministic, for tests and dry runs)
"""

from typing import Dict, List, Optional, Union
from abc import ABC, abstractmethod
import os
import logging
import asyncio
from tenacity import retry, stop_after_attempt, wait_exponential


class BaseLLMProvider(ABC):
    """Base class for all LLM providers."""

    @abstractmethod
    def chat(self, messages: List[Dict], **kwargs) -> str:
        """Chat completion."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        pass

    def complete(self, prompt: str, **kwargs) -> str:
        return self.chat([{"role": "user", "content": prompt}], **kwargs)

    async def complete_async(self, prompt: str, **kwargs) -> str:
        return await self.chat_async([{"role": "user", "content": prompt}], **kwargs)

    async def chat_async(self, messages: List[Dict], **kwargs) -> str:
        """Async version of chat."""
        return await asyncio.to_thread(self.chat, messages, **kwargs)


def _sanitize_params(kwargs: Dict, valid: set) -> Dict:
    """Translate format='json' to response_format and drop unknown params."""
    clean = {}
    for k, v in kwargs.items():
        if k == 'format' and v == 'json':
            clean['response_format'] = {"type": "json_object"}
        elif k in valid:
            clean[k] = v
    return clean


# ============================================================================
# LOCAL PROVIDERS
# ============================================================================

class OllamaProvider(BaseLLMProvider):
    """
    Ollama - Run LLMs locally (FREE, OPENSOURCE)

    Models: llama3, mistral, qwen2.5, etc.
    """

    def __init__(self,
                 model: str = "llama3",
                 base_url: str = "http://localhost:11434",
                 timeout: float = 600.0,
                 **kwargs):
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.logger = logging.getLogger("Ollama")
        self._test_connection()

    def _test_connection(self):
        """Test Ollama connection."""
        import httpx
        try:
            with httpx.Client(timeout=2.0) as client:
                response = client.get(f"{self.base_url}/api/tags")
                if response.status_code == 200:
                    self.logger.info(f"[OK] Ollama connected: {self.model}")
                else:
                    raise ConnectionError(f"Ollama returned {response.status_code}")
        except httpx.HTTPError as e:
            raise ConnectionError(f"Ollama not running at {self.base_url}: {e}")

    def _payload(self, messages: List[Dict], kwargs: Dict) -> Dict:
        options = {k: kwargs[k] for k in ('temperature', 'top_p', 'seed', 'num_ctx') if k in kwargs}
        payload = {"model": kwargs.get("model") or self.model, "messages": messages, "stream": False}
        if options:
            payload["options"] = options
        if kwargs.get("format") == "json":
            payload["format"] = "json"
        return payload

    @staticmethod
    def _content(data: Dict) -> str:
        if "message" in data:
            return data["message"].get("content", "")
        if "response" in data:
            return data["response"]
        raise KeyError(f"Unexpected Ollama response format: {data}")

    def chat(self, messages: List[Dict], **kwargs) -> str:
        import httpx
        with httpx.Client(timeout=httpx.Timeout(self.timeout)) as client:
            response = client.post(f"{self.base_url}/api/chat", json=self._payload(messages, kwargs))
            response.raise_for_status()
            return self._content(response.json())

    async def chat_async(self, messages: List[Dict], **kwargs) -> str:
        import httpx
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
            response = await client.post(f"{self.base_url}/api/chat", json=self._payload(messages, kwargs))
            response.raise_for_status()
            return self._content(response.json())

    @property
    def name(self) -> str:
        return f"Ollama/{self.model}"


class ScriptedLLMProvider(BaseLLMProvider):
    """
    Deterministic provider that replays a list of responses.

    Entries may be strings or exceptions (raised when reached). Once the
    script is exhausted the last entry repeats.
    """

    def __init__(self, responses: Optional[List[Union[str, Exception]]] = None,
                 model: str = "scripted", **kwargs):
        self.model = model
        self.responses = list(responses or ["Scripted response"])
        self.calls: List[List[Dict]] = []
        # Model requested for each call (None when the caller used the default)
        self.models: List[Optional[str]] = []

    def _next(self, messages: List[Dict], kwargs: Dict) -> str:
        self.calls.append([dict(m) for m in messages])
        self.models.append(kwargs.get("model"))
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response

    def chat(self, messages: List[Dict], **kwargs) -> str:
        return self._next(messages, kwargs)

    async def chat_async(self, messages: List[Dict], **kwargs) -> str:
        return self._next(messages, kwargs)

    @property
    def name(self) -> str:
        return "Scripted/LLM"


# ============================================================================
# CLOUD PROVIDERS
# ============================================================================

class GroqProvider(BaseLLMProvider):
    """Groq - Ultra-fast inference (FREE tier, OPENSOURCE models)."""

    VALID_PARAMS = {'temperature', 'max_tokens', 'top_p', 'stop', 'response_format', 'seed'}

    def __init__(self,
                 model: str = "llama-3.3-70b-versatile",
                 api_key: Optional[str] = None,
                 **kwargs):
        self.model = model
        self.api_key = api_key or os.getenv("GROQ_API_KEY")
        self.logger = logging.getLogger("Groq")

        if not self.api_key:
            raise ValueError("GROQ_API_KEY required")

        try:
            from groq import Groq, AsyncGroq
        except ImportError:
            raise ImportError("pip install groq")
        self.client = Groq(api_key=self.api_key)
        self.async_client = AsyncGroq(api_key=self.api_key)
        self.logger.info(f"[OK] Groq connected: {model}")

    @retry(wait=wait_exponential(multiplier=1, min=4, max=60), stop=stop_after_attempt(5), reraise=True)
    async def chat_async(self, messages: List[Dict], **kwargs) -> str:
        try:
            response = await self.async_client.chat.completions.create(
                model=kwargs.get("model") or self.model,
                messages=messages,
                **_sanitize_params(kwargs, self.VALID_PARAMS)
            )
        except Exception as e:
            self.logger.error(f"Groq Chat Async Error: {e}")
            raise
        return response.choices[0].message.content or ""

    @retry(wait=wait_exponential(multiplier=1, min=4, max=60), stop=stop_after_attempt(5), reraise=True)
    def chat(self, messages: List[Dict], **kwargs) -> str:
        try:
            response = self.client.chat.completions.create(
                model=kwargs.get("model") or self.model,
                messages=messages,
                **_sanitize_params(kwargs, self.VALID_PARAMS)
            )
        except Exception as e:
            self.logger.error(f"Groq Chat Error: {e}")
            raise
        return response.choices[0].message.content or ""

    @property
    def name(self) -> str:
        return f"Groq/{self.model}"


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude (PAID)."""

    def __init__(self,
                 model: str = "claude-3-5-sonnet-latest",
                 api_key: Optional[str] = None,
                 **kwargs):
        self.model = model
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")

        try:
            import anthropic
        except ImportError:
            raise ImportError("pip install anthropic")
        self.client = anthropic.Anthropic(api_key=self.api_key)
        self.async_client = anthropic.AsyncAnthropic(api_key=self.api_key)

    @staticmethod
    def _split_system(messages: List[Dict]):
        # The Messages API takes the system prompt as a separate parameter
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        rest = [m for m in messages if m["role"] != "system"]
        return system, rest

    def chat(self, messages: List[Dict], **kwargs) -> str:
        system, rest = self._split_system(messages)
        response = self.client.messages.create(
            model=kwargs.get("model") or self.model,
            system=system,
            messages=rest,
            max_tokens=kwargs.get("max_tokens", 1024)
        )
        return response.content[0].text

    async def chat_async(self, messages: List[Dict], **kwargs) -> str:
        system, rest = self._split_system(messages)
        response = await self.async_client.messages.create(
            model=kwargs.get("model") or self.model,
            system=system,
            messages=rest,
            max_tokens=kwargs.get("max_tokens", 1024)
        )
        return response.content[0].text

    @property
    def name(self) -> str:
        return f"Anthropic/{self.model}"


class OpenAIProvider(BaseLLMProvider):
    """OpenAI GPT (PAID)."""

    VALID_PARAMS = {'temperature', 'max_tokens', 'top_p', 'stop', 'response_format', 'seed',
                    'presence_penalty', 'frequency_penalty'}

    def __init__(self,
                 model: str = "gpt-4o",
                 api_key: Optional[str] = None,
                 **kwargs):
        self.model = model
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key or self.api_key.startswith("sk-..."):
            raise ValueError("OpenAI API key is invalid or placeholder")

        import openai
        self.client = openai.OpenAI(api_key=self.api_key)
        self.async_client = openai.AsyncOpenAI(api_key=self.api_key)

    def chat(self, messages: List[Dict], **kwargs) -> str:
        response = self.client.chat.completions.create(
            model=kwargs.get("model") or self.model,
            messages=messages,
            **_sanitize_params(kwargs, self.VALID_PARAMS)
        )
        return response.choices[0].message.content or ""

    async def chat_async(self, messages: List[Dict], **kwargs) -> str:
        response = await self.async_client.chat.completions.create(
            model=kwargs.get("model") or self.model,
            messages=messages,
            **_sanitize_params(kwargs, self.VALID_PARAMS)
        )
        return response.choices[0].message.content or ""

    @property
    def name(self) -> str:
        return f"OpenAI/{self.model}"


class LLMFactory:
    """
    Factory for creating LLM providers.

    Priority order for auto-detection:
    1. Local (Ollama)
    2. Cloud Free Tier (Groq)
    3. Commercial (Claude, GPT)
    """

    PROVIDERS = {
        'ollama': OllamaProvider,
        'groq': GroqProvider,
        'anthropic': AnthropicProvider,
        'openai': OpenAIProvider,
        'scripted': ScriptedLLMProvider,
    }

    @classmethod
    def create(cls,
               provider: str = "ollama",
               model: Optional[str] = None,
               **kwargs) -> BaseLLMProvider:
        """
        Create LLM provider.

        Args:
            provider: Provider name
            model: Model name (optional, uses default)
            **kwargs: Provider-specific kwargs
        """
        if provider not in cls.PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}. "
                             f"Available: {list(cls.PROVIDERS.keys())}")

        provider_class = cls.PROVIDERS[provider]
        if model:
            return provider_class(model=model, **kwargs)
        return provider_class(**kwargs)

    @classmethod
    def auto_detect(cls, timeout: float = 600.0) -> BaseLLMProvider:
        """Auto-detect best available provider."""
        logger = logging.getLogger("LLMFactory")

        try:
            provider = cls.create("ollama", timeout=timeout)
            logger.info("[OK] Using Ollama (local, free)")
            return provider
        except (ConnectionError, ImportError) as e:
            logger.debug(f"Ollama unavailable: {e}")

        for name, env in (("groq", "GROQ_API_KEY"), ("anthropic", "ANTHROPIC_API_KEY"), ("openai", "OPENAI_API_KEY")):
            if os.getenv(env):
                try:
                    provider = cls.create(name)
                    logger.info(f"[OK] Using {provider.name}")
                    return provider
                except Exception as e:
                    logger.warning(f"  {name} unavailable: {e}")

        raise RuntimeError(
            "No LLM provider available. Install Ollama or set API keys."
        )
