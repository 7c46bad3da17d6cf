#!/usr/bin/env python3
"""
LLM Configuration for Glaskugel
Resolves API keys and the provider behind a model identifier
"""

import os
import logging
from typing import Dict, Mapping, Optional, Tuple
from pathlib import Path

from dotenv import load_dotenv

from glaskugel.errors import ConfigurationError

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class LLMConfig:
    """Centralized LLM credentials and provider detection"""

    DEFAULT_MODELS = {
        "openai": "gpt-4o",
        "anthropic": "claude-3-5-sonnet-20241022",
        "openrouter": "openai/gpt-4o",
    }

    def __init__(self, env: Optional[Mapping[str, str]] = None, use_dotenv: bool = True):
        self._env = env
        self.load_environment(use_dotenv)

    def _getenv(self, name: str) -> Optional[str]:
        source = os.environ if self._env is None else self._env
        value = (source.get(name) or "").strip()
        return value or None

    def load_environment(self, use_dotenv: bool = True):
        """Load keys from the environment, falling back to the project .env"""
        self.llm_model = self._getenv('LLM_MODEL')
        self.openai_key = self._getenv('OPENAI_API_KEY')
        self.anthropic_key = self._getenv('ANTHROPIC_API_KEY')
        self.openrouter_key = self._getenv('OPENROUTER_API_KEY')

        if use_dotenv and self._env is None and not self.has_any_key():
            self._load_dotenv_fallback()

    def _load_dotenv_fallback(self):
        """Fallback to loading from .env file next to the project root"""
        env_path = Path(__file__).parent / '.env'
        if env_path.exists():
            load_dotenv(env_path)
            self.llm_model = self._getenv('LLM_MODEL')
            self.openai_key = self._getenv('OPENAI_API_KEY')
            self.anthropic_key = self._getenv('ANTHROPIC_API_KEY')
            self.openrouter_key = self._getenv('OPENROUTER_API_KEY')
            logging.info("Loaded API keys from %s", env_path)

    def has_any_key(self) -> bool:
        return bool(self.openai_key or self.anthropic_key or self.openrouter_key)

    def get_model_config(self, model: Optional[str] = None) -> Tuple[str, str, str]:
        """
        Resolve the provider for a model identifier.

        ``LLM_MODEL`` from the environment wins over the passed model so an
        operator can pin a model without touching stored settings.

        Returns:
            Tuple of (provider, model, api_key)

        Raises:
            ConfigurationError: when no credential is available for the model.
        """
        cleaned = (self.llm_model or model or "").strip() or self.DEFAULT_MODELS["openai"]

        # Explicit provider/model slugs (e.g. "anthropic/claude-3.5-sonnet")
        if "/" in cleaned:
            prefix, remainder = cleaned.split("/", 1)
            prefix = prefix.strip().lower()
            remainder = remainder.strip()
            slug = remainder if prefix == "openrouter" and remainder else cleaned
            if self.openrouter_key:
                return "openrouter", slug, self.openrouter_key
            if prefix in {"openai", "anthropic"} and remainder:
                direct_key = self._get_api_key(prefix)
                if direct_key:
                    return prefix, remainder, direct_key
            raise ConfigurationError(
                f"OPENROUTER_API_KEY not configured (required for model '{cleaned}')"
            )

        provider = self._detect_provider_from_model(cleaned)
        api_key = self._get_api_key(provider)
        if api_key:
            return provider, cleaned, api_key

        # Route through OpenRouter when only that key is present
        if self.openrouter_key:
            logging.debug("LLM fallback via openrouter: %s/%s", provider, cleaned)
            return "openrouter", f"{provider}/{cleaned}", self.openrouter_key

        raise ConfigurationError(f"{provider.upper()}_API_KEY not configured")

    def _get_api_key(self, provider: str) -> Optional[str]:
        """Get API key for specified provider"""
        if provider == "openai":
            return self.openai_key
        elif provider == "anthropic":
            return self.anthropic_key
        elif provider == "openrouter":
            return self.openrouter_key
        return None

    def _detect_provider_from_model(self, model: str) -> str:
        """Detect provider from a bare model name"""
        lowered = model.lower()
        if any(prefix in lowered for prefix in ['claude', 'anthropic']):
            return "anthropic"
        return "openai"

    def get_available_providers(self) -> Dict[str, bool]:
        """Get status of available providers"""
        return {
            "openai": bool(self.openai_key),
            "anthropic": bool(self.anthropic_key),
            "openrouter": bool(self.openrouter_key),
        }


# Global instance
llm_config = LLMConfig()
