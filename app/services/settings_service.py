"""Resolves per-user RunPod credentials and endpoint ids.

Lookup order for each value: the user's stored settings row (Supabase), then
the process environment. A missing API key or endpoint id is a
``ConfigurationError``, never a crash.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from supabase import Client

from app.config import settings
from app.db.supabase_client import get_supabase, run_query
from app.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class RunPodSettings:
    api_key: str
    endpoint_id: str
    generate_timeout: float


class SettingsProvider(ABC):
    @abstractmethod
    async def runpod_for(self, user_id: str, model_id: str, default_timeout: float) -> RunPodSettings:
        ...


def _resolve(
    config: Dict[str, Any],
    model_id: str,
    default_timeout: float,
) -> RunPodSettings:
    api_key = config.get("apiKey")
    endpoint_id = (config.get("endpoints") or {}).get(model_id)
    if not api_key or not endpoint_id:
        raise ConfigurationError(
            f"RunPod configuration incomplete. Please configure your API key "
            f"and the '{model_id}' endpoint in Settings."
        )
    timeout = config.get("generateTimeout") or default_timeout
    return RunPodSettings(api_key=api_key, endpoint_id=endpoint_id, generate_timeout=float(timeout))


class EnvSettingsProvider(SettingsProvider):
    """Credentials from the process configuration (RUNPOD_* env vars)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoints: Optional[Dict[str, str]] = None,
        generate_timeout: Optional[float] = None,
    ):
        self._config = {
            "apiKey": api_key if api_key is not None else settings.runpod_api_key,
            "endpoints": endpoints if endpoints is not None else settings.runpod_endpoints,
            "generateTimeout": generate_timeout if generate_timeout is not None else settings.runpod_generate_timeout,
        }

    @property
    def config(self) -> Dict[str, Any]:
        return self._config

    async def runpod_for(self, user_id, model_id, default_timeout):
        return _resolve(self._config, model_id, default_timeout)


class SupabaseSettingsProvider(SettingsProvider):
    """Per-user settings stored as ``{user_id, service_name, config}`` rows."""

    def __init__(
        self,
        fallback: Optional[EnvSettingsProvider] = None,
        client: Optional[Client] = None,
        table: Optional[str] = None,
    ):
        self._fallback = fallback or EnvSettingsProvider()
        self._client = client
        self._table = table or settings.settings_table

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def _user_config(self, user_id: str) -> Dict[str, Any]:
        response = await run_query(
            self.client.table(self._table)
            .select("config")
            .eq("user_id", user_id)
            .eq("service_name", "runpod")
            .limit(1)
            .execute
        )
        if not response.data:
            return {}
        return response.data[0].get("config") or {}

    async def runpod_for(self, user_id, model_id, default_timeout):
        user_config = await self._user_config(user_id) if user_id else {}
        base = self._fallback.config
        merged = {
            "apiKey": user_config.get("apiKey") or base.get("apiKey"),
            "endpoints": {**(base.get("endpoints") or {}), **(user_config.get("endpoints") or {})},
            "generateTimeout": user_config.get("generateTimeout") or base.get("generateTimeout"),
        }
        return _resolve(merged, model_id, default_timeout)
