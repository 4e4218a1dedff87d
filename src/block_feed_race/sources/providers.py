from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from block_feed_race.core.config import ConfigurationError


class RPCProvider(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    provider: str = ""
    status: str = ""

    @property
    def is_active(self) -> bool:
        return self.status.lower() == "active"

    def websocket_url(self) -> str:
        if self.url.startswith("https://"):
            return "wss://" + self.url.removeprefix("https://")
        if self.url.startswith("http://"):
            return "ws://" + self.url.removeprefix("http://")
        return self.url


class ProviderConfig(BaseModel):
    rpcs: dict[str, RPCProvider] = Field(default_factory=dict)

    def select(self, preferred_provider: str = "Helius") -> RPCProvider:
        """Pick an active entry of the preferred provider, else the first active entry."""
        active = [rpc for rpc in self.rpcs.values() if rpc.is_active]
        for rpc in active:
            if rpc.provider.lower() == preferred_provider.lower():
                return rpc
        if active:
            return active[0]
        raise ConfigurationError("No active RPCs found in provider config")


def load_provider_config(path: Path) -> ProviderConfig:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot read provider config {path}: {exc}") from exc
    try:
        return ProviderConfig.model_validate(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid provider config {path}: {exc}") from exc
