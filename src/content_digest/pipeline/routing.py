"""Resolution of a job's provider name into a client, request config and orchestrator."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from content_digest.config import ProviderSettings
from content_digest.pipeline.orchestrator import AIRequestOrchestrator
from content_digest.pipeline.providers import AIProvider, ProviderConfig, build_provider


@dataclass(slots=True)
class ResolvedProvider:
    """Provider-specific pieces the worker needs to run one job."""

    config: ProviderConfig
    orchestrator: AIRequestOrchestrator


class ProviderRouter:
    """Caches one provider client and orchestrator per provider name.

    ``providers`` overrides the clients built from settings, which is how tests
    and the CLI demo plug in scripted or local providers.
    """

    def __init__(
        self,
        *,
        settings: ProviderSettings,
        providers: Mapping[str, AIProvider] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._providers: dict[str, AIProvider] = {
            name.strip().lower(): provider for name, provider in (providers or {}).items()
        }
        self._orchestrators: dict[str, AIRequestOrchestrator] = {}
        self._sleep = sleep
        self._lock = threading.Lock()

    def resolve(self, name: str | None) -> ResolvedProvider:
        """Raise ``ValueError`` for an unsupported provider name."""

        config = self.settings.provider_config(name)
        with self._lock:
            orchestrator = self._orchestrators.get(config.name)
            if orchestrator is None:
                provider = self._providers.get(config.name) or build_provider(config.name)
                self._providers[config.name] = provider
                orchestrator = AIRequestOrchestrator(
                    provider=provider,
                    max_concurrency=self.settings.concurrency,
                    max_retries=self.settings.max_retries,
                    retry_base_ms=self.settings.retry_base_ms,
                    sleep=self._sleep,
                )
                self._orchestrators[config.name] = orchestrator
        return ResolvedProvider(config=config, orchestrator=orchestrator)

    def close(self) -> None:
        with self._lock:
            for provider in self._providers.values():
                close = getattr(provider, "close", None)
                if callable(close):
                    close()
