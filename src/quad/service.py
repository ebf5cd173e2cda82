"""Composition root: runtime, job bridge and API server with ordered teardown."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from quad.bridge.api_server import ApiServer
from quad.bridge.job_bridge import JobBridge
from quad.config import Settings
from quad.engine.driver import LoopEventListener
from quad.engine.models import AgentConfig
from quad.runtime import QuadRuntime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceOptions:
    """Which surfaces to boot."""

    enable_api: bool = True
    enable_bridge: bool = True
    start_loop: bool = False


class QuadService:
    """Own every long-lived component of one running instance."""

    def __init__(self, settings: Settings, options: ServiceOptions | None = None) -> None:
        self.settings = settings
        self.options = options or ServiceOptions()
        self.runtime = QuadRuntime(settings=settings.supervisor)
        self.bridge: JobBridge | None = None
        self.api: ApiServer | None = None
        self._started = False

    def start(
        self,
        *,
        agents: list[AgentConfig] | None = None,
        loop_listener: LoopEventListener | None = None,
    ) -> QuadService:
        if self._started:
            return self
        self._started = True
        self.runtime.start()
        try:
            if loop_listener is not None:
                self.runtime.add_loop_listener(loop_listener)
            for config in agents or []:
                self.runtime.add_agent(config)
            if self.options.enable_bridge:
                self.bridge = JobBridge(
                    host=self.runtime,
                    job_file_path=self.settings.bridge.job_file_path,
                    poll_interval_seconds=self.settings.bridge.poll_interval_seconds,
                )
                self.bridge.start()
            if self.options.enable_api:
                self.api = ApiServer(
                    self.runtime,
                    host=self.settings.api.host,
                    port=self.settings.api.port,
                )
                self.api.start()
            if self.options.start_loop:
                self.runtime.start_loop()
        except BaseException:
            self.stop()
            raise
        return self

    def stop(self) -> None:
        """Stop polling, close the listener, then kill every agent. Idempotent."""

        if not self._started:
            return
        self._started = False
        if self.bridge is not None:
            self.bridge.stop()
        if self.api is not None:
            self.api.close()
        self.runtime.shutdown()
        logger.info("Shutdown complete")

    def __enter__(self) -> QuadService:
        return self.start()

    def __exit__(self, *_: object) -> None:
        self.stop()
