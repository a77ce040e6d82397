from __future__ import annotations

import logging

from pentrelay.base.config import get_config
from pentrelay.server.gateway import Gateway
from pentrelay.server.liveness import LivenessMonitor

logger = logging.getLogger(__name__)


class ApplicationState:
    _instance = None

    @classmethod
    def instance(cls) -> ApplicationState:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    def __init__(self):
        config = get_config()
        self.gateway = Gateway(config=config)
        self.monitor = LivenessMonitor(self.gateway, config=config.liveness)

    async def startup(self) -> None:
        self.monitor.start()

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.gateway.shutdown()
        logger.info("[State] All sessions closed")


def get_state() -> ApplicationState:
    return ApplicationState.instance()
