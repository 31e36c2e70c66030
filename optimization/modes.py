"""
Mode Selector - which generation modes can be used right now.
"""

from shared.logging import get_logger

from .client import OptimizerClient
from .models import GenerationMode, ModeAvailability

log = get_logger("optimization", "modes")

DISABLED_REASON = "Optimizer integration disabled"
UNHEALTHY_REASON = "Optimizer is not reachable or not healthy"


class ModeSelector:
    """
    Reports availability per GenerationMode.

    MANUAL is always available. The AI modes share a single health check,
    evaluated on every call; remote health is never cached.
    """

    def __init__(self, client: OptimizerClient, enabled: bool = True):
        self.client = client
        self.enabled = enabled

    async def _optimizer_reason(self):
        """None when the optimizer can be used, otherwise why not."""
        if not self.enabled:
            return DISABLED_REASON
        if await self.client.health_check():
            return None
        return UNHEALTHY_REASON

    async def available_modes(self) -> list[ModeAvailability]:
        reason = await self._optimizer_reason()
        modes = []
        for mode in GenerationMode:
            if not mode.requires_optimizer:
                modes.append(ModeAvailability(mode=mode, available=True))
            else:
                modes.append(ModeAvailability(
                    mode=mode, available=reason is None, reason=reason,
                ))
        log.debug("optimization.modes.evaluated",
                  optimizer_available=reason is None, reason=reason)
        return modes

    async def check(self, mode: GenerationMode) -> ModeAvailability:
        """Availability of one mode; calls the optimizer only for AI modes."""
        if not mode.requires_optimizer:
            return ModeAvailability(mode=mode, available=True)
        reason = await self._optimizer_reason()
        return ModeAvailability(mode=mode, available=reason is None, reason=reason)

    async def is_available(self, mode: GenerationMode) -> bool:
        return (await self.check(mode)).available
