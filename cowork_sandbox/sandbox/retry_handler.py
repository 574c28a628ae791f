"""
Restart and fallback policy for an unreachable sandbox agent.

When a VM agent stops answering, the adapter restarts it a bounded number
of times before falling back to native execution, if that is allowed.
"""

import logging

from ..errors import ConfigurationError, SandboxError, SecurityViolation

logger = logging.getLogger(__name__)


class SandboxRetryHandler:
    """Decides whether a failed backend call is restarted, retried or escalated."""

    def __init__(self, config):
        """
        Initialize retry handler.

        Args:
            config: SandboxConfig instance
        """
        self.config = config
        self.restart_count = 0

    def is_retryable(self, error: SandboxError) -> bool:
        """Security and configuration errors are surfaced immediately, never retried."""
        if isinstance(error, (SecurityViolation, ConfigurationError)):
            return False
        return error.retryable

    def should_restart_agent(self, error: SandboxError) -> bool:
        """
        Determine if the agent should be restarted after `error`.

        Args:
            error: The error raised by the backend call

        Returns:
            True if the error means the agent is gone and restarts remain
        """
        if not self.is_retryable(error):
            return False

        if self.restart_count >= self.config.max_agent_restarts:
            logger.warning(
                f"Agent restart limit reached ({self.restart_count}/"
                f"{self.config.max_agent_restarts})"
            )
            return False

        return True

    def record_restart(self) -> None:
        self.restart_count += 1
        logger.info(f"Agent restart attempt {self.restart_count}")

    def should_fall_back(self) -> bool:
        """Whether a failed VM backend may be replaced by native execution."""
        if not self.config.allow_native_fallback:
            logger.debug("Native fallback disabled by configuration")
            return False
        return True

    def reset(self) -> None:
        self.restart_count = 0
