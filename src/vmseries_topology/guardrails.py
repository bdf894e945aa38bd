"""Blast radius governance and safety guardrails.

This module implements hard safety limits checked after planning and before
any provider mutation.

DESIGN PHILOSOPHY:
- Fail closed: When in doubt, block the operation
- Kill switch: Central control to halt all apply operations
- Protected resources: ``preventDestroy`` nodes are never deleted or replaced
- Destructive budget: Cap deletes + replaces per pass

A violation aborts the whole pass before the first Apply call. Dry runs skip
guardrails entirely since they never mutate.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .config import DEFAULT_MAX_DESTRUCTIVE_CHANGES, Config
from .diff import ChangeOperation, ChangeSet
from .graph import ConfigError, ResourceIdentity

logger = logging.getLogger(__name__)


class GuardrailViolation(ConfigError):
    """Raised when a guardrail check fails."""

    pass


class KillSwitchActive(GuardrailViolation):
    """Raised when kill switch is enabled."""

    pass


class ProtectedResourceViolation(GuardrailViolation):
    """Raised when a plan would delete or replace a preventDestroy resource."""

    def __init__(self, identities: list[ResourceIdentity]) -> None:
        self.identities = identities
        names = ", ".join(str(i) for i in identities)
        super().__init__(
            f"Plan would destroy protected resources: {names}. "
            f"Remove preventDestroy from their declarations to allow it."
        )


class DestructiveChangeLimitExceeded(GuardrailViolation):
    """Raised when a plan exceeds the per-pass delete + replace budget."""

    pass


@dataclass(frozen=True)
class GuardrailsConfig:
    """Configuration for blast radius guardrails.

    SECURITY: These settings enforce hard limits on what the controller can
    do. They cannot be bypassed by topology files, only by changing
    controller config.
    """

    # Kill switch - blocks all apply operations when True
    kill_switch_enabled: bool = False

    # Max deletes + replaces in a single pass
    max_destructive_changes: int = DEFAULT_MAX_DESTRUCTIVE_CHANGES

    @classmethod
    def from_config(cls, config: Config) -> GuardrailsConfig:
        return cls(
            kill_switch_enabled=config.kill_switch,
            max_destructive_changes=config.max_destructive_changes,
        )


class GuardrailEnforcer:
    """Enforces blast radius guardrails before any apply.

    SECURITY: This class is the gatekeeper for all mutation.
    Every change set MUST pass through check() before execution.

    Usage:
        enforcer = GuardrailEnforcer(config)
        enforcer.check(change_set)  # Raises on violation
    """

    def __init__(self, config: GuardrailsConfig) -> None:
        self._config = config

    @property
    def config(self) -> GuardrailsConfig:
        """Get the guardrails configuration."""
        return self._config

    def check(self, change_set: ChangeSet) -> None:
        """Run every guardrail against a planned change set.

        Raises:
            GuardrailViolation: On the first failing check.
        """
        if not change_set.actionable():
            return

        self.check_kill_switch()
        self.check_protected(change_set)
        self.check_destructive_limit(change_set)

    def check_kill_switch(self) -> None:
        """Check if kill switch is active.

        Raises:
            KillSwitchActive: If kill switch is enabled.
        """
        # Check environment variable (allows dynamic control)
        env_kill_switch = os.environ.get("KILL_SWITCH", "").lower() in ("true", "1", "yes")

        if self._config.kill_switch_enabled or env_kill_switch:
            logger.warning(
                "KILL_SWITCH: Apply operations blocked",
                extra={
                    "config_enabled": self._config.kill_switch_enabled,
                    "env_enabled": env_kill_switch,
                },
            )
            raise KillSwitchActive(
                "Kill switch is active. All apply operations are blocked. "
                "Set KILL_SWITCH=false to resume."
            )

    def check_protected(self, change_set: ChangeSet) -> None:
        """Block deletes and replaces of protected resources.

        Declared nodes are protected by their own flag. A node removed from
        the topology stays protected if it was protected when last applied.

        Raises:
            ProtectedResourceViolation: If a protected resource would be destroyed.
        """
        protected = [
            e.identity
            for e in change_set.destructive()
            if e.prevent_destroy and e.executable and e.before is not None
        ]

        if protected:
            logger.error(
                "GUARDRAIL: Protected resource destruction blocked",
                extra={"identities": [str(i) for i in protected]},
            )
            raise ProtectedResourceViolation(protected)

    def check_destructive_limit(self, change_set: ChangeSet) -> None:
        """Cap the number of deletes and replaces in one pass.

        Raises:
            DestructiveChangeLimitExceeded: If the plan exceeds the budget.
        """
        destructive = [
            e for e in change_set.destructive()
            if e.conflict is None and e.before is not None
        ]
        limit = self._config.max_destructive_changes
        if len(destructive) > limit:
            deletes = sum(1 for e in destructive if e.operation == ChangeOperation.DELETE)
            logger.error(
                "GUARDRAIL: Destructive change limit exceeded",
                extra={
                    "destructive_changes": len(destructive),
                    "deletes": deletes,
                    "replaces": len(destructive) - deletes,
                    "limit": limit,
                },
            )
            raise DestructiveChangeLimitExceeded(
                f"Plan has {len(destructive)} destructive changes (deletes + replaces), "
                f"exceeding limit of {limit}. Raise MAX_DESTRUCTIVE_CHANGES to allow it."
            )
