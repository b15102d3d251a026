# policy.py
# Operational policy: the gate between a Plan and the Executor.
#
# Every action is first overridden (gas and, when configured, amount caps),
# then evaluated. Allowed actions are recorded against the rate limit window.
# A denial never raises here; the executor turns it into a Failed record.

import time
from collections import deque
from collections.abc import Callable
from decimal import Decimal, InvalidOperation

import structlog
from pydantic import BaseModel, ConfigDict

from agent_runtime.config import PolicyConfig
from agent_runtime.models import Action

logger = structlog.get_logger(__name__)

POLICY_DENIED = "PolicyDenied"

AMOUNT_KEY = "amount"
GAS_KEY = "gas_limit"


class PolicyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    action: Action
    reason: str | None = None


def _as_amount(value) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


class Policy:
    """
    Applies a PolicyConfig to individual actions.

    check() is synchronous, so actions in a parallel group are checked and
    counted one at a time against the same window.
    """

    def __init__(self, config: PolicyConfig | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config or PolicyConfig()
        self._clock = clock
        self._history: deque[float] = deque()

    @property
    def config(self) -> PolicyConfig:
        return self._config

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def check(self, action: Action) -> PolicyDecision:
        """Override, evaluate and (when allowed) record one action."""
        decision = self.evaluate(self.override(action))
        if decision.allowed:
            self.record(decision.action)
        else:
            logger.warning("policy_denied", action_type=action.type.value, reason=decision.reason)
        return decision

    def override(self, action: Action) -> Action:
        cfg = self._config
        params = dict(action.params)

        gas = _as_amount(params.get(GAS_KEY))
        if cfg.max_gas_limit is not None and gas is not None and gas > cfg.max_gas_limit:
            params[GAS_KEY] = cfg.max_gas_limit

        amount = _as_amount(params.get(AMOUNT_KEY))
        if (
            cfg.cap_transfer_amount
            and cfg.max_transfer_amount is not None
            and amount is not None
            and amount > cfg.max_transfer_amount
        ):
            # Keep the caller's representation: wei amounts often travel as strings.
            cap = cfg.max_transfer_amount
            params[AMOUNT_KEY] = str(cap) if isinstance(params[AMOUNT_KEY], str) else cap

        if params == action.params:
            return action
        logger.info("policy_override", action_type=action.type.value, params=params)
        return action.model_copy(update={"params": params})

    def evaluate(self, action: Action) -> PolicyDecision:
        cfg = self._config

        if cfg.allowed_actions and action.type not in cfg.allowed_actions:
            return PolicyDecision(allowed=False, action=action, reason=f"{action.type.value} is not allowed")
        if action.type in cfg.blocked_actions:
            return PolicyDecision(allowed=False, action=action, reason=f"{action.type.value} is blocked")

        if AMOUNT_KEY in action.params and (
            cfg.min_transfer_amount is not None or cfg.max_transfer_amount is not None
        ):
            raw = action.params[AMOUNT_KEY]
            amount = _as_amount(raw)
            if amount is None:
                reason = f"amount {raw!r} is not a number"
            elif cfg.min_transfer_amount is not None and amount < cfg.min_transfer_amount:
                reason = f"amount {raw} is below {cfg.min_transfer_amount}"
            elif cfg.max_transfer_amount is not None and amount > cfg.max_transfer_amount:
                reason = f"amount {raw} exceeds {cfg.max_transfer_amount}"
            else:
                reason = None
            if reason is not None:
                return PolicyDecision(allowed=False, action=action, reason=reason)

        if cfg.rate_limit is not None and self.recent_count() >= cfg.rate_limit.max_actions:
            return PolicyDecision(
                allowed=False,
                action=action,
                reason=f"rate limit of {cfg.rate_limit.max_actions} actions per {cfg.rate_limit.window}s reached",
            )

        if cfg.require_approval:
            return PolicyDecision(allowed=False, action=action, reason="approval required")

        return PolicyDecision(allowed=True, action=action)

    def record(self, action: Action) -> None:
        if self._config.rate_limit is not None:
            self._history.append(self._clock())

    def recent_count(self) -> int:
        if self._config.rate_limit is None:
            return len(self._history)
        horizon = self._clock() - self._config.rate_limit.window
        while self._history and self._history[0] <= horizon:
            self._history.popleft()
        return len(self._history)

    # ------------------------------------------------------------------
    # Senders
    # ------------------------------------------------------------------

    def permits_sender(self, sender: str | None) -> bool:
        """Whether a signal from `sender` may start a cycle. Addresses compare case-insensitively."""
        allowed = self._config.allowed_senders
        if not allowed:
            return True
        if not sender:
            return False
        return str(sender).lower() in {s.lower() for s in allowed}
