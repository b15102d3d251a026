import pytest
from pydantic import ValidationError

from agent_runtime.config import PolicyConfig, RateLimit
from agent_runtime.models import Action, ActionType
from agent_runtime.policy import Policy


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _transfer(amount, **params) -> Action:
    return Action(type=ActionType.EXECUTE_TRANSFER, target="0xB0B", params={"amount": amount, **params})


# ---------------------------------------------------------------------------
# Action lists
# ---------------------------------------------------------------------------


def test_default_policy_allows_everything():
    decision = Policy().check(_transfer("10"))
    assert decision.allowed is True
    assert decision.reason is None


def test_allowed_actions_is_a_whitelist():
    policy = Policy(PolicyConfig(allowed_actions=(ActionType.CHECK_BALANCE,)))

    assert policy.check(Action(type=ActionType.CHECK_BALANCE)).allowed is True
    decision = policy.check(_transfer(1))
    assert decision.allowed is False
    assert "execute_transfer" in decision.reason


def test_blocked_actions_win():
    policy = Policy(PolicyConfig(blocked_actions=(ActionType.DEPLOY_CONTRACT,)))
    assert policy.check(Action(type=ActionType.DEPLOY_CONTRACT)).reason == "deploy_contract is blocked"


def test_config_accepts_action_type_strings():
    config = PolicyConfig(blocked_actions=("execute_swap",))
    assert config.blocked_actions == (ActionType.EXECUTE_SWAP,)
    with pytest.raises(ValidationError):
        PolicyConfig(blocked_actions=("teleport",))


# ---------------------------------------------------------------------------
# Amounts and gas
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "amount, allowed",
    [
        ("500", True),
        (1000, True),
        ("1001", False),
        (5, False),
        ("lots", False),
        ("NaN", False),
    ],
)
def test_transfer_amount_bounds(amount, allowed):
    policy = Policy(PolicyConfig(min_transfer_amount=10, max_transfer_amount=1000))
    assert policy.check(_transfer(amount)).allowed is allowed


def test_oversized_amount_can_be_capped():
    policy = Policy(PolicyConfig(max_transfer_amount=1000, cap_transfer_amount=True))

    decision = policy.check(_transfer("5000"))
    assert decision.allowed is True
    assert decision.action.params["amount"] == "1000"
    assert policy.check(_transfer(5000)).action.params["amount"] == 1000


def test_gas_limit_is_capped_not_denied():
    original = _transfer(1, gas_limit=900_000)
    decision = Policy(PolicyConfig(max_gas_limit=300_000)).check(original)

    assert decision.allowed is True
    assert decision.action.params["gas_limit"] == 300_000
    assert original.params["gas_limit"] == 900_000


def test_action_without_amount_ignores_amount_limits():
    policy = Policy(PolicyConfig(max_transfer_amount=1))
    assert policy.check(Action(type=ActionType.CHECK_BALANCE)).allowed is True


# ---------------------------------------------------------------------------
# Rate limit and approval
# ---------------------------------------------------------------------------


def test_rate_limit_window_slides():
    clock = FakeClock()
    policy = Policy(PolicyConfig(rate_limit=RateLimit(max_actions=2, window=60)), clock=clock)

    assert policy.check(_transfer(1)).allowed is True
    assert policy.check(_transfer(1)).allowed is True
    assert "rate limit" in policy.check(_transfer(1)).reason

    clock.now += 61
    assert policy.check(_transfer(1)).allowed is True
    assert policy.recent_count() == 1


def test_denied_actions_do_not_use_the_rate_limit():
    policy = Policy(
        PolicyConfig(rate_limit=RateLimit(max_actions=1, window=60), max_transfer_amount=10),
        clock=FakeClock(),
    )
    assert policy.check(_transfer(50)).allowed is False
    assert policy.check(_transfer(5)).allowed is True


def test_require_approval_denies():
    decision = Policy(PolicyConfig(require_approval=True)).check(Action(type=ActionType.NO_ACTION))
    assert decision.allowed is False
    assert decision.reason == "approval required"


# ---------------------------------------------------------------------------
# Senders
# ---------------------------------------------------------------------------


def test_any_sender_when_list_is_empty():
    assert Policy().permits_sender(None) is True
    assert Policy().permits_sender("0xAnyone") is True


def test_sender_allow_list_is_case_insensitive():
    policy = Policy(PolicyConfig(allowed_senders=("0xABC",)))

    assert policy.permits_sender("0xabc") is True
    assert policy.permits_sender("0xDEF") is False
    assert policy.permits_sender(None) is False
