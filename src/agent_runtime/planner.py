# planner.py
# Goal → Plan translation.
#
# The planner never raises. A reasoning error, a timeout, or a response with
# no usable JSON all become an empty Plan with `error` set.

import asyncio
import json

import structlog

from agent_runtime.config import PlannerConfig
from agent_runtime.models import ActionType, Context, Goal, Plan
from agent_runtime.parsing import parse_actions
from agent_runtime.reasoning import GenerateOptions, Reasoner

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

ACTION_DESCRIPTIONS: dict[ActionType, str] = {
    ActionType.VALIDATE_ADDRESS: "Check that an address is well formed",
    ActionType.VALIDATE_CONTRACT: "Check that a contract exists at an address",
    ActionType.CHECK_BALANCE: "Read the balance of an address",
    ActionType.EXECUTE_TRANSFER: "Transfer funds to an address",
    ActionType.ESTIMATE_GAS: "Estimate gas for a transaction",
    ActionType.APPROVE_TOKEN: "Approve token spending",
    ActionType.GET_QUOTE: "Get a swap quote",
    ActionType.EXECUTE_SWAP: "Execute a token swap",
    ActionType.CALL_CONTRACT: "Call a contract method",
    ActionType.DEPLOY_CONTRACT: "Deploy a contract",
    ActionType.QUERY_DATA: "Query on-chain or off-chain data",
    ActionType.NO_ACTION: "Nothing needs to be done",
}

SYSTEM_PROMPT = """\
You are the planning component of an autonomous agent.

Break the goal down into a short sequence of concrete actions and respond \
with ONLY a JSON array. No markdown, no explanations. Each element must match \
this schema:

{
  "type": "<action type>",
  "target": "<address or resource, optional>",
  "params": {"param_name": "value"},
  "reason": "why this action is needed",
  "parallel_safe": false
}

Set "parallel_safe" to true only for read-only actions that do not depend on \
the result of any other action.

Available action types:
{vocabulary}

If nothing needs to be done, return [{"type": "no_action", "reason": "..."}].\
"""


def _vocabulary() -> str:
    return "\n".join(f"- {t.value}: {desc}" for t, desc in ACTION_DESCRIPTIONS.items())


def build_prompt(goal: Goal, context: Context, system_prompt: str | None = None) -> str:
    """Render the full planning prompt: instructions, goal, context."""
    header = system_prompt or SYSTEM_PROMPT.replace("{vocabulary}", _vocabulary())
    sections = [header, f"Goal: {goal.text.strip()}"]

    merged = {**context.values}
    if goal.context:
        merged["goal_context"] = goal.context
    if merged:
        sections.append("Context:\n" + json.dumps(merged, indent=2, default=str))
    if context.degraded:
        sections.append(
            "Note: context is incomplete, these sources did not respond: "
            + ", ".join(context.missing)
        )

    sections.append("Generate the action plan as a JSON array:")
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class Planner:
    def __init__(self, reasoner: Reasoner, config: PlannerConfig | None = None) -> None:
        self._reasoner = reasoner
        self._config = config or PlannerConfig()

    @property
    def config(self) -> PlannerConfig:
        return self._config

    async def plan(self, goal: Goal, context: Context | None = None) -> Plan:
        """
        Ask the reasoning capability for a plan and validate the answer.

        An empty goal returns an empty Plan without calling the reasoner.
        """
        if goal.is_empty:
            return Plan(goal=goal)

        context = context or Context()
        prompt = build_prompt(goal, context, self._config.system_prompt)
        options = GenerateOptions(
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
        )

        try:
            response = await asyncio.wait_for(
                self._reasoner.generate(prompt, options),
                timeout=self._config.timeout,
            )
        except asyncio.TimeoutError:
            return self._failed(goal, f"Reasoning timed out after {self._config.timeout}s.")
        except Exception as exc:
            return self._failed(goal, f"Reasoning failed: {exc}")

        result = parse_actions(response.content)
        if not result.ok:
            return self._failed(goal, result.error, raw=response.content)

        for reason in result.dropped:
            logger.warning("action_dropped", reason=reason)

        actions = result.actions
        if len(actions) > self._config.max_actions:
            logger.warning(
                "plan_truncated",
                returned=len(actions),
                max_actions=self._config.max_actions,
            )
            actions = actions[: self._config.max_actions]

        return Plan(goal=goal, actions=actions, dropped=len(result.dropped))

    def _failed(self, goal: Goal, error: str, raw: str | None = None) -> Plan:
        logger.warning("planning_failed", error=error, response=(raw or "")[:200])
        return Plan(goal=goal, error=error)
