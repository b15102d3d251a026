# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# With OPENROUTER_API_KEY set the planner talks to a real model; without it
# a scripted reasoner stands in so the demo runs offline.
# https://openrouter.ai/models

import asyncio
import json

from agent_runtime import display
from agent_runtime.agent import Agent
from agent_runtime.config import AgentConfig, ExecutorConfig, PolicyConfig, load_env_settings
from agent_runtime.handlers import default_registry
from agent_runtime.log import setup_logging
from agent_runtime.memory import MemoryFilter
from agent_runtime.reasoning import OpenAIReasoner, ScriptedReasoner
from agent_runtime.telemetry import ConsoleTelemetry
from agent_runtime.triggers import IntervalTrigger, ManualTrigger

WATCHED = "0x52908400098527886E0F7030069857D2E4169EE7"

GOAL = f"Check that {WATCHED} is a well-formed address, then report its balance."

OFFLINE_PLAN = json.dumps(
    [
        {"type": "validate_address", "target": WATCHED, "reason": "sanity check"},
        {"type": "check_balance", "target": WATCHED, "reason": "report balance"},
    ]
)


def fake_balance(action):
    return {"address": action.target, "balance_wei": 42 * 10**18}


async def main() -> None:
    settings = load_env_settings()
    setup_logging(settings.log_level)

    if settings.api_key:
        reasoner = OpenAIReasoner(model=settings.model, api_key=settings.api_key, base_url=settings.base_url)
        model = settings.model
    else:
        reasoner = ScriptedReasoner([OFFLINE_PLAN])
        model = "scripted (offline)"

    manual = ManualTrigger(trigger_id="manual")
    agent = Agent(
        AgentConfig(
            name="balance-watcher",
            capabilities=("validate_address", "check_balance"),
            goal=GOAL,
            executor=ExecutorConfig(base_delay=0.2),
            policy=PolicyConfig(blocked_actions=("execute_transfer", "deploy_contract")),
        ),
        reasoner=reasoner,
        handlers=default_registry(check_balance=fake_balance),
        triggers=[manual, IntervalTrigger(2.0, max_executions=2, trigger_id="every-2s")],
        telemetry=ConsoleTelemetry(),
    )

    display.banner(agent.config.name, model, GOAL)
    await agent.start()
    manual.fire()
    manual.fire()  # lands while the first cycle runs: coalesced
    await asyncio.sleep(5)
    await agent.stop()

    if agent.last_error:
        display.halt(agent.last_error)

    records = [entry.record for entry in agent.memory.query(MemoryFilter(kind="action"))]
    display.execution_summary(records)
    display.cycle_history(list(agent.cycles()))


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
