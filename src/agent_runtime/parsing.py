# parsing.py
# Parse-and-validate for reasoning output.
#
# Everything here is pure: parse_actions() never raises and never logs. The
# planner decides what to do with the result.

import json
import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from agent_runtime.models import Action, ActionType

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")
_FENCE_BLOCK = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)

_VOCABULARY = set(ActionType.values())


class ParseResult(BaseModel):
    """Outcome of parsing one reasoning response."""

    actions: list[Action] = Field(default_factory=list)
    dropped: list[str] = Field(default_factory=list, description="Why each rejected item was dropped.")
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def strip_fences(text: str) -> str:
    """Remove a markdown code fence wrapped around the payload, if any."""
    cleaned = text.strip()
    block = _FENCE_BLOCK.search(cleaned)
    if block and not cleaned.startswith(("[", "{")):
        return block.group(1).strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def extract_json(text: str) -> Any | None:
    """
    Return the first JSON value in `text`.

    Tries the whole string first, then every '[' or '{' position in order,
    decoding the first complete array/object found there. Returns None when
    nothing decodes.
    """
    try:
        return json.loads(text, strict=False)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder(strict=False)
    for match in re.finditer(r"[\[{]", text):
        try:
            value, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        return value
    return None


def _to_action(item: Any, index: int) -> tuple[Action | None, str | None]:
    if not isinstance(item, dict):
        return None, f"item {index}: expected an object, got {type(item).__name__}"

    raw_type = str(item.get("type", "")).strip().lower()
    if raw_type not in _VOCABULARY:
        return None, f"item {index}: unknown action type {item.get('type')!r}"

    fields = {
        "type": raw_type,
        "target": item.get("target"),
        "params": item.get("params") if item.get("params") is not None else {},
        "reason": item.get("reason") or "",
        "parallel_safe": item.get("parallel_safe") if item.get("parallel_safe") is not None else False,
    }
    try:
        return Action.model_validate(fields), None
    except ValidationError as exc:
        return None, f"item {index}: {exc.errors()[0]['msg']}"


def parse_actions(response: str) -> ParseResult:
    """
    Turn a raw reasoning response into validated actions.

    Accepts a JSON array of action objects or a single object (wrapped into a
    one-element list), optionally fenced or surrounded by prose. Items with
    an unknown type or an invalid shape are dropped; the rest keep their
    original order.
    """
    if not response or not response.strip():
        return ParseResult(error="Empty response.")

    data = extract_json(strip_fences(response))
    if data is None:
        return ParseResult(error="Response contains no parseable JSON.")

    if isinstance(data, dict):
        items = [data]
    elif isinstance(data, list):
        items = data
    else:
        return ParseResult(error=f"Expected a JSON array or object, got {type(data).__name__}.")

    actions: list[Action] = []
    dropped: list[str] = []
    for index, item in enumerate(items):
        action, reason = _to_action(item, index)
        if action is None:
            dropped.append(reason)
        else:
            actions.append(action)

    return ParseResult(actions=actions, dropped=dropped)
