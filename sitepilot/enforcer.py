"""
SitePilot Structured Output Enforcer.

The generator is asked for JSON and usually, but not always, sends it.
The enforcer turns a free-text answer into a parsed value: it cleans the
answer, runs the repair passes from `sitepilot.repair` in order, and on
total failure asks again with stricter instructions.
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Iterator

from loguru import logger
from pydantic import BaseModel

from sitepilot import repair
from sitepilot.config_loader import EnforcerConfig
from sitepilot.errors import EmptyResponse, MalformedOutput, StructuredOutputError, TransportError
from sitepilot.models import Capability
from sitepilot.router import Router


BASELINE_RULES = """
OUTPUT FORMAT:
- Respond with a single JSON value and nothing else.
- Use double quotes for every key and string.
- No trailing commas. No comments.
"""

STRICT_RULES = """
EXTRA STRICT OUTPUT MODE (attempt {attempt}): the previous answer could not be parsed.
- The first character of your answer MUST be {{ or [ and the last MUST be }} or ].
- NO prose before or after the JSON.
- NO markdown code fences.
- NO comments of any kind.
- Escape newlines inside strings as \\n.
"""


class EnforcedOutput(BaseModel):
    value: Any
    model: str = ""
    attempts: int = 1
    tokens_used: int = 0


def _is_truncated(err: json.JSONDecodeError, text: str) -> bool:
    """True when the parser ran off the end of the input."""
    if err.pos >= len(text.rstrip()):
        return True
    return err.msg.startswith("Unterminated string")


def parse_with_repair(cleaned: str) -> Any:
    """Parse cleaned text, falling through the repair passes in order.

    Raises:
        MalformedOutput: nothing produced valid JSON.
    """
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        last_error = e
        candidate = cleaned
        if _is_truncated(e, cleaned):
            closed = repair.close_brackets(cleaned)
            if closed is not None:
                candidate = closed
                try:
                    return json.loads(candidate)
                except json.JSONDecodeError as e2:
                    last_error = e2

    candidate = repair.strip_trailing_commas(candidate)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        last_error = e

    candidate = repair.generic_repair(candidate)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        last_error = e

    raise MalformedOutput(f"Unparseable output: {last_error.msg} at {last_error.pos}", raw=cleaned)


class StructuredOutputEnforcer:
    def __init__(
        self,
        router: Router,
        config: EnforcerConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.router = router
        self.config = config or EnforcerConfig()
        self._sleep = sleep

    def _instructions_for(self, instructions: str, attempt: int) -> str:
        if attempt == 0:
            return instructions.rstrip() + "\n" + BASELINE_RULES
        return instructions.rstrip() + "\n" + STRICT_RULES.format(attempt=attempt + 1)

    def enforce(
        self,
        capability: Capability,
        instructions: str,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int | None = None,
    ) -> Any:
        """Return the parsed JSON value for one generation request."""
        return self.enforce_result(
            capability, instructions, prompt,
            temperature=temperature, max_tokens=max_tokens, max_retries=max_retries,
        ).value

    def enforce_result(
        self,
        capability: Capability,
        instructions: str,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int | None = None,
    ) -> EnforcedOutput:
        """Like `enforce`, but also reports which model answered and after how many tries.

        Raises:
            EmptyResponse / MalformedOutput / TransportError: the last
            attempt's failure, once the retry budget is spent.
        """
        budget = max(1, max_retries if max_retries is not None else self.config.max_retries)
        last_error: Exception | None = None

        for attempt in range(budget):
            logger.info(f"[ENFORCER] attempt {attempt + 1}/{budget} for {capability.value}")
            messages = [
                {"role": "system", "content": self._instructions_for(instructions, attempt)},
                {"role": "user", "content": prompt},
            ]

            try:
                response = self.router.complete(
                    capability, messages, temperature=temperature, max_tokens=max_tokens,
                )
                if not response.content or not response.content.strip():
                    raise EmptyResponse(f"{capability.value} returned an empty response")

                value = parse_with_repair(repair.clean_response(response.content))
                return EnforcedOutput(
                    value=value,
                    model=response.model,
                    attempts=attempt + 1,
                    tokens_used=response.tokens_used,
                )
            except (StructuredOutputError, TransportError) as e:
                last_error = e
                logger.warning(f"[ENFORCER] {capability.value} unusable output: {e}")

            if attempt < budget - 1:
                self._sleep(self.config.backoff_ms / 1000)

        logger.error(f"[ENFORCER] {capability.value} gave up after {budget} attempts")
        assert last_error is not None
        raise last_error

    def stream(
        self,
        capability: Capability,
        instructions: str,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Iterator[str]:
        """Forward generator output from the first `{` or `[` onward.

        Anything before that is preamble and is dropped. No repair is done.
        """
        messages = [
            {"role": "system", "content": self._instructions_for(instructions, 0)},
            {"role": "user", "content": prompt},
        ]
        buffer = ""
        started = False

        for chunk in self.router.stream(
            capability, messages, temperature=temperature, max_tokens=max_tokens,
        ):
            if started:
                yield chunk
                continue
            buffer += chunk
            starts = [i for i in (buffer.find("{"), buffer.find("[")) if i != -1]
            if starts:
                started = True
                yield buffer[min(starts):]
                buffer = ""
