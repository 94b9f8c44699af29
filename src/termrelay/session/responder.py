"""Simulated responder used when the wrapped CLI is unavailable.

Keeps the relay usable for demos: every input gets exactly one canned
reply, after a randomized delay that stands in for "thinking" time.
"""

from __future__ import annotations

import random

from termrelay.domain.models import SessionMode

RESPONSE_TEMPLATES: dict[SessionMode, str] = {
    SessionMode.CHAT: (
        'I understand you said: "{text}". This is a demo response from the backend server.'
    ),
    SessionMode.CODE: (
        '# Generated code based on: "{text}"\n'
        "def example():\n"
        '    print("This is demo code")\n'
        "    return True"
    ),
    SessionMode.EDIT: (
        'Editing request received: "{text}". In a real implementation, this would modify files.'
    ),
    SessionMode.TOOL: (
        'Tool execution for: "{text}". This would run actual development tools.'
    ),
}


class SimulatedResponder:
    """Produces mock replies and the delay before each one.

    Args:
        delay_min: Lower bound of the response delay, in seconds.
        delay_max: Upper bound of the response delay, in seconds.
        rng: Random source; pass a seeded ``random.Random`` for
             reproducible delays.
    """

    def __init__(
        self,
        delay_min: float = 0.5,
        delay_max: float = 1.5,
        rng: random.Random | None = None,
    ) -> None:
        if delay_min < 0 or delay_max < delay_min:
            raise ValueError(f"Invalid delay bounds: [{delay_min}, {delay_max}]")
        self._delay_min = delay_min
        self._delay_max = delay_max
        self._rng = rng or random.Random()

    @property
    def delay_bounds(self) -> tuple[float, float]:
        return self._delay_min, self._delay_max

    def next_delay(self) -> float:
        """Draw a delay uniformly from the configured bounds."""
        return self._rng.uniform(self._delay_min, self._delay_max)

    def respond(self, text: str, mode: SessionMode) -> str:
        template = RESPONSE_TEMPLATES.get(mode, RESPONSE_TEMPLATES[SessionMode.CHAT])
        return template.format(text=text)

    def acknowledge(self, choice: str) -> str:
        return f"Received {choice} response. Continuing..."
