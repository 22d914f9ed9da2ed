"""
User agent pool used when a strategy asks for a randomised browser identity.
"""

from __future__ import annotations

import random
from typing import List, Optional, Sequence

DEFAULT_USER_AGENTS: Sequence[str] = (
    # Desktop
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    # Mobile
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (iPad; CPU OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Android 14; Mobile; rv:121.0) Gecko/121.0 Firefox/121.0",
    "Mozilla/5.0 (Linux; Android 14; SM-G998B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
)


class UserAgentRotator:
    """Uniform random selection from a fixed pool of browser user agents."""

    def __init__(self, agents: Optional[Sequence[str]] = None, rng: Optional[random.Random] = None):
        self.agents: List[str] = list(agents or DEFAULT_USER_AGENTS)
        if not self.agents:
            raise ValueError("user agent pool must not be empty")
        self._rng = rng or random.Random()

    def get_random_user_agent(self) -> str:
        return self._rng.choice(self.agents)

    def __len__(self) -> int:
        return len(self.agents)
