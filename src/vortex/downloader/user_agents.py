"""
User agent rotation with realistic browser strings.
"""

from __future__ import annotations

import itertools
import random
from typing import Iterator, List, Optional, Sequence


class UserAgentRotator:
    """
    Picks User-Agent strings either from an explicit list (round robin) or from
    a built-in weighted pool of desktop, mobile and bot agents.
    """

    def __init__(
        self,
        agents: Optional[Sequence[str]] = None,
        *,
        include_mobile: bool = True,
        include_bots: bool = True,
    ):
        self.include_mobile = include_mobile
        self.include_bots = include_bots

        self.desktop_agents = [
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
            "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
        ]
        self.mobile_agents = [
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
            "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36",
        ]
        self.bot_agents = [
            "Mozilla/5.0 (compatible; VortexBot/0.1)",
        ]

        # Desktop favored for most content
        weights = {
            "desktop": 0.7,
            "mobile": 0.2 if include_mobile else 0.0,
            "bot": 0.1 if include_bots else 0.0,
        }
        total = sum(weights.values())
        self.category_weights = {k: v / total for k, v in weights.items()}

        self._explicit: List[str] = [agent for agent in agents or () if agent]
        self._cycle: Optional[Iterator[str]] = itertools.cycle(self._explicit) if self._explicit else None

    def next(self) -> str:
        """Next agent: round robin over an explicit list, else a weighted random pick."""
        if self._cycle is not None:
            return next(self._cycle)
        return self.get_random_user_agent()

    def get_random_user_agent(self) -> str:
        categories = list(self.category_weights.keys())
        weights = list(self.category_weights.values())
        category = random.choices(categories, weights=weights)[0]

        if category == "mobile" and self.mobile_agents:
            return random.choice(self.mobile_agents)
        if category == "bot" and self.bot_agents:
            return random.choice(self.bot_agents)
        return random.choice(self.desktop_agents)

    def get_all_agents(self) -> List[str]:
        if self._explicit:
            return list(self._explicit)
        agents = self.desktop_agents.copy()
        if self.include_mobile:
            agents.extend(self.mobile_agents)
        if self.include_bots:
            agents.extend(self.bot_agents)
        return agents
