"""Failure injection configuration for simulated collaborators."""

import random
from typing import Optional

from pydantic import BaseModel, PrivateAttr


class FailureRule(BaseModel):
    """Defines how a specific collaborator action should fail."""

    error_type: str  # "timeout" | "rate_limit" | "not_found" | "permission_denied"
    message: str
    probability: float = 1.0  # 1.0 = always fail, 0.5 = 50% chance
    max_failures: Optional[int] = None  # stop injecting after this many failures


class FailureConfig(BaseModel):
    """Maps ``kind.action`` keys (e.g. ``http.request``) to failure rules."""

    rules: dict[str, FailureRule] = {}
    seed: Optional[int] = None

    _injected: dict[str, int] = PrivateAttr(default_factory=dict)
    _rng: random.Random = PrivateAttr(default_factory=random.Random)

    def model_post_init(self, __context) -> None:
        if self.seed is not None:
            self._rng.seed(self.seed)

    def should_fail(self, service: str, action: str) -> FailureRule | None:
        """Check if a collaborator action should fail. Returns the rule if it triggers."""
        key = f"{service}.{action}"
        rule = self.rules.get(key) or self.rules.get(f"{service}.*")
        if rule is None:
            return None
        injected = self._injected.get(key, 0)
        if rule.max_failures is not None and injected >= rule.max_failures:
            return None
        if self._rng.random() < rule.probability or rule.probability >= 1.0:
            self._injected[key] = injected + 1
            return rule
        return None

    def injected(self, service: str, action: str) -> int:
        return self._injected.get(f"{service}.{action}", 0)
