"""
Rule engine - decides whether an event is forwarded and to which destinations.

Rules are evaluated in order; the first enabled rule whose conditions all hold
decides. Nothing matching means "forward with the webhook's base config".
"""
import logging
from dataclasses import dataclass
from typing import Optional

from hookrelay.services.conditions import evaluate_conditions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleDecision:
    forward: bool = True
    destinations: Optional[list[str]] = None  # None = no restriction
    rule: Optional[str] = None  # name of the matched rule
    transform: bool = False  # force the payload transformer for this event


DEFAULT_DECISION = RuleDecision()


def evaluate_rules(rules: Optional[list[dict]], view: dict) -> RuleDecision:
    for index, rule in enumerate(rules or []):
        if not rule.get("enabled", True):
            continue
        if not evaluate_conditions(rule.get("conditions") or [], view):
            continue

        name = rule.get("name") or f"rule-{index + 1}"
        action = rule.get("action") or "forward"

        if action == "skip":
            logger.info("Rule '%s' matched: skipping forward", name)
            return RuleDecision(forward=False, rule=name)

        destinations = [d for d in (rule.get("destinations") or []) if d] or None
        logger.info(
            "Rule '%s' matched: action=%s destinations=%s",
            name, action, ",".join(destinations) if destinations else "default",
        )
        return RuleDecision(
            forward=True,
            destinations=destinations,
            rule=name,
            transform=action == "transform",
        )

    return DEFAULT_DECISION
