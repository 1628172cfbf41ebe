"""Static policy filter for the edge chat gateway.

Screens the latest user message against a data-driven list of
case-insensitive patterns before any retrieval or provider work happens.
The built-in rules cover:

- Prompt-injection phrasing (English and Spanish)
- Sensitive-data solicitation (SSN, card numbers, CVV, passwords)
- A generic 13-19 digit run (card-number heuristic)

Additional rules can be loaded from a YAML file; adding a pattern never
requires touching control flow.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern

import yaml


class PolicyDecision(str, Enum):
    """The outcome of a policy evaluation."""

    ALLOW = "ALLOW"
    DENY = "DENY"


@dataclass
class PolicyResult:
    """Result of screening one message."""

    decision: PolicyDecision
    triggered_rules: List[str] = field(default_factory=list)

    @property
    def is_allowed(self) -> bool:
        """Return True if the message may proceed to grounding."""
        return self.decision == PolicyDecision.ALLOW


@dataclass
class PolicyRule:
    """A single pattern rule."""

    name: str
    pattern: str
    description: str = ""
    ignore_case: bool = True
    enabled: bool = True
    _compiled: Optional[Pattern[str]] = field(default=None, repr=False, compare=False)

    @property
    def compiled(self) -> Pattern[str]:
        if self._compiled is None:
            flags = re.IGNORECASE if self.ignore_case else 0
            self._compiled = re.compile(self.pattern, flags)
        return self._compiled

    def matches(self, text: str) -> bool:
        return self.compiled.search(text) is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyRule":
        """Create a PolicyRule from a dictionary (YAML-parsed).

        Raises:
            ValueError: If the rule has no pattern or the pattern does not
                compile.
        """
        pattern = data.get("pattern")
        if not pattern:
            raise ValueError(
                "Policy rule '{}' has no pattern".format(data.get("name", "unnamed-rule"))
            )
        rule = cls(
            name=data.get("name", "unnamed-rule"),
            pattern=str(pattern),
            description=data.get("description", ""),
            ignore_case=bool(data.get("ignore_case", True)),
            enabled=bool(data.get("enabled", True)),
        )
        try:
            rule.compiled
        except re.error as exc:
            raise ValueError(
                "Policy rule '{}' has an invalid pattern: {}".format(rule.name, exc)
            ) from exc
        return rule


DEFAULT_RULES: List[PolicyRule] = [
    PolicyRule(
        "ignore-instructions",
        r"ignore (?:all|the) (?:previous|prior|above) (?:instructions|rules)",
        "Prompt injection: override prior instructions",
    ),
    PolicyRule(
        "act-as-system",
        r"act as .* (?:system|developer)",
        "Prompt injection: role escalation",
    ),
    PolicyRule(
        "reveal-system-prompt",
        r"reveal (?:the )?system prompt",
        "Prompt injection: system prompt extraction",
    ),
    PolicyRule(
        "olvida-instrucciones",
        r"olvida las instrucciones",
        "Prompt injection (es): override prior instructions",
    ),
    PolicyRule(
        "actua-como-sistema",
        r"actúa como .* sistema",
        "Prompt injection (es): role escalation",
    ),
    PolicyRule(
        "ssn",
        r"\b(?:ssn|social security number)\b",
        "Sensitive data: social security numbers",
    ),
    PolicyRule(
        "card-terms",
        r"\b(?:credit card|card number|tarjeta de crédito|cvv)\b",
        "Sensitive data: payment cards",
    ),
    PolicyRule(
        "passwords",
        r"\b(?:password|contraseña|passcode|clave)\b",
        "Sensitive data: credentials",
    ),
    PolicyRule(
        "card-digits",
        r"\b(?:\d[ -]?){13,19}\b",
        "Sensitive data: 13-19 digit run",
        ignore_case=False,
    ),
]


@dataclass
class PolicyConfig:
    """Top-level policy configuration."""

    version: str = "1.0"
    rules: List[PolicyRule] = field(default_factory=lambda: list(DEFAULT_RULES))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyConfig":
        """Create a PolicyConfig from a dictionary (YAML-parsed)."""
        rules = [PolicyRule.from_dict(r) for r in data.get("rules", [])]
        return cls(
            version=str(data.get("version", "1.0")),
            rules=rules,
        )


def load_policies(path: str) -> PolicyConfig:
    """Load policy rules from a YAML file.

    Args:
        path: Path to the YAML policy file.

    Returns:
        A PolicyConfig with all parsed rules.

    Raises:
        FileNotFoundError: If the policy file does not exist.
        ValueError: If the YAML is invalid or a rule is malformed.
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError("Policy file not found: {}".format(path))

    with open(policy_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError("Policy file is not valid YAML: {}".format(exc)) from exc

    if not isinstance(raw, dict):
        raise ValueError("Policy file must contain a YAML mapping at the top level")

    return PolicyConfig.from_dict(raw)


class PolicyEngine:
    """Evaluates pattern rules against a single message.

    Every enabled rule is tested; any match denies the message.
    """

    def __init__(self, config: Optional[PolicyConfig] = None) -> None:
        self._config = config or PolicyConfig()

    @property
    def rules(self) -> List[PolicyRule]:
        """Return the list of configured policy rules."""
        return self._config.rules

    def evaluate(self, text: str) -> PolicyResult:
        """Screen a message against all enabled rules.

        Args:
            text: The user's latest message.

        Returns:
            A PolicyResult; DENY if any rule matched, with every matching
            rule name in ``triggered_rules``.
        """
        triggered = [
            rule.name
            for rule in self._config.rules
            if rule.enabled and rule.matches(text or "")
        ]
        if triggered:
            return PolicyResult(decision=PolicyDecision.DENY, triggered_rules=triggered)
        return PolicyResult(decision=PolicyDecision.ALLOW)


_REFUSALS = {
    "en": "I can’t help with that request. Please rephrase.",
    "es": "No puedo ayudar con esa solicitud. Reformula por favor.",
}


def refusal_message(lang: str) -> str:
    """Return the localized refusal streamed for policy violations."""
    return _REFUSALS.get(lang, _REFUSALS["en"])
