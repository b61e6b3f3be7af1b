"""Error taxonomy for rule and config mutations.

The message path never raises these to its caller; they are for the
admin-facing surface (RuleService, DynamicConfigService, CLI).
"""


class MailgateError(Exception):
    """Base class for all mailgate errors."""


class RuleValidationError(MailgateError):
    """A rule or config write was rejected before touching the store."""


class InvalidPatternError(RuleValidationError):
    """Pattern is empty, or a regex pattern does not compile."""

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class InvalidConfigError(RuleValidationError):
    """Dynamic detection config values out of range or unknown."""


class DuplicateRuleError(RuleValidationError):
    """An identical rule already exists in the same scope."""

    def __init__(self, existing_id: str) -> None:
        super().__init__(f"Duplicate of existing rule {existing_id}")
        self.existing_id = existing_id


class RuleNotFoundError(MailgateError):
    """No rule with the given id."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id
