"""
Configuration error taxonomy.

Raised while promotion definitions are built or loaded. The engine treats any
of these as "this promotion never applies" rather than guessing at a discount.
"""


class ConfigurationError(ValueError):
    """A promotion, rule tree or price table is malformed."""


class RuleTreeError(ConfigurationError):
    """Malformed or cyclic condition tree, unknown operator or value variant."""


class TierConfigurationError(ConfigurationError):
    """Price tiers overlap, leave gaps or do not cover the requested quantity."""


class PromotionDefinitionError(ConfigurationError):
    """Invalid discount, BOGO, bundle or promotion parameters."""
