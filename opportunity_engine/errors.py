"""
Error taxonomy for the report engine.

Only configuration errors and planning cycles are fatal to a run; every
other failure is absorbed and represented as data (stub results, flags).
"""


class OpportunityEngineError(Exception):
    """Base class for engine errors"""


class ConfigurationError(OpportunityEngineError):
    """Invalid configuration; fatal at run start."""


class PlanningCycleError(OpportunityEngineError):
    """Work items depend on each other in a cycle."""

    def __init__(self, cycle_ids):
        self.cycle_ids = list(cycle_ids)
        super().__init__(f"Dependency cycle among work items: {', '.join(self.cycle_ids)}")


class BudgetExceededError(OpportunityEngineError):
    """A usage would push spend past the period limit."""

    def __init__(self, amount: float, spent: float, limit: float):
        self.amount = amount
        self.spent = spent
        self.limit = limit
        super().__init__(
            f"Charge of {amount:.2f} would exceed budget ({spent:.2f}/{limit:.2f})"
        )


class InvalidTransitionError(OpportunityEngineError):
    """Illegal status change on a work item."""
