"""
Error taxonomy for the swarm.

Every error a worker can hit is a ClawstownError. Worker.step catches this
base class and resolves the failure locally; nothing here is fatal to a
worker process.
"""


class ClawstownError(Exception):
    """Base class for all swarm errors."""
    pass


class StoreConflict(ClawstownError):
    """A concurrent mutation beat this worker. Re-read and carry on."""
    pass


class TransientStoreError(ClawstownError):
    """Store unreachable or flaky. Safe to retry."""
    pass


class StoreUnavailable(ClawstownError):
    """Retries against the store were exhausted."""

    def __init__(self, operation: str, attempts: int, last_error: Exception | None = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        message = f"{operation} failed after {attempts} attempt(s)"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


class ItemNotFound(ClawstownError):
    """Work item does not exist."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Work item not found: {item_id}")


class ChangeNotFound(ClawstownError):
    """Change does not exist."""

    def __init__(self, change_id: str):
        self.change_id = change_id
        super().__init__(f"Change not found: {change_id}")


class WorkerStuck(ClawstownError):
    """The worker cannot satisfy the acceptance criteria of an item."""
    pass


class CapabilityError(ClawstownError):
    """An agent command failed to run or produced unusable output."""
    pass


class ConfigError(ClawstownError):
    """Configuration is missing or invalid."""
    pass
