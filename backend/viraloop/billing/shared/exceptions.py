class BillingError(Exception):
    pass


class TeamNotFoundError(BillingError):
    def __init__(self, team_id: str):
        self.team_id = team_id
        super().__init__(f"Team not found: {team_id}")


class InsufficientCreditsError(BillingError):
    """Raised when a spend would take a team's balance below zero.

    ``error_type`` is the stable tag clients switch on to show a
    purchase prompt instead of a generic error.
    """

    error_type = "insufficient_credits"

    def __init__(self, required: int, available: int, message: str = None):
        self.required = required
        self.available = available
        if message is None:
            message = f"Insufficient credits. Available: {available} credits, Required: {required} credits"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            'error_type': self.error_type,
            'message': str(self),
            'required': self.required,
            'available': self.available,
        }


class DuplicateIdempotencyKeyError(BillingError):
    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Ledger entry already exists for idempotency key {idempotency_key}")


class ConfigurationError(BillingError):
    pass


class SpinNotAllowedError(BillingError):
    def __init__(self, reason: str, message: str, next_spin_at=None):
        self.reason = reason
        self.next_spin_at = next_spin_at
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            'reason': self.reason,
            'message': str(self),
            'next_spin_at': self.next_spin_at.isoformat() if self.next_spin_at else None,
        }
