"""
Copy-trade engine exception taxonomy
"""


class CopyTradeError(Exception):
    """Base exception for copy-trade engine failures"""
    pass


class WebhookAuthError(CopyTradeError):
    """Raised when an inbound notification fails signature or shape checks"""
    pass


class DelegationInvalid(CopyTradeError):
    """Raised when a delegation is expired, revoked or inactive"""
    pass


class SpendingLimitExceeded(CopyTradeError):
    """Raised when a copy amount would overshoot a delegation's budget"""
    pass


class SizingConfigError(CopyTradeError):
    """Raised when the sizing fraction of a leader trade is missing or invalid"""
    pass


class BatchExecutionFailure(CopyTradeError):
    """Raised when a redemption batch fails to land or reverts on-chain"""

    def __init__(self, message: str, user_op_hash: str | None = None):
        super().__init__(message)
        self.user_op_hash = user_op_hash


class RelayError(CopyTradeError):
    """Raised for JSON-RPC level failures reported by the bundler relay"""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class NotFoundError(CopyTradeError):
    """Raised when a referenced match or participant does not exist"""
    pass
