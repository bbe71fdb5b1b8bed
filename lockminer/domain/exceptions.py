class MinerException(Exception):
    """Base exception for all miner-related errors."""
    pass

class RateLimitExceededException(MinerException):
    """Raised when a credential's quota is exhausted and the policy is to abort instead of waiting."""
    def __init__(self, reset_at: float, message: str = "GitHub API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(f"{message} Resets at: {reset_at}")

class CredentialConfigurationError(MinerException):
    """Raised when the miner is started without any API tokens."""
    pass

class CheckpointWriteError(MinerException):
    """Raised when the checkpoint file cannot be written to disk."""
    pass
