"""
Custom exception hierarchy for categorized pipeline error handling
"""


class PipelineError(Exception):
    """Base exception for all pipeline-related errors"""
    def __init__(self, message: str, step_name: str = None, recoverable: bool = False):
        self.step_name = step_name
        self.recoverable = recoverable
        super().__init__(message)


class ConfigurationError(PipelineError):
    """Pipeline definition is invalid; raised before any step runs"""
    def __init__(self, message: str, errors: list = None):
        self.errors = errors or []
        super().__init__(message, recoverable=False)


class ResolutionError(PipelineError):
    """A ${...} reference in a step input could not be resolved"""
    def __init__(self, message: str, expression: str = None, step_name: str = None):
        self.expression = expression
        super().__init__(message, step_name=step_name, recoverable=False)


class InvocationError(PipelineError):
    """The capability invoked for a step raised"""
    def __init__(self, message: str, step_name: str = None):
        super().__init__(message, step_name=step_name, recoverable=False)


class StepTimeoutError(PipelineError):
    """A step's capability did not settle within its timeout"""
    def __init__(self, message: str, timeout_ms: int = None, step_name: str = None):
        self.timeout_ms = timeout_ms
        super().__init__(message, step_name=step_name, recoverable=False)


class SchemaValidationError(PipelineError):
    """Step input or output does not match its declared schema"""
    def __init__(self, message: str, errors: list = None, step_name: str = None):
        self.errors = errors or []
        super().__init__(message, step_name=step_name, recoverable=False)


class BudgetExceededError(PipelineError):
    """Cumulative cost exceeded the configured ceiling"""
    def __init__(self, message: str, ceiling_usd: float = None, spent_usd: float = None):
        self.ceiling_usd = ceiling_usd
        self.spent_usd = spent_usd
        super().__init__(message, recoverable=False)


class LoopLimitError(PipelineError):
    """A step was re-entered more often than the visit cap allows"""
    def __init__(self, message: str, step_name: str = None, visits: int = 0):
        self.visits = visits
        super().__init__(message, step_name=step_name, recoverable=False)


class CapabilityAPIError(PipelineError):
    """Remote capability call failed (rate limit, auth, server error)"""
    def __init__(self, message: str, status_code: int = None, endpoint: str = None):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message, recoverable=True)
