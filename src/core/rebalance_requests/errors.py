class RebalanceCoordinationError(Exception):
    pass


class RebalanceConfigurationError(RebalanceCoordinationError):
    pass


class RebalanceValidationError(RebalanceCoordinationError):
    pass


class RebalanceNotFoundError(RebalanceCoordinationError):
    pass


class RebalanceInvalidStateError(RebalanceCoordinationError):
    pass


class RebalanceCanceledError(RebalanceInvalidStateError):
    """Raised when an action is rejected because the request was canceled.

    Callers must not retry: a canceled request is final and a new request is
    required to re-run the rebalance.
    """


class RebalanceVersionConflictError(RebalanceCoordinationError):
    pass


class ExternalWorkerError(RebalanceCoordinationError):
    pass


class SynthesisError(RebalanceCoordinationError):
    pass
