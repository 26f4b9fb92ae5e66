class NotFound(ValueError):
    pass


class InvalidInput(ValueError):
    pass


class UpstreamUnavailable(RuntimeError):
    pass


class PersistenceFailure(RuntimeError):
    pass


class ReconciliationInProgress(RuntimeError):
    pass
