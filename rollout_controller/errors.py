class RolloutError(Exception):
    pass


class InvalidSpecError(RolloutError):
    """Raised when a rollout spec cannot be reconciled until it changes."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}" if field else message)
        self.field = field
        self.message = message


class ReplicaSetCollisionError(RolloutError):
    pass


class TrafficRoutingError(RolloutError):
    pass


class AnalysisRunError(RolloutError):
    pass
