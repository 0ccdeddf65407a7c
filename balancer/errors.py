class BalancerError(Exception):
    pass


class UnknownBackendError(BalancerError, KeyError):
    def __init__(self, address: str):
        super().__init__(address)
        self.address = address

    def __str__(self) -> str:
        return f"unknown backend: {self.address}"


class DuplicateBackendError(BalancerError, ValueError):
    def __init__(self, address: str):
        super().__init__(f"backend already registered: {address}")
        self.address = address


class BindError(BalancerError, OSError):
    """Raised when a listener cannot bind its port. Never retried."""


class ListenerStateError(BalancerError, RuntimeError):
    pass
