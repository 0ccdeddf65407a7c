from balancer.registry import Registry
from balancer.scheduler import BackendDescriptor, Selector


class RoundRobinSelector(Selector):
    """Cyclic cursor over the registry that skips unhealthy backends.

    The cursor advances one position per scanned candidate, healthy or not.
    A scan that finds nothing healthy makes exactly len(registry) steps and
    so leaves the cursor where it started.
    """

    def __init__(self):
        self._cursor = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def next_healthy(self, registry: Registry) -> BackendDescriptor | None:
        n = registry.size()
        if n == 0:
            return None
        for _ in range(n):
            candidate = registry.at(self._cursor)
            self._cursor = (self._cursor + 1) % n
            if registry.is_healthy(candidate):
                return candidate
        return None
