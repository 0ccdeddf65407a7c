from collections.abc import Iterator

from balancer.errors import DuplicateBackendError, UnknownBackendError
from balancer.scheduler import BackendDescriptor


class Registry:
    """Ordered backends plus one health flag per backend.

    Insertion order is the round-robin order. Entries are never removed.
    Not synchronized on its own; BackendPool serializes access.
    """

    def __init__(self, backends: list[BackendDescriptor] | None = None):
        self._backends: list[BackendDescriptor] = []
        self._health: dict[BackendDescriptor, bool] = {}
        for backend in backends or []:
            self.register(backend)

    def register(self, backend: BackendDescriptor):
        if backend in self._health:
            raise DuplicateBackendError(backend.address)
        self._backends.append(backend)
        self._health[backend] = True

    def set_healthy(self, backend: BackendDescriptor, healthy: bool):
        if backend not in self._health:
            raise UnknownBackendError(backend.address)
        self._health[backend] = bool(healthy)

    def is_healthy(self, backend: BackendDescriptor) -> bool:
        try:
            return self._health[backend]
        except KeyError:
            raise UnknownBackendError(backend.address) from None

    def size(self) -> int:
        return len(self._backends)

    def at(self, index: int) -> BackendDescriptor:
        return self._backends[index]

    def __len__(self) -> int:
        return len(self._backends)

    def __iter__(self) -> Iterator[BackendDescriptor]:
        return iter(list(self._backends))

    def __contains__(self, backend: object) -> bool:
        return backend in self._health
