from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from balancer.registry import Registry


@dataclass(frozen=True)
class BackendDescriptor:
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return self.address


class Selector(ABC):
    @abstractmethod
    def next_healthy(self, registry: "Registry") -> BackendDescriptor | None:
        pass
