from .client import send_request
from .errors import (
    BalancerError,
    BindError,
    DuplicateBackendError,
    ListenerStateError,
    UnknownBackendError,
)
from .handler import LineHandler, DEFAULT_READ_TIMEOUT
from .listener import ConnectionListener, ListenerState
from .metrics import MetricsCollector
from .registry import Registry
from .scheduler import BackendDescriptor, Selector
from .scheduler_impl import RoundRobinSelector
