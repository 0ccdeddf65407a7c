import pytest
from balancer.errors import DuplicateBackendError, UnknownBackendError
from balancer.registry import Registry
from balancer.scheduler import BackendDescriptor
from balancer.scheduler_impl import RoundRobinSelector


def make_registry(*ports):
    return Registry([BackendDescriptor("localhost", p) for p in ports])


def select_n(selector, registry, n):
    """Call next_healthy n times and collect ports (None when nothing is healthy)."""
    result = []
    for _ in range(n):
        backend = selector.next_healthy(registry)
        result.append(backend.port if backend else None)
    return result


class TestRegistry:
    def test_register_defaults_to_healthy(self):
        registry = Registry()
        b1 = BackendDescriptor("localhost", 5001)
        registry.register(b1)
        assert registry.size() == 1
        assert registry.at(0) == b1
        assert registry.is_healthy(b1) is True

    def test_preserves_insertion_order(self):
        registry = make_registry(5003, 5001, 5002)
        assert [b.port for b in registry] == [5003, 5001, 5002]

    def test_duplicate_rejected(self):
        registry = make_registry(5001)
        registry.set_healthy(BackendDescriptor("localhost", 5001), False)
        with pytest.raises(DuplicateBackendError):
            registry.register(BackendDescriptor("localhost", 5001))
        assert len(registry) == 1
        assert registry.is_healthy(BackendDescriptor("localhost", 5001)) is False

    def test_same_port_different_host_is_distinct(self):
        registry = make_registry(5001)
        registry.register(BackendDescriptor("127.0.0.1", 5001))
        assert len(registry) == 2

    def test_set_healthy_unknown(self):
        registry = make_registry(5001)
        with pytest.raises(UnknownBackendError):
            registry.set_healthy(BackendDescriptor("localhost", 9999), True)
        assert BackendDescriptor("localhost", 9999) not in registry
        assert len(registry) == 1

    def test_is_healthy_unknown(self):
        with pytest.raises(KeyError):
            Registry().is_healthy(BackendDescriptor("localhost", 5001))

    def test_descriptor_is_value(self):
        assert BackendDescriptor("localhost", 5001) == BackendDescriptor("localhost", 5001)
        assert BackendDescriptor("localhost", 5001).address == "localhost:5001"
        with pytest.raises(AttributeError):
            BackendDescriptor("localhost", 5001).port = 5002


class TestRoundRobinSelector:
    def test_empty_registry(self):
        selector = RoundRobinSelector()
        assert select_n(selector, Registry(), 3) == [None, None, None]

    def test_single_backend(self):
        selector = RoundRobinSelector()
        assert select_n(selector, make_registry(5001), 3) == [5001, 5001, 5001]

    def test_cycles_in_registration_order(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003)
        assert select_n(selector, registry, 5) == [5001, 5002, 5003, 5001, 5002]

    def test_each_backend_once_per_cycle(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003, 5004)
        for _ in range(3):
            assert sorted(select_n(selector, registry, 4)) == [5001, 5002, 5003, 5004]

    def test_skips_unhealthy(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003)
        registry.set_healthy(registry.at(0), False)
        assert selector.next_healthy(registry).port != 5001

    def test_unhealthy_keeps_relative_order(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003, 5004)
        assert select_n(selector, registry, 1) == [5001]
        registry.set_healthy(registry.at(2), False)
        assert select_n(selector, registry, 6) == [5002, 5004, 5001, 5002, 5004, 5001]

    def test_recovered_backend_rejoins(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003)
        registry.set_healthy(registry.at(1), False)
        assert select_n(selector, registry, 2) == [5001, 5003]
        registry.set_healthy(registry.at(1), True)
        assert select_n(selector, registry, 3) == [5001, 5002, 5003]

    def test_all_unhealthy(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003)
        for backend in registry:
            registry.set_healthy(backend, False)
        assert select_n(selector, registry, 3) == [None, None, None]

    def test_all_unhealthy_then_one_recovers(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003)
        for backend in registry:
            registry.set_healthy(backend, False)
        assert selector.next_healthy(registry) is None
        registry.set_healthy(BackendDescriptor("localhost", 5002), True)
        assert selector.next_healthy(registry).port == 5002

    def test_failed_scan_leaves_cursor_in_place(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002, 5003)
        select_n(selector, registry, 2)
        assert selector.cursor == 2
        for backend in registry:
            registry.set_healthy(backend, False)
        selector.next_healthy(registry)
        assert selector.cursor == 2

    def test_late_registration_joins_cycle(self):
        selector = RoundRobinSelector()
        registry = make_registry(5001, 5002)
        assert select_n(selector, registry, 2) == [5001, 5002]
        registry.register(BackendDescriptor("localhost", 5003))
        assert select_n(selector, registry, 3) == [5001, 5002, 5003]
