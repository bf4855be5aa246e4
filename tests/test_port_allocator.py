from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from openapi_mock.errors import ConfigurationError, PortAllocationError, PortInUseError
from openapi_mock.models import PortRange
from openapi_mock.port_allocator import PortAllocator


def test_allocate_hands_out_lowest_free_port() -> None:
    allocator = PortAllocator(PortRange(start=9000, end=9010))

    assert allocator.allocate() == 9000
    assert allocator.allocate() == 9001
    allocator.release(9000)
    assert allocator.allocate() == 9000
    assert allocator.get_allocated() == {9000, 9001}


def test_preferred_port_is_claimed_exactly_once() -> None:
    allocator = PortAllocator(PortRange(start=9000, end=9010))

    assert allocator.allocate(9005) == 9005
    with pytest.raises(PortInUseError) as excinfo:
        allocator.allocate(9005)
    assert excinfo.value.code == "PORT_IN_USE"
    assert isinstance(excinfo.value, PortAllocationError)


def test_preferred_port_outside_range_is_rejected() -> None:
    allocator = PortAllocator(PortRange(start=9000, end=9010))

    with pytest.raises(PortInUseError):
        allocator.allocate(9010)
    assert not allocator.is_available(8999)


def test_exhausted_range_raises() -> None:
    allocator = PortAllocator(PortRange(start=9000, end=9003))
    claimed = [allocator.allocate() for _ in range(3)]

    assert claimed == [9000, 9001, 9002]
    with pytest.raises(PortAllocationError) as excinfo:
        allocator.allocate()
    assert allocator.get_count() == 3
    assert excinfo.value.port is None
    assert "9000-9003" in excinfo.value.message
    assert "port 0" not in excinfo.value.message.lower()
    assert "port 0" not in excinfo.value.user_message.lower()


@pytest.mark.parametrize("start,end", [(9010, 9000), (9000, 9000), (80, 90), (65000, 70000)])
def test_invalid_ranges_are_rejected(start: int, end: int) -> None:
    with pytest.raises(ConfigurationError):
        PortAllocator(PortRange(start=start, end=end))


def test_clear_and_queries() -> None:
    allocator = PortAllocator(PortRange(start=9000, end=9010))
    allocator.allocate(9002)

    assert allocator.is_allocated(9002)
    assert not allocator.is_available(9002)
    assert allocator.get_range() == PortRange(start=9000, end=9010)

    allocator.clear()
    assert allocator.get_count() == 0
    assert allocator.is_available(9002)


def test_concurrent_allocation_never_duplicates() -> None:
    allocator = PortAllocator(PortRange(start=20000, end=20100))

    with ThreadPoolExecutor(max_workers=16) as pool:
        ports = list(pool.map(lambda _: allocator.allocate(), range(100)))

    assert len(set(ports)) == 100
    assert all(20000 <= port < 20100 for port in ports)
