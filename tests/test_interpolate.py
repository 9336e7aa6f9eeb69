import pytest

from ptguard.errors import InterpolationOutOfRange
from ptguard.interpolate import interpolate
from ptguard.snapshot import Snapshot

from tests.conftest import T0


@pytest.fixture
def pair():
    a = Snapshot(tracker="alpha", up=100, down=50, ratio=2.0, timestamp=T0, id=1)
    b = Snapshot(tracker="alpha", up=200, down=150, ratio=1.0, timestamp=T0 + 100, id=2)
    return a, b


class TestInterpolate:
    def test_midpoint(self, pair):
        a, b = pair
        s = interpolate(a, b, T0 + 50)
        assert (s.up, s.down) == (150, 100)
        assert s.ratio == pytest.approx(1.5)
        assert s.timestamp == T0 + 50
        assert s.tracker == "alpha"
        assert not s.collected
        assert s.id is None

    def test_round_trip_at_bounds(self, pair):
        a, b = pair
        for source in (a, b):
            s = interpolate(a, b, source.timestamp)
            assert (s.tracker, s.up, s.down, s.timestamp) == (
                source.tracker, source.up, source.down, source.timestamp)
            assert s.ratio == pytest.approx(source.ratio)

    def test_inherits_schema_version(self, pair):
        a, b = pair
        old = Snapshot(tracker="alpha", up=1, down=1, ratio=1.0, timestamp=T0, schema_version=0)
        assert interpolate(old, b, T0 + 10).schema_version == 0

    @pytest.mark.parametrize("offset", [-1, -3600, 101, 10_000])
    def test_out_of_range(self, pair, offset):
        a, b = pair
        with pytest.raises(InterpolationOutOfRange):
            interpolate(a, b, T0 + offset)

    def test_zero_span_copies_previous(self):
        a = Snapshot(tracker="alpha", up=10, down=5, ratio=2.0, timestamp=T0)
        s = interpolate(a, a, T0)
        assert (s.up, s.down, s.ratio) == (10, 5, 2.0)
