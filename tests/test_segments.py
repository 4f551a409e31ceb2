import pytest

from models.trips import BusRoute, SegmentInfo
from services.errors import InvalidTripDataError
from services.segments import MISSING_SEGMENTS_MESSAGE, extract_segment_info


def test_segment_ids_from_segments_list():
    trip = {"segments": [{"segment_id": "s1", "id": "x"}, {"id": "leg_2"}, {"id": "abc"}]}

    assert extract_segment_info(trip) == [
        SegmentInfo(id="s1", is_legacy=False),
        SegmentInfo(id="leg_2", is_legacy=False),
        SegmentInfo(id="abc", is_legacy=True),
    ]


def test_cascade_falls_through_in_order():
    assert extract_segment_info({"segments": [], "segment_id": "direct"}) == [SegmentInfo(id="direct")]
    assert extract_segment_info({"tripId": "t-1", "id": "own"}) == [SegmentInfo(id="t-1", is_legacy=True)]
    assert extract_segment_info({"id": "own"}) == [SegmentInfo(id="own", is_legacy=True)]
    assert extract_segment_info({"id": "unknown", "legs": [{"segment_id": "s9"}]}) == [SegmentInfo(id="s9")]


def test_mapped_route_resolves_from_trip_id():
    route = BusRoute(id="t1", trip_id="t1")
    assert extract_segment_info(route) == [SegmentInfo(id="t1", is_legacy=True)]


def test_nothing_resolvable_raises():
    with pytest.raises(InvalidTripDataError, match=MISSING_SEGMENTS_MESSAGE):
        extract_segment_info({"id": "unknown", "segments": [{}], "legs": []})

    with pytest.raises(InvalidTripDataError):
        extract_segment_info(BusRoute())
