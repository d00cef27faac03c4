import pytest

from capture.storage import SegmentStore
from common.schemas import AudioSegment
from helpers import tone


@pytest.fixture
def store(tmp_path):
    return SegmentStore(tmp_path / "segments")


@pytest.fixture
def segment_factory(store):
    def make(index: int = 0, ms: int = 3000, offset_ms: int = 0) -> AudioSegment:
        return store.write(tone(ms), sequence_index=index, start_offset_ms=offset_ms)

    return make
