import httpx
import pytest

from common.errors import ClassificationUnavailable, RecognitionTimeout
from recognition.sources import HttpCandidateSource, HttpFeatureExtractor, validate_candidates


def candidate(location, score, repeated=False):
    chapter, verse = location.split(":")
    return {"location": {"chapter": int(chapter), "verse": int(verse)}, "raw_score": score, "is_known_repeated": repeated}


class TestValidateCandidates:
    def test_ranks_and_deduplicates(self):
        payload = {
            "candidates": [
                candidate("55:16", 0.7, True),
                candidate("55:13", 0.9, True),
                candidate("55:16", 0.8, True),
            ]
        }
        result = validate_candidates(payload)
        assert [(str(c.location), c.raw_score) for c in result] == [("55:13", 0.9), ("55:16", 0.8)]

    def test_caps_at_top_k(self):
        payload = {"candidates": [candidate(f"2:{v}", 0.5) for v in range(1, 20)]}
        assert len(validate_candidates(payload, top_k=10)) == 10

    @pytest.mark.parametrize(
        "payload",
        [
            {"candidates": [candidate("115:1", 0.5)]},
            {"candidates": [candidate("2:1", 1.5)]},
            {"matches": []},
            ["not", "an", "object"],
        ],
    )
    def test_malformed_payload(self, payload):
        with pytest.raises(ClassificationUnavailable):
            validate_candidates(payload)


class TestHttpCandidateSource:
    @pytest.mark.asyncio
    async def test_posts_audio_to_classify(self, segment_factory):
        seen = {}

        def handler(request: httpx.Request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json={"candidates": [candidate("2:255", 0.93)], "transcription": "الله لا إله إلا هو"})

        source = HttpCandidateSource("http://classifier/", transport=httpx.MockTransport(handler))
        result = await source.classify(segment_factory().handle)
        assert seen["path"] == "/classify"
        assert b"RIFF" in seen["body"]
        assert str(result[0].location) == "2:255"

    @pytest.mark.asyncio
    async def test_server_error(self, segment_factory):
        source = HttpCandidateSource(
            "http://classifier",
            transport=httpx.MockTransport(lambda request: httpx.Response(502, json={"detail": "down"})),
        )
        with pytest.raises(ClassificationUnavailable):
            await source.classify(segment_factory().handle)

    @pytest.mark.asyncio
    async def test_invalid_json(self, segment_factory):
        source = HttpCandidateSource(
            "http://classifier",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>")),
        )
        with pytest.raises(ClassificationUnavailable):
            await source.classify(segment_factory().handle)

    @pytest.mark.asyncio
    async def test_timeout(self, segment_factory):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        source = HttpCandidateSource("http://classifier", timeout=0.5, transport=httpx.MockTransport(handler))
        with pytest.raises(RecognitionTimeout) as info:
            await source.classify(segment_factory().handle)
        assert info.value.operation == "classify"

    @pytest.mark.asyncio
    async def test_missing_audio(self):
        source = HttpCandidateSource("http://classifier", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        with pytest.raises(ClassificationUnavailable):
            await source.classify("/nonexistent/segment.wav")


class TestHttpFeatureExtractor:
    @pytest.mark.asyncio
    async def test_parses_features(self, segment_factory):
        def handler(request):
            assert request.url.path == "/features"
            return httpx.Response(
                200,
                json={"pause_before": True, "pause_after": False, "trailing_onset_signature": "رب المشرقين"},
            )

        extractor = HttpFeatureExtractor("http://classifier", transport=httpx.MockTransport(handler))
        features = await extractor.extract_boundary_features(segment_factory().handle)
        assert features.pause_before and not features.pause_after
        assert features.trailing_onset_signature == "رب المشرقين"

    @pytest.mark.asyncio
    async def test_malformed_features(self, segment_factory):
        extractor = HttpFeatureExtractor(
            "http://classifier",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"pause_before": "maybe"})),
        )
        with pytest.raises(ClassificationUnavailable):
            await extractor.extract_boundary_features(segment_factory().handle)
