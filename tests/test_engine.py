import pytest

from common.config import RecognitionSettings
from common.errors import ClassificationUnavailable, RecognitionTimeout
from common.schemas import AmbiguousOutcome, BoundaryFeatures, FailedOutcome, PartialMatch, ResolvedOutcome
from helpers import FakeExtension, FakeExtractor, FakeSource, cand
from recognition.adaptive import AdaptiveListeningController
from recognition.engine import DisambiguationEngine
from recognition.knowledge import AdjacencyKnowledgeBase
from recognition.scheduler import RecognitionSession
from recognition.sequence import SequenceContextResolver


@pytest.fixture(scope="module")
def knowledge():
    return AdjacencyKnowledgeBase.from_file(RecognitionSettings().adjacency_path)


def always(*candidates):
    return FakeSource(lambda n, handle: list(candidates))


def make_engine(knowledge, source, extractor=None, extension=None, store=None, settings=None):
    settings = settings or RecognitionSettings()
    adaptive = AdaptiveListeningController(extension, store, settings) if extension is not None else None
    return DisambiguationEngine(
        source,
        SequenceContextResolver(knowledge, settings),
        extractor=extractor,
        adaptive=adaptive,
        store=None,
        settings=settings,
    )


class TestLayerOne:
    @pytest.mark.asyncio
    async def test_scenario_a_resolves_without_sequence_context(self, knowledge, segment_factory):
        extractor = FakeExtractor()
        engine = make_engine(knowledge, always(cand("2:255", 0.93)), extractor)
        outcome = await engine.resolve(segment_factory())
        assert isinstance(outcome, ResolvedOutcome)
        assert str(outcome.location) == "2:255"
        assert outcome.confidence == pytest.approx(0.672)
        assert extractor.calls == 0

    @pytest.mark.asyncio
    async def test_no_candidates(self, knowledge, segment_factory):
        engine = make_engine(knowledge, always())
        outcome = await engine.resolve(segment_factory())
        assert isinstance(outcome, FailedOutcome)
        assert outcome.reason == "no_match"

    @pytest.mark.asyncio
    async def test_classification_timeout(self, knowledge, segment_factory):
        source = FakeSource(lambda n, h: [cand("2:255", 0.9)], delay=1.0)
        engine = make_engine(knowledge, source, settings=RecognitionSettings(request_timeout_s=0.01))
        with pytest.raises(RecognitionTimeout):
            await engine.resolve(segment_factory())

    @pytest.mark.asyncio
    async def test_classification_error_propagates(self, knowledge, segment_factory):
        def fail(n, handle):
            raise ClassificationUnavailable("offline")

        engine = make_engine(knowledge, FakeSource(fail))
        with pytest.raises(ClassificationUnavailable):
            await engine.resolve(segment_factory())

    @pytest.mark.asyncio
    async def test_quality_feeds_the_score(self, knowledge, store, segment_factory):
        settings = RecognitionSettings()
        engine = DisambiguationEngine(
            always(cand("2:255", 0.93)),
            SequenceContextResolver(knowledge, settings),
            store=store,
            settings=settings,
        )
        outcome = await engine.resolve(segment_factory())
        assert outcome.confidence != pytest.approx(0.672)


class TestLayerTwo:
    @pytest.mark.asyncio
    async def test_scenario_b_invokes_sequence_context(self, knowledge, segment_factory):
        extractor = FakeExtractor()
        engine = make_engine(knowledge, always(cand("1:1", 0.90), cand("5:1", 0.88)), extractor)
        outcome = await engine.resolve(segment_factory())
        assert extractor.calls == 1
        # No Layer 3 configured: the formula case goes to the user
        assert isinstance(outcome, AmbiguousOutcome)

    @pytest.mark.asyncio
    async def test_refrain_resolved_by_following_verse(self, knowledge, segment_factory):
        features = BoundaryFeatures(pause_before=True, pause_after=True, trailing_onset_signature="يخرج منهما")
        engine = make_engine(
            knowledge,
            always(cand("55:13", 0.85, True), cand("55:21", 0.85, True)),
            FakeExtractor(features),
        )
        outcome = await engine.resolve(segment_factory())
        assert isinstance(outcome, ResolvedOutcome)
        assert str(outcome.location) == "55:21"

    @pytest.mark.asyncio
    async def test_feature_failure_skips_sequence_context(self, knowledge, segment_factory):
        class BrokenExtractor:
            async def extract_boundary_features(self, handle):
                raise ClassificationUnavailable("features down")

        engine = make_engine(knowledge, always(cand("55:13", 0.85, True), cand("55:16", 0.85, True)), BrokenExtractor())
        outcome = await engine.resolve(segment_factory())
        assert isinstance(outcome, AmbiguousOutcome)


class TestEscalation:
    @pytest.mark.asyncio
    async def test_always_tie_source_terminates(self, knowledge, store, segment_factory):
        source = always(cand("55:13", 0.85, True), cand("55:16", 0.85, True), cand("55:18", 0.85, True))
        first = segment_factory(0, 5000)
        extension = FakeExtension([segment_factory(1, 4000)])
        engine = make_engine(knowledge, source, FakeExtractor(), extension, store)
        session = RecognitionSession(session_id="s", accumulated_audio=[first])

        outcome = await engine.resolve(first, session)
        assert isinstance(outcome, AmbiguousOutcome)
        assert len(outcome.candidates) == 3
        assert len(source.calls) == 2
        assert session.escalations == 1
        assert len(extension.requests) == 1

    @pytest.mark.asyncio
    async def test_second_ambiguous_segment_reports_progress(self, knowledge, store, segment_factory):
        source = always(cand("55:13", 0.85, True), cand("55:16", 0.85, True))
        segments = [segment_factory(0, 5000), segment_factory(1, 5000, 5000)]
        extension = FakeExtension([segment_factory(2, 4000)])
        engine = make_engine(knowledge, source, FakeExtractor(), extension, store)
        session = RecognitionSession(session_id="s", accumulated_audio=segments)

        await engine.resolve(segments[0], session)
        outcome = await engine.resolve(segments[1], session)
        assert isinstance(outcome, PartialMatch)
        assert outcome.sequence_index == 1
        assert len(extension.requests) == 1

    @pytest.mark.asyncio
    async def test_extension_resolves_opening_formula(self, knowledge, store, segment_factory):
        first = segment_factory(0, 5000)

        def answer(n, handle):
            if n == 1:
                return [cand("1:1", 0.95, True)]
            return [cand("112:1", 0.9), cand("1:1", 0.6, True)]

        engine = make_engine(knowledge, FakeSource(answer), FakeExtractor(), FakeExtension([segment_factory(1, 4000)]), store)
        outcome = await engine.resolve(first, RecognitionSession(session_id="s", accumulated_audio=[first]))
        assert isinstance(outcome, ResolvedOutcome)
        assert str(outcome.location) == "112:1"

    @pytest.mark.asyncio
    async def test_escalation_uses_audio_up_to_the_segment(self, knowledge, store, segment_factory):
        segments = [segment_factory(0, 4000), segment_factory(1, 4000, 4000), segment_factory(2, 4000, 8000)]
        session = RecognitionSession(session_id="s", accumulated_audio=segments)
        extension = FakeExtension([segment_factory(3, 3000)])
        source = always(cand("55:13", 0.85, True), cand("55:16", 0.85, True))
        engine = make_engine(knowledge, source, FakeExtractor(), extension, store)

        await engine.resolve(segments[1], session)
        # 8000ms captured up to segment 1 leaves 7000ms of budget
        assert extension.requests == [(3000, 7000)]


class TestPipeline:
    def test_feed_backs_extension_by_default(self, knowledge, store):
        from recognition.pipeline import build_scheduler

        scheduler = build_scheduler(store, knowledge)
        assert scheduler.feed is not None
        assert scheduler.engine.adaptive.source is scheduler.feed
        assert scheduler.engine.store is store

    def test_explicit_extension_source(self, knowledge, store):
        from recognition.pipeline import build_scheduler

        extension = FakeExtension()
        scheduler = build_scheduler(store, knowledge, extension_source=extension)
        assert scheduler.feed is None
        assert scheduler.engine.adaptive.source is extension
