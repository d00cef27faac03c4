import pytest

from common.config import RecognitionSettings
from common.schemas import AudioSegment, BoundaryFeatures, Location
from helpers import cand
from recognition.knowledge import AdjacencyKnowledgeBase, normalize_arabic
from recognition.scoring import Resolution, score_candidates
from recognition.sequence import DisambiguationContext, SequenceContextResolver

SEGMENT = AudioSegment(handle="unused.wav", duration_ms=5000, sequence_index=0)


@pytest.fixture(scope="module")
def knowledge():
    return AdjacencyKnowledgeBase.from_file(RecognitionSettings().adjacency_path)


@pytest.fixture
def resolver(knowledge):
    return SequenceContextResolver(knowledge, RecognitionSettings())


def context(candidates, features=None):
    return DisambiguationContext(candidates=score_candidates(candidates), segment=SEGMENT, features=features)


class TestNormalizeArabic:
    def test_strips_diacritics_and_unifies_alef(self):
        assert normalize_arabic("قُلْ أَعُوذُ بِرَبِّ") == "قل اعوذ برب"

    def test_collapses_whitespace_and_punctuation(self):
        assert normalize_arabic("  الرَّحْمَٰنُ ،  عَلَّمَ ") == "الرحمن علم"

    def test_taa_marbuta_and_alef_maqsura(self):
        assert normalize_arabic("الصلاة على") == "الصلاه علي"


class TestKnowledgeBase:
    def test_shipped_data_loads(self, knowledge):
        assert len(knowledge) > 40
        assert knowledge.is_known_repeated(Location.parse("55:13"))
        assert not knowledge.is_known_repeated(Location.parse("2:255"))
        assert knowledge.is_opening_formula(Location.parse("1:1"))

    def test_expectations_for_unknown_location(self, knowledge):
        assert knowledge.expectations_for(Location.parse("2:255")) is None

    def test_from_dict(self):
        kb = AdjacencyKnowledgeBase.from_dict(
            {
                "expectations": {
                    "54:17": {"expects_pause_before": False, "next_verse_onset_signature": "كذبت عاد"},
                },
            }
        )
        expectation = kb.expectations_for(Location.parse("54:17"))
        assert expectation.expects_pause_before is False
        assert expectation.expects_pause_after is True
        assert kb.chapter_openings == []


class TestOnsetMatching:
    def test_prefix_match_ignores_diacritics(self, resolver):
        assert resolver.onset_matches("كذبت عاد فكيف كان عذابي ونذر", "كَذَّبَتْ عَادٌ")

    def test_different_onset_does_not_match(self, resolver):
        assert not resolver.onset_matches("خلق الإنسان من صلصال كالفخار", "رب المشرقين")

    def test_missing_signature(self, resolver):
        assert not resolver.onset_matches("الم", None)
        assert not resolver.onset_matches("", "الم")

    def test_sequence_score_bonuses(self, resolver, knowledge):
        expectation = knowledge.expectations_for(Location.parse("55:16"))
        both = BoundaryFeatures(pause_before=True, pause_after=True, trailing_onset_signature="رب المشرقين")
        pauses_only = BoundaryFeatures(pause_before=True, pause_after=True)
        nothing = BoundaryFeatures(pause_before=False, pause_after=True)
        assert resolver.sequence_score(expectation, both) == pytest.approx(0.9)
        assert resolver.sequence_score(expectation, pauses_only) == pytest.approx(0.65)
        assert resolver.sequence_score(expectation, nothing) == pytest.approx(0.5)


class TestResolve:
    def test_refrain_tie_broken_by_following_verse(self, resolver):
        features = BoundaryFeatures(pause_before=True, pause_after=True, trailing_onset_signature="رب المشرقين")
        result = resolver.resolve(context([cand("55:13", 0.85, True), cand("55:16", 0.85, True)], features))
        assert result.applied
        assert str(result.top.location) == "55:16"
        assert result.resolution != Resolution.ambiguous
        assert set(result.rescored) == {"55:13", "55:16"}

    def test_without_features_only_classifies(self, resolver):
        result = resolver.resolve(context([cand("55:13", 0.85, True), cand("55:16", 0.85, True)]))
        assert not result.applied
        assert result.resolution == Resolution.ambiguous

    def test_skipped_when_no_contender_is_known(self, resolver):
        features = BoundaryFeatures(pause_before=True, pause_after=True, trailing_onset_signature="رب المشرقين")
        result = resolver.resolve(context([cand("2:255", 0.85), cand("3:2", 0.84)], features))
        assert not result.applied
        assert result.resolution == Resolution.ambiguous

    def test_unknown_candidates_keep_neutral_sequence_score(self, resolver):
        features = BoundaryFeatures(pause_before=True, pause_after=True, trailing_onset_signature="رب المشرقين")
        result = resolver.resolve(context([cand("55:16", 0.85, True), cand("2:255", 0.85)], features))
        other = next(c for c in result.candidates if str(c.location) == "2:255")
        assert other.sequence_score == pytest.approx(0.5)

    def test_empty_candidates(self, resolver):
        assert resolver.resolve(context([])).resolution == Resolution.empty


class TestOpeningFormula:
    def test_continuation_identifies_chapter(self, resolver):
        features = BoundaryFeatures(pause_before=True, pause_after=True, trailing_onset_signature="قل هو الله أحد")
        result = resolver.resolve(context([cand("1:1", 0.95, True)], features))
        assert result.resolution == Resolution.resolved
        assert result.opening.chapter == 112
        assert str(result.top.location) == "112:1"
        assert result.top.raw_score == pytest.approx(0.95)

    def test_shared_opening_needs_more_audio(self, resolver):
        features = BoundaryFeatures(pause_before=True, pause_after=True, trailing_onset_signature="الم")
        result = resolver.resolve(context([cand("1:1", 0.95, True)], features))
        assert result.resolution == Resolution.ambiguous
        assert result.needs_more_audio

    def test_two_chapters_sharing_a_prefix(self, resolver):
        features = BoundaryFeatures(trailing_onset_signature="قل أعوذ برب")
        result = resolver.resolve(context([cand("1:1", 0.95, True)], features))
        assert result.needs_more_audio

    def test_no_continuation_audio(self, resolver):
        result = resolver.resolve(context([cand("1:1", 0.95, True)]))
        assert result.resolution == Resolution.ambiguous
        assert result.needs_more_audio
        assert str(result.top.location) == "1:1"
