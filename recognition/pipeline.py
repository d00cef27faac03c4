from __future__ import annotations

import logging
from typing import Optional

from capture.feed import SegmentFeed
from capture.storage import SegmentStore
from common.config import RecognitionSettings
from recognition.adaptive import AdaptiveListeningController
from recognition.engine import DisambiguationEngine
from recognition.knowledge import AdjacencyKnowledgeBase
from recognition.scheduler import RecognitionScheduler
from recognition.sequence import SequenceContextResolver
from recognition.sources import AudioExtensionSource, HttpCandidateSource, HttpFeatureExtractor

logger = logging.getLogger(__name__)


def build_scheduler(
    store: SegmentStore,
    knowledge: AdjacencyKnowledgeBase,
    settings: RecognitionSettings | None = None,
    extension_source: Optional[AudioExtensionSource] = None,
    feed: Optional[SegmentFeed] = None,
) -> RecognitionScheduler:
    """Wire the HTTP collaborators, the three layers and the scheduler.

    With no `extension_source` the scheduler's own feed supplies the extra
    audio for Layer 3, which is what a client streaming segments needs.
    """
    settings = settings or RecognitionSettings()
    if extension_source is None:
        feed = feed or SegmentFeed()
        extension_source = feed

    source = HttpCandidateSource(settings.classifier_url, settings.request_timeout_s, settings.top_k)
    extractor = HttpFeatureExtractor(settings.classifier_url, settings.request_timeout_s)
    engine = DisambiguationEngine(
        source,
        SequenceContextResolver(knowledge, settings),
        extractor=extractor,
        adaptive=AdaptiveListeningController(extension_source, store, settings),
        store=store,
        settings=settings,
    )
    logger.debug("Pipeline built against classifier at %s", settings.classifier_url)
    return RecognitionScheduler(engine, store, settings, feed)
