"""Adjacency knowledge base for verified repeated-text locations.

Only locations whose text repeats elsewhere have entries; absence of an
entry means sequence context cannot help for that location.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from common.schemas import AdjacencyExpectation, Location
from recognition.scoring import OPENING_FORMULA

logger = logging.getLogger(__name__)

_ALEF_VARIANTS = re.compile(r"[آأإٱ]")
_NON_LETTERS = re.compile(r"[^ء-غف-ي٠-٩a-zA-Z0-9 ]")


def normalize_arabic(text: str) -> str:
    """Strip tashkeel and unify letter variants so signatures compare on skeletons."""
    text = _ALEF_VARIANTS.sub("ا", text)
    text = text.replace("ى", "ي").replace("ة", "ه")
    text = _NON_LETTERS.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


@dataclass(frozen=True)
class ChapterOpening:
    chapter: int
    location: Location
    signature: str


class AdjacencyKnowledgeBase:
    def __init__(
        self,
        expectations: dict[tuple[int, int], AdjacencyExpectation],
        chapter_openings: Optional[list[ChapterOpening]] = None,
        opening_formula: Location = OPENING_FORMULA,
    ) -> None:
        self._expectations = expectations
        self.chapter_openings = chapter_openings or []
        self.opening_formula = opening_formula

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AdjacencyKnowledgeBase:
        expectations = {}
        for key, raw in data.get("expectations", {}).items():
            location = Location.parse(key)
            expectations[location.key] = AdjacencyExpectation(**raw)

        openings = []
        for chapter, raw in data.get("chapter_openings", {}).items():
            openings.append(
                ChapterOpening(
                    chapter=int(chapter),
                    location=Location.parse(raw["location"]),
                    signature=raw["signature"],
                )
            )
        openings.sort(key=lambda o: o.chapter)

        formula = Location.parse(data["opening_formula"]) if "opening_formula" in data else OPENING_FORMULA
        return cls(expectations, openings, formula)

    @classmethod
    def from_file(cls, path: str | Path) -> AdjacencyKnowledgeBase:
        with open(path, encoding="utf-8") as f:
            kb = cls.from_dict(json.load(f))
        logger.info(
            "Adjacency knowledge base loaded: %d repeated locations, %d chapter openings",
            len(kb),
            len(kb.chapter_openings),
        )
        return kb

    def expectations_for(self, location: Location) -> Optional[AdjacencyExpectation]:
        return self._expectations.get(location.key)

    def is_known_repeated(self, location: Location) -> bool:
        return location.key in self._expectations

    def is_opening_formula(self, location: Location) -> bool:
        return location == self.opening_formula

    def __len__(self) -> int:
        return len(self._expectations)
