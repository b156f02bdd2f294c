"""
Morphological analysis of Russian text: lemma counting and lemma lookup for snippets.
"""
from __future__ import annotations
import logging
import re
import string
from dataclasses import dataclass
from typing import Dict, Iterable, List

import pymorphy3

logger = logging.getLogger(__name__)

# ASCII punctuation, whitespace, em-dash and copyright sign, plus the typographic
# quotes and dashes common in Russian text
SEPARATORS = re.escape(string.punctuation) + r"\s—©«»„“”…–"
WORD_RE = re.compile(f"[^{SEPARATORS}]+")
SEPARATORS_RE = re.compile(f"[{SEPARATORS}]")
RUSSIAN_WORD_RE = re.compile(r"^[а-яё]+$")

# Interjections, conjunctions, prepositions, particles and pronouns
SERVICE_POS = {"INTJ", "CONJ", "PREP", "PRCL", "NPRO"}


@dataclass(frozen=True)
class LemmaOccurrence:
    start: int
    end: int
    lemma: str


def fold_lemma(normal_form: str) -> str:
    return normal_form.replace("ё", "е")


class LemmaAnalyzer:
    """Splits text into words and reduces them to lemmas with pymorphy.

    The analyzer is stateless apart from the (read-only) morphology dictionary,
    so one instance can be shared between threads.
    """

    def __init__(self, morph: pymorphy3.MorphAnalyzer | None = None):
        self.morph = morph or pymorphy3.MorphAnalyzer()

    def _normal_forms(self, word: str) -> List[str] | None:
        """Distinct folded normal forms of a word, or None for a service word."""
        parses = self.morph.parse(word)
        if any(p.tag.POS in SERVICE_POS for p in parses):
            return None
        return self._all_normal_forms(word, parses)

    def get_lemmas(self, text: str, log_errors: bool = False) -> Dict[str, int]:
        """Count lemmas of the significant words in ``text``.

        Service words (interjections, conjunctions, prepositions, particles,
        pronouns) are dropped. Words that are not Russian are skipped.
        """
        result: Dict[str, int] = {}
        for word in SEPARATORS_RE.split(text.lower()):
            if not word:
                continue
            if not RUSSIAN_WORD_RE.match(word):
                if log_errors:
                    logger.debug(f"Morphological analysis failed: {word}")
                continue
            forms = self._normal_forms(word)
            if not forms:
                continue
            for form in forms:
                result[form] = result.get(form, 0) + 1
        return result

    def find_first_lemmas(self, text: str, lemmas: Iterable[str], max_depth: int,
                          log_errors: bool = False) -> List[LemmaOccurrence]:
        """Locate words of ``text`` whose lemma is in ``lemmas``.

        Scanning stops ``max_depth`` characters after the first hit.
        """
        targets = set(lemmas)
        result: List[LemmaOccurrence] = []
        depth = len(text)
        for match in WORD_RE.finditer(text.lower()):
            if match.start() > depth:
                break
            word = match.group()
            if not RUSSIAN_WORD_RE.match(word):
                if log_errors:
                    logger.debug(f"Morphological analysis failed: {word}")
                continue
            for parse_form in self._all_normal_forms(word):
                if parse_form in targets:
                    if not result:
                        depth = match.start() + max_depth
                    result.append(LemmaOccurrence(match.start(), match.end(), parse_form))
        return result

    def _all_normal_forms(self, word: str, parses=None) -> List[str]:
        forms = []
        for p in parses if parses is not None else self.morph.parse(word):
            form = fold_lemma(p.normal_form)
            if form not in forms:
                forms.append(form)
        return forms

    def describe(self, text: str) -> List[str]:
        """Morphological tags of every word, for debugging the analyzer."""
        lines = []
        for word in SEPARATORS_RE.split(text.lower()):
            if word:
                lines.extend(f"{word}: {p.normal_form} {p.tag}" for p in self.morph.parse(word))
        return lines
