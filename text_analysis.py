#!/usr/bin/env python3
"""
Text Analysis Toolkit
=====================
Shared text handling for the phishing scanner and the statistics trainer:
HTML stripping, token normalization, per-document linguistic metrics and the
persisted linguistic statistics table that bridges the two.
"""

import re
import json
import html
import math
import logging
import threading
from pathlib import Path
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Iterable, FrozenSet, Tuple, Any

from langdetect import detect, DetectorFactory
from langdetect.detector_factory import init_factory
from langdetect.lang_detect_exception import LangDetectException

logger = logging.getLogger(__name__)

# langdetect is randomized unless seeded
DetectorFactory.seed = 0
_PROFILES_LOCK = threading.Lock()


# ============================================================================
# STATIC WORD TABLES
# ============================================================================

STOP_WORDS = frozenset({
    'the', 'be', 'to', 'of', 'and', 'a', 'in', 'that', 'have', 'i',
    'it', 'for', 'not', 'on', 'with', 'he', 'as', 'you', 'do', 'at',
    'this', 'but', 'his', 'by', 'from', 'they', 'we', 'say', 'her', 'she',
    'or', 'an', 'will', 'my', 'one', 'all', 'would', 'there', 'their', 'what',
    'so', 'up', 'out', 'if', 'about', 'who', 'get', 'which', 'go', 'me',
    'when', 'make', 'can', 'like', 'time', 'no', 'just', 'him', 'know', 'take',
    'people', 'into', 'year', 'your', 'good', 'some', 'could', 'them', 'see', 'other',
    'than', 'then', 'now', 'look', 'only', 'come', 'its', 'over', 'think', 'also',
    'back', 'after', 'use', 'two', 'how', 'our', 'work', 'first', 'well', 'way',
    'even', 'new', 'want', 'because', 'any', 'these', 'give', 'day', 'most', 'us',
    'is', 'are', 'was', 'were', 'been', 'has',
    're', 'fw', 'cc', 'pm', 'am', 'subject', 'forwarded', 'original', 'message',
    'sent', 'date', 'mail', 'mailto', 'image', 'attached', 'file',
})

# Words frequent in phishing corpora that carry no phishing signal
DATASET_ARTIFACT_WORDS = frozenset({
    # Salutations and sign-offs
    'dear', 'please', 'thank', 'thanks', 'regards', 'sincerely', 'hello', 'hi',
    'sir', 'madam',
    # Names that leak from corpus collection
    'jose', 'monkey', 'john', 'james', 'david', 'michael', 'robert', 'william',
    'mary', 'patricia',
    # Domain and markup noise
    'com', 'org', 'net', 'gov', 'edu', 'mil', 'www', 'http', 'https', 'html', 'php',
    # Generic words
    'here', 'below', 'above', 'following', 'attached', 'received', 'sent', 'reply',
    'forward', 'today', 'tomorrow', 'yesterday', 'soon', 'may', 'might', 'must',
    'should', 'would', 'contact', 'questions', 'help', 'support', 'best', 'team',
    'company',
    # Numbers spelled out
    'one', 'two', 'three', 'four', 'five',
})

SPAM_TRIGGER_PHRASES = (
    'act now', 'winner', 'free', 'urgent', 'click here',
    'limited time', 'guaranteed', 'investment', 'security', 'account',
    'verify', 'suspended', 'lottery', 'prize', 'selected',
)

POSITIVE_WORDS = frozenset({
    'good', 'great', 'excellent', 'best', 'love', 'happy', 'success', 'profit',
    'win', 'gain', 'opportunity', 'freedom',
})

NEGATIVE_WORDS = frozenset({
    'bad', 'loss', 'failure', 'scam', 'fraud', 'urgent', 'danger', 'risk',
    'fear', 'lose', 'limit', 'cancel',
})

SENTIMENT_SCALE = 10.0
BODY_MIN_TOKEN_LENGTH = 3
SUBJECT_MIN_TOKEN_LENGTH = 2
MIN_SENTENCE_LENGTH = 10

DEFAULT_LANGUAGE = 'English'
MIN_LANGUAGE_TEXT_LENGTH = 20
LANGUAGE_NAMES = {
    'en': 'English', 'de': 'German', 'fr': 'French', 'es': 'Spanish',
    'it': 'Italian', 'pt': 'Portuguese', 'nl': 'Dutch', 'pl': 'Polish',
    'ru': 'Russian', 'tr': 'Turkish', 'sv': 'Swedish', 'da': 'Danish',
    'no': 'Norwegian', 'fi': 'Finnish', 'cs': 'Czech', 'ro': 'Romanian',
    'hu': 'Hungarian', 'el': 'Greek', 'uk': 'Ukrainian', 'ar': 'Arabic',
    'he': 'Hebrew', 'ja': 'Japanese', 'ko': 'Korean', 'zh-cn': 'Chinese',
    'zh-tw': 'Chinese', 'vi': 'Vietnamese', 'id': 'Indonesian', 'hi': 'Hindi',
}


# ============================================================================
# HTML STRIPPING
# ============================================================================

_SCRIPT_STYLE_RE = re.compile(r'<(script|style)[^>]*>.*?</(script|style)>', re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r'<(br|p|div|/div|tr|/tr)\b[^>]*>', re.IGNORECASE)
_TAG_RE = re.compile(r'<[^>]*>')
_BLANK_LINES_RE = re.compile(r'\n\s*\n')

_ASCII_WORD_RE = re.compile(r'[a-z]+', re.IGNORECASE)
_UNICODE_WORD_RE = re.compile(r'[^\W\d_]+')
_SENTENCE_SPLIT_RE = re.compile(r'[.!?]+')


def strip_html(text: str) -> str:
    """
    Reduce an HTML (or plain) body to readable text.

    Script and style blocks are dropped with their content, block-level tags
    become line breaks so sentence boundaries survive, every other tag is
    removed and entities are unescaped.
    """
    if not text:
        return ""

    text = _SCRIPT_STYLE_RE.sub('', text)
    text = _BLOCK_TAG_RE.sub('\n', text)
    text = _TAG_RE.sub('', text)
    text = html.unescape(text)
    text = _BLANK_LINES_RE.sub('\n\n', text)

    return text.strip()


# ============================================================================
# NORMALIZATION
# ============================================================================

@dataclass
class NormalizedText:
    """Ordered tokens of one text plus their counts."""
    tokens: List[str] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)

    @property
    def total(self) -> int:
        return len(self.tokens)

    @property
    def unique(self) -> FrozenSet[str]:
        return frozenset(self.counts)


class TextNormalizer:
    """
    Turns raw text into filtered lowercase tokens.

    The stop-word set, the dataset-artifact set and the optional reference
    dictionary are fixed at construction. An empty or missing dictionary
    disables dictionary filtering instead of rejecting every token.
    """

    def __init__(
        self,
        stop_words: Iterable[str] = STOP_WORDS,
        artifact_words: Iterable[str] = DATASET_ARTIFACT_WORDS,
        dictionary: Optional[Iterable[str]] = None,
        unicode_letters: bool = True
    ):
        self.stop_words = frozenset(stop_words)
        self.artifact_words = frozenset(artifact_words)
        self.dictionary = frozenset(dictionary) if dictionary else frozenset()
        self.unicode_letters = unicode_letters
        self._word_re = _UNICODE_WORD_RE if unicode_letters else _ASCII_WORD_RE

    def words(self, text: str) -> List[str]:
        """Lowercase letter runs with no filtering applied."""
        if not text:
            return []
        return self._word_re.findall(text.lower())

    def normalize(
        self,
        text: str,
        min_length: int = BODY_MIN_TOKEN_LENGTH,
        html_input: bool = True
    ) -> NormalizedText:
        """
        Normalize text into a token sequence.

        Args:
            text: Raw text, possibly HTML
            min_length: Shortest token kept (2 for subjects, 3 for bodies)
            html_input: Strip markup before tokenizing

        Returns:
            NormalizedText with ordered tokens and their counts
        """
        if html_input:
            text = strip_html(text)

        tokens = [w for w in self.words(text) if self._keep(w, min_length)]
        return NormalizedText(tokens=tokens, counts=Counter(tokens))

    def _keep(self, word: str, min_length: int) -> bool:
        if len(word) < min_length or word.isdigit():
            return False
        if word in self.stop_words or word in self.artifact_words:
            return False
        if self.dictionary and word not in self.dictionary:
            return False
        return True


def load_dictionary(path: str) -> FrozenSet[str]:
    """Load a one-word-per-line reference dictionary; empty set if unreadable."""
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            words = {line.strip().lower() for line in f}
    except OSError as e:
        logger.warning(f"Could not open dictionary {path}: {e}. Dictionary filtering disabled.")
        return frozenset()

    return frozenset(w for w in words if len(w) > 1)


# ============================================================================
# DOCUMENT METRICS
# ============================================================================

@dataclass
class Document:
    """Linguistic profile of one corpus email."""
    subject: str
    body: str
    word_count: int = 0
    token_count: int = 0
    unique_token_count: int = 0
    sentence_count: int = 1
    lexical_richness: float = 0.0
    sentiment: float = 0.0
    readability: float = 0.0
    shouting_ratio: float = 0.0
    trigger_density: float = 0.0

    @property
    def avg_sentence_length(self) -> float:
        return self.word_count / self.sentence_count


def count_sentences(text: str) -> int:
    """Count `.!?`-delimited segments longer than 10 characters, never below 1."""
    count = sum(
        1 for segment in _SENTENCE_SPLIT_RE.split(text or '')
        if len(segment.strip()) > MIN_SENTENCE_LENGTH
    )
    return count or 1


def lexical_richness(unique_tokens: int, total_tokens: int) -> float:
    """Type-token ratio scaled by ln(total); 0 for one token or fewer."""
    if total_tokens <= 1:
        return 0.0
    return (unique_tokens / total_tokens) * math.log(total_tokens)


def sentiment_score(words: List[str]) -> float:
    if not words:
        return 0.0
    score = 0
    for word in words:
        if word in POSITIVE_WORDS:
            score += 1
        elif word in NEGATIVE_WORDS:
            score -= 1
    return score / len(words) * SENTIMENT_SCALE


def readability_score(text: str, word_count: int, sentence_count: int) -> float:
    """Automated Readability Index approximation."""
    if word_count == 0 or sentence_count == 0:
        return 0.0

    char_count = sum(1 for ch in text if not ch.isspace())
    return 4.71 * (char_count / word_count) + 0.5 * (word_count / sentence_count) - 21.43


def shouting_ratio(text: str) -> float:
    """Fraction of letters that are uppercase."""
    letters = 0
    upper = 0
    for ch in text or '':
        if ch.isalpha():
            letters += 1
            if ch.isupper():
                upper += 1
    if letters == 0:
        return 0.0
    return upper / letters


def trigger_density(text: str, triggers: Iterable[str] = SPAM_TRIGGER_PHRASES) -> float:
    """Trigger phrase occurrences per 100 whitespace-delimited words."""
    lower = (text or '').lower()
    word_count = len(lower.split())
    if word_count == 0:
        return 0.0
    matches = sum(lower.count(trigger) for trigger in triggers)
    return matches / word_count * 100


def detect_language(text: str) -> str:
    """
    Name of the language a body is written in.

    Text shorter than MIN_LANGUAGE_TEXT_LENGTH, or text langdetect cannot
    classify, is reported as DEFAULT_LANGUAGE. Codes without an entry in
    LANGUAGE_NAMES are returned as the ISO 639-1 code.
    """
    sample = (text or '').strip()
    if len(sample) < MIN_LANGUAGE_TEXT_LENGTH:
        return DEFAULT_LANGUAGE

    # profiles load lazily on first use
    with _PROFILES_LOCK:
        init_factory()

    try:
        code = detect(sample)
    except LangDetectException as e:
        logger.debug(f"Language detection failed: {e}")
        return DEFAULT_LANGUAGE

    return LANGUAGE_NAMES.get(code, code)


def analyze_document(
    subject: str,
    body: str,
    normalizer: TextNormalizer,
    tokens: Optional[NormalizedText] = None,
    html_input: bool = True
) -> Document:
    """
    Compute the linguistic profile of one email body.

    Args:
        subject: Subject line (kept for reference only)
        body: Body text, possibly HTML
        normalizer: Normalizer used for token filtering
        tokens: Already-normalized body tokens, to avoid a second pass
        html_input: Strip markup before measuring

    Returns:
        Populated Document
    """
    clean_body = strip_html(body) if html_input else body
    if tokens is None:
        tokens = normalizer.normalize(clean_body, BODY_MIN_TOKEN_LENGTH, html_input=False)

    words = normalizer.words(clean_body)
    sentences = count_sentences(clean_body)

    return Document(
        subject=subject,
        body=body,
        word_count=len(words),
        token_count=tokens.total,
        unique_token_count=len(tokens.counts),
        sentence_count=sentences,
        lexical_richness=lexical_richness(len(tokens.counts), tokens.total),
        sentiment=sentiment_score(words),
        readability=readability_score(clean_body, tokens.total, sentences),
        shouting_ratio=shouting_ratio(clean_body),
        trigger_density=trigger_density(clean_body),
    )


# ============================================================================
# LINGUISTIC STATISTICS TABLE
# ============================================================================

@dataclass(frozen=True)
class WordFreq:
    """Document frequency of one word within one class."""
    word: str
    count: int
    percent: float


@dataclass(frozen=True)
class LinguisticStats:
    """Aggregated statistics for one class (safe or scam)."""
    total_emails: int = 0
    avg_word_count: float = 0.0
    avg_sentence_length: float = 0.0
    avg_shouting_score: float = 0.0
    top_body_words: Tuple[WordFreq, ...] = ()
    top_subject_words: Tuple[WordFreq, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LinguisticStats':
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        return cls(
            total_emails=int(data.get('total_emails', 0)),
            avg_word_count=float(data.get('avg_word_count', 0.0)),
            avg_sentence_length=float(data.get('avg_sentence_length', 0.0)),
            avg_shouting_score=float(data.get('avg_shouting_score', 0.0)),
            top_body_words=_parse_words(data.get('top_body_words')),
            top_subject_words=_parse_words(data.get('top_subject_words')),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['top_body_words'] = [asdict(w) for w in self.top_body_words]
        data['top_subject_words'] = [asdict(w) for w in self.top_subject_words]
        return data


def _parse_words(items: Any) -> Tuple[WordFreq, ...]:
    if not items:
        return ()
    return tuple(
        WordFreq(word=str(item['word']), count=int(item['count']), percent=float(item['percent']))
        for item in items
    )


@dataclass(frozen=True)
class LinguisticStatsTable:
    """The persisted artifact: one LinguisticStats record per class."""
    safe_stats: LinguisticStats = field(default_factory=LinguisticStats)
    scam_stats: LinguisticStats = field(default_factory=LinguisticStats)

    @property
    def is_empty(self) -> bool:
        return not (self.scam_stats.top_body_words or self.scam_stats.top_subject_words)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LinguisticStatsTable':
        if not isinstance(data, dict):
            raise ValueError("statistics artifact must be a JSON object")
        return cls(
            safe_stats=LinguisticStats.from_dict(data.get('safe_stats', {})),
            scam_stats=LinguisticStats.from_dict(data.get('scam_stats', {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'safe_stats': self.safe_stats.to_dict(),
            'scam_stats': self.scam_stats.to_dict(),
        }

    @classmethod
    def load(cls, path: str) -> 'LinguisticStatsTable':
        """
        Load the statistics artifact.

        A missing or structurally invalid file yields an empty table, which
        turns all linguistic scoring off rather than stopping the scanner.
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Linguistic stats not found at {path}; linguistic scoring disabled")
            return cls()
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading linguistic stats {path}: {e}")
            return cls()

        try:
            table = cls.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Invalid linguistic stats in {path}: {e}")
            return cls()

        logger.info(
            f"Loaded linguistic stats from {path} "
            f"({table.safe_stats.total_emails} safe, {table.scam_stats.total_emails} scam emails)"
        )
        return table

    def save(self, path: str):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Linguistic stats written to {path}")


def resolve_data_path(relative_path: str) -> str:
    """Find a data file relative to the working directory or this project."""
    candidates = [
        Path(relative_path),
        Path(__file__).resolve().parent / relative_path,
    ]
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)
    return relative_path
