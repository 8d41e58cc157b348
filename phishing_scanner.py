#!/usr/bin/env python3
"""
Phishing Email Scanner
======================
Scores raw RFC 5322 / MIME messages for phishing risk by combining header
authenticity, live DNS reputation of the sender domain and word statistics
learned offline from labeled corpora (see train_stats.py).

The final probability is a weighted blend of three capped sub-scores:
technical (40%), body language (35%) and subject line (25%).
"""

import re
import json
import logging
import threading
from email import policy
from email.message import Message
from email.parser import BytesParser
from email.header import decode_header, make_header
from email.errors import HeaderParseError
from pathlib import Path
from types import MappingProxyType
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Mapping, FrozenSet, Union

import dns.resolver
import dns.exception
import requests
import tldextract

from text_analysis import (
    TextNormalizer,
    LinguisticStatsTable,
    strip_html,
    detect_language,
    shouting_ratio,
    resolve_data_path,
    BODY_MIN_TOKEN_LENGTH,
    SUBJECT_MIN_TOKEN_LENGTH,
    DEFAULT_LANGUAGE,
)

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

DEFAULT_STATS_PATH = 'data/linguistic_stats.json'
DEFAULT_TEST_EMAILS_DIR = 'data/test_emails'
MEMORY_PREFIX = 'memory:'

DNS_TIMEOUT = 3.0
DEFAULT_MIME_DEPTH = 8
DEFAULT_EVICTION_INTERVAL = 3600.0

# Bundled public suffix snapshot only; never fetch the list at runtime
_TLD_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


# ============================================================================
# DATA CLASSES FOR STRUCTURED ANALYSIS
# ============================================================================

@dataclass(frozen=True)
class RawMessage:
    """Parsed header block plus the undecoded body bytes."""
    headers: Mapping[str, str]
    body: bytes = b""

    def get(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)


@dataclass
class MimePart:
    """One node of a MIME tree."""
    content_type: str
    transfer_encoding: str = ""
    boundary: Optional[str] = None
    text: Optional[str] = None
    children: List['MimePart'] = field(default_factory=list)

    @property
    def is_multipart(self) -> bool:
        return self.content_type.startswith('multipart/')


@dataclass
class LinguisticTrigger:
    """A matched word or style signal, with a human-readable reason."""
    text: str
    explanation: str
    source: str = "body"  # body or subject


@dataclass
class DomainReputation:
    """Live DNS view of a sender domain."""
    domain: str
    registered_domain: str = ""
    has_mx_records: bool = False
    live_spf_record: str = ""
    live_dmarc_record: str = ""
    domain_trust_score: str = "Unknown"  # Trustworthy, Neutral, Unknown
    blacklist_status: str = "Unknown"    # Clean, Listed, Error, Error (Blocked), Unknown
    is_disposable: bool = False


@dataclass
class RiskFactors:
    """Named signals collected while analyzing one message."""
    # Header analysis
    spf_status: str = "unknown"
    dkim_status: str = "unknown"
    dmarc_status: str = "unknown"
    from_return_path_mismatch: bool = False
    reply_to_mismatch: bool = False
    suspicious_keywords: List[str] = field(default_factory=list)

    # Network checks
    domain: str = ""
    registered_domain: str = ""
    has_mx_records: bool = False
    live_spf_record: str = ""
    live_dmarc_record: str = ""
    domain_trust_score: str = "Unknown"
    blacklist_status: str = "Unknown"
    is_disposable: bool = False

    # Linguistic analysis
    linguistic_triggers: List[LinguisticTrigger] = field(default_factory=list)
    shouting_score: float = 0.0


@dataclass
class ScoreBreakdown:
    """Point penalties and bonuses before scaling."""
    base_score: float = 0.0
    auth_fail_penalty: float = 0.0
    auth_pass_bonus: float = 0.0
    mismatch_penalty: float = 0.0
    keyword_penalty: float = 0.0
    no_mx_penalty: float = 0.0
    disposable_penalty: float = 0.0
    linguistic_penalty: float = 0.0
    subject_linguistic_penalty: float = 0.0
    total_score: float = 0.0


@dataclass(frozen=True)
class ScoreCard:
    technical: float
    body: float
    subject: float
    total: float


@dataclass(frozen=True)
class AnalysisResult:
    """Complete scan result handed to the presentation layer."""
    file_name: str
    scam_probability: float
    safe_probability: float
    tech_score: float
    body_score: float
    subject_score: float
    email_body: str
    headers: Dict[str, str]
    risk_factors: RiskFactors
    score_breakdown: ScoreBreakdown
    body_triggers: List[LinguisticTrigger]
    subject_triggers: List[LinguisticTrigger]
    detected_lang: str = DEFAULT_LANGUAGE

    @property
    def is_likely_phishing(self) -> bool:
        return self.scam_probability >= 50.0


class ScannerError(Exception):
    """Base error for the scanner boundary."""


class MessageNotFoundError(ScannerError):
    """A referenced upload or test email does not exist (or has expired)."""


# ============================================================================
# INDICATOR DATABASE
# ============================================================================

class ScanIndicators:
    """Penalties, thresholds and static lists used by the scanner."""

    # Authentication-Results interpretation
    AUTH_MECHANISMS = ('spf', 'dkim', 'dmarc')
    AUTH_FAIL_PENALTIES = {'spf': 30, 'dkim': 30, 'dmarc': 20}
    AUTH_PASS_BONUSES = {'spf': 10, 'dkim': 10, 'dmarc': 5}
    MISSING_AUTH_PENALTY = 10

    RETURN_PATH_MISMATCH_PENALTY = 25
    REPLY_TO_MISMATCH_PENALTY = 20

    SUBJECT_KEYWORDS = [
        'urgent', 'verify', 'account', 'suspended', 'winner',
        'lottery', 'password', 'profit', 'margin',
    ]
    SUBJECT_KEYWORD_PENALTY = 15

    # Domain reputation
    NO_MX_PENALTY = 50
    DISPOSABLE_PENALTY = 20

    TRUSTED_DOMAINS = [
        'google.com', 'gmail.com',
        'microsoft.com', 'outlook.com', 'hotmail.com',
        'apple.com', 'icloud.com',
        'amazon.com',
        'linkedin.com',
        'paypal.com',
        'slack.com',
        'acquire.com',
        'reddit.com', 'redditmail.com',
    ]

    DISPOSABLE_DOMAINS = [
        'mailinator.com', 'guerrillamail.com', 'guerrillamail.net', 'sharklasers.com',
        '10minutemail.com', 'temp-mail.org', 'tempmail.com', 'tempmailo.com',
        'yopmail.com', 'throwawaymail.com', 'trashmail.com', 'getnada.com',
        'dispostable.com', 'maildrop.cc', 'mintemail.com', 'fakeinbox.com',
        'mohmal.com', 'emailondeck.com',
    ]

    # Linguistic matching against the scam-class tables
    BODY_WORD_THRESHOLD = 7.0
    SUBJECT_WORD_THRESHOLD = 5.0
    BODY_WORD_DIVISOR = 2.0
    SUBJECT_WORD_DIVISOR = 3.0
    BODY_WORD_PENALTY_CAP = 15.0

    IGNORED_BODY_WORDS = frozenset({
        'email', 'service', 'customer', 'access', 'details', 'information',
        'update', 'support', 'team', 'contact', 'please', 'address', 'view',
        'rights', 'reserved',
    })
    IGNORED_SUBJECT_WORDS = frozenset({'utf'})

    SHOUTING_THRESHOLD = 25.0
    SHOUTING_PENALTY = 15

    # Sub-score ceilings and blend weights
    TECHNICAL_CEILING = 40.0
    BODY_CEILING = 50.0
    SUBJECT_CEILING = 30.0
    CATEGORY_WEIGHTS = {'technical': 0.40, 'body': 0.35, 'subject': 0.25}


# ============================================================================
# MESSAGE PARSING
# ============================================================================

_FOLDING_RE = re.compile(r'\r?\n[ \t]+')
_HEADER_END_RE = re.compile(rb'\r?\n\r?\n')


def _split_body(data: bytes) -> bytes:
    """Bytes after the blank line that ends the header block."""
    if data.startswith(b'\n') or data.startswith(b'\r\n'):
        return data[data.find(b'\n') + 1:]
    match = _HEADER_END_RE.search(data)
    return data[match.end():] if match else b''


def _decode_raw_header(value) -> str:
    # compat32 keeps undecodable header bytes as surrogates
    if not isinstance(value, str):
        return str(value)
    raw = value.encode('ascii', 'surrogateescape')
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError:
        return raw.decode('latin-1')


def parse_raw_message(data: Union[bytes, str]) -> RawMessage:
    """
    Split raw message bytes into a header map and body bytes.

    A leading mbox "From " envelope line is dropped. Header names are
    lowercased and only the first occurrence of a repeated field is kept.
    Raw 8-bit header values are read as UTF-8, or Latin-1 when that fails.
    The body is returned byte for byte.
    """
    if isinstance(data, str):
        data = data.encode('utf-8', 'surrogateescape')

    if data.startswith(b'From '):
        newline = data.find(b'\n')
        data = data[newline + 1:] if newline != -1 else b''

    message = BytesParser(policy=policy.compat32).parsebytes(data, headersonly=True)

    headers = {}
    for name, value in message.raw_items():
        headers.setdefault(name.lower(), _decode_raw_header(value))

    return RawMessage(headers=MappingProxyType(headers), body=_split_body(data))


def decode_header_value(value: str) -> str:
    """Unfold a header and decode RFC 2047 encoded words; fall back to the input."""
    if not value:
        return ""

    value = _FOLDING_RE.sub(' ', value)
    try:
        return str(make_header(decode_header(value)))
    except (HeaderParseError, LookupError, UnicodeError, ValueError):
        return value


def extract_address(value: str) -> str:
    """Address between angle brackets, or the whole trimmed value."""
    start = value.find('<')
    end = value.rfind('>')
    if start != -1 and end > start:
        return value[start + 1:end].strip()
    return value.strip()


def domain_of(address: str) -> str:
    parts = address.split('@')
    if len(parts) == 2:
        return parts[1].strip().lower()
    return ""


# ============================================================================
# MIME BODY EXTRACTION
# ============================================================================

class MimeBodyExtractor:
    """
    Flattens a (possibly nested) MIME body into one displayable string.

    HTML wins over plain text; among parts of the same kind the first one
    found is used. Nesting deeper than `max_depth` is dropped.
    """

    HTML_MARKERS = ('<html', '<div', '<body')
    TEXT_TYPES = ('text/plain', 'text/html')

    def __init__(self, max_depth: int = DEFAULT_MIME_DEPTH):
        self.max_depth = max_depth

    def extract(self, headers: Mapping[str, str], body: bytes) -> str:
        """
        Extract the human-visible body.

        Args:
            headers: Lowercased header map of the message
            body: Undecoded body bytes

        Returns:
            HTML or plain text content, or "" when nothing readable exists
        """
        root = self.build_tree(self._container(headers, body))
        if not root.is_multipart:
            return root.text or ""
        return self.select_body(root)

    def _container(self, headers: Mapping[str, str], body: bytes) -> Message:
        lines = []
        content_type = headers.get('content-type', '')
        encoding = headers.get('content-transfer-encoding', '')
        if content_type:
            lines.append(f"Content-Type: {content_type}")
        if encoding:
            lines.append(f"Content-Transfer-Encoding: {encoding}")

        head = ''.join(line + '\n' for line in lines) + '\n'
        head = head.encode('utf-8', 'surrogateescape')
        return BytesParser(policy=policy.compat32).parsebytes(head + body)

    def build_tree(self, message: Message, depth: int = 0) -> MimePart:
        part = MimePart(
            content_type=message.get_content_type(),
            transfer_encoding=str(message.get('Content-Transfer-Encoding', '')).strip().lower(),
            boundary=message.get_boundary(),
        )

        if part.is_multipart:
            if depth >= self.max_depth:
                logger.warning(f"MIME nesting deeper than {self.max_depth} levels ignored")
                return part
            if message.is_multipart():
                for sub_message in message.get_payload():
                    try:
                        part.children.append(self.build_tree(sub_message, depth + 1))
                    except (ValueError, LookupError, UnicodeError, AttributeError) as e:
                        logger.warning(f"Skipping unreadable MIME part: {e}")
            return part

        if depth == 0 or part.content_type in self.TEXT_TYPES:
            part.text = self._decode_payload(message)
        return part

    def select_body(self, part: MimePart) -> str:
        html_body = ""
        text_body = ""

        for child in part.children:
            if child.is_multipart:
                nested = self.select_body(child)
                if self.looks_like_html(nested):
                    html_body = html_body or nested
                elif not text_body:
                    text_body = nested
            elif child.content_type == 'text/html':
                html_body = html_body or (child.text or "")
            elif child.content_type == 'text/plain':
                text_body = text_body or (child.text or "")

        return html_body or text_body

    @classmethod
    def looks_like_html(cls, text: str) -> bool:
        lower = text.lower()
        return any(marker in lower for marker in cls.HTML_MARKERS)

    @staticmethod
    def _decode_payload(message: Message) -> str:
        payload = message.get_payload(decode=True)
        if not payload:
            return ""

        charset = message.get_content_charset() or 'utf-8'
        try:
            return payload.decode(charset, errors='replace')
        except LookupError:
            return payload.decode('utf-8', errors='replace')


# ============================================================================
# HEADER AUTHENTICITY
# ============================================================================

class HeaderAnalyzer:
    """Interprets Authentication-Results, address fields and the subject line."""

    def __init__(self, indicators: Optional[ScanIndicators] = None):
        self.indicators = indicators or ScanIndicators()
        self.auth_re = {
            mechanism: re.compile(rf'\b{mechanism}\s*=\s*([a-z]+)', re.IGNORECASE)
            for mechanism in self.indicators.AUTH_MECHANISMS
        }

    def analyze(self, message: RawMessage, factors: RiskFactors, breakdown: ScoreBreakdown):
        self._analyze_authentication(message.get('Authentication-Results'), factors, breakdown)
        self._analyze_addresses(message, factors, breakdown)
        self._analyze_subject(decode_header_value(message.get('Subject')), factors, breakdown)

    def _analyze_authentication(self, auth_results: str, factors: RiskFactors,
                                breakdown: ScoreBreakdown):
        if not auth_results.strip():
            breakdown.base_score += self.indicators.MISSING_AUTH_PENALTY
            return

        for mechanism, pattern in self.auth_re.items():
            results = [found.lower() for found in pattern.findall(auth_results)]
            if not results:
                continue

            # one failing signature outweighs any passing ones
            if 'fail' in results or 'softfail' in results:
                result = 'fail'
            elif 'pass' in results:
                result = 'pass'
            else:
                result = results[0]

            if result == 'fail':
                status = 'fail'
                breakdown.auth_fail_penalty += self.indicators.AUTH_FAIL_PENALTIES[mechanism]
            elif result == 'pass':
                status = 'pass'
                breakdown.auth_pass_bonus += self.indicators.AUTH_PASS_BONUSES[mechanism]
            else:
                status = result
            setattr(factors, f"{mechanism}_status", status)

    def _analyze_addresses(self, message: RawMessage, factors: RiskFactors,
                           breakdown: ScoreBreakdown):
        from_domain = domain_of(extract_address(decode_header_value(message.get('From'))))
        return_path_domain = domain_of(extract_address(decode_header_value(message.get('Return-Path'))))
        reply_to_domain = domain_of(extract_address(decode_header_value(message.get('Reply-To'))))
        factors.domain = from_domain

        if from_domain and return_path_domain and from_domain != return_path_domain:
            factors.from_return_path_mismatch = True
            breakdown.mismatch_penalty += self.indicators.RETURN_PATH_MISMATCH_PENALTY

        if from_domain and reply_to_domain and from_domain != reply_to_domain:
            factors.reply_to_mismatch = True
            breakdown.mismatch_penalty += self.indicators.REPLY_TO_MISMATCH_PENALTY

    def _analyze_subject(self, subject: str, factors: RiskFactors, breakdown: ScoreBreakdown):
        lower = subject.lower()
        for keyword in self.indicators.SUBJECT_KEYWORDS:
            if keyword in lower:
                factors.suspicious_keywords.append(keyword)
                breakdown.keyword_penalty += self.indicators.SUBJECT_KEYWORD_PENALTY


# ============================================================================
# DOMAIN REPUTATION
# ============================================================================

class DomainReputationChecker:
    """
    Live DNS checks for a sender domain.

    MX and TXT lookups go through the system resolver; the blacklist check
    asks a public DNS-over-HTTPS resolver first and falls back to the system
    resolver when the public one is blocked or unreachable. Every call is
    bounded by `timeout` and never retried.
    """

    DOH_URL = 'https://dns.google/resolve'
    BLACKLIST_ZONE = 'dbl.spamhaus.org'
    BLOCKED_SENTINEL = '127.255.255.254'

    def __init__(
        self,
        indicators: Optional[ScanIndicators] = None,
        timeout: float = DNS_TIMEOUT,
        resolver: Optional[dns.resolver.Resolver] = None,
        session: Optional[requests.Session] = None
    ):
        self.indicators = indicators or ScanIndicators()
        self.timeout = timeout
        self._resolver = resolver
        self._session = session

    @property
    def resolver(self) -> dns.resolver.Resolver:
        if self._resolver is None:
            resolver = dns.resolver.Resolver()
            resolver.timeout = self.timeout
            resolver.lifetime = self.timeout
            self._resolver = resolver
        return self._resolver

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({'User-Agent': 'phishing-scanner/1.0'})
        return self._session

    def check(self, domain: str) -> DomainReputation:
        domain = domain.strip().lower()
        reputation = DomainReputation(domain=domain)
        if not domain:
            return reputation

        logger.debug(f"Starting active DNS checks for {domain}")
        reputation.registered_domain = self.registered_domain(domain)
        reputation.has_mx_records = self.has_mx(domain)
        reputation.live_spf_record = self.txt_record(domain, 'v=spf1')
        reputation.live_dmarc_record = self.txt_record(f"_dmarc.{domain}", 'v=dmarc1')
        reputation.domain_trust_score = self.classify_trust(domain)
        reputation.is_disposable = self.is_disposable(domain)
        reputation.blacklist_status = self.check_blacklist(domain)

        logger.debug(
            f"Domain '{domain}': mx={reputation.has_mx_records} "
            f"trust={reputation.domain_trust_score} blacklist={reputation.blacklist_status}"
        )
        return reputation

    @staticmethod
    def registered_domain(domain: str) -> str:
        extracted = _TLD_EXTRACT(domain)
        if extracted.domain and extracted.suffix:
            return f"{extracted.domain}.{extracted.suffix}"
        return domain

    def has_mx(self, domain: str) -> bool:
        try:
            answer = self.resolver.resolve(domain, 'MX')
        except dns.exception.DNSException as e:
            logger.debug(f"No MX records found for {domain}: {e}")
            return False
        return len(list(answer)) > 0

    def txt_record(self, name: str, prefix: str) -> str:
        """First TXT record of `name` starting with `prefix` (case-insensitive)."""
        try:
            answer = self.resolver.resolve(name, 'TXT')
        except dns.exception.DNSException as e:
            logger.debug(f"TXT lookup for {name} failed: {e}")
            return ""

        for rdata in answer:
            txt = b''.join(rdata.strings).decode('utf-8', 'replace')
            if txt.lower().startswith(prefix):
                return txt
        return ""

    def classify_trust(self, domain: str) -> str:
        for trusted in self.indicators.TRUSTED_DOMAINS:
            if domain == trusted or domain.endswith('.' + trusted):
                return "Trustworthy"
        return "Neutral"

    def is_disposable(self, domain: str) -> bool:
        registered = self.registered_domain(domain)
        return domain in self.indicators.DISPOSABLE_DOMAINS or registered in self.indicators.DISPOSABLE_DOMAINS

    def check_blacklist(self, domain: str) -> str:
        name = f"{domain}.{self.BLACKLIST_ZONE}"
        status = self._query_doh(name)
        if status is not None:
            return status
        return self._query_system(name)

    def _query_doh(self, name: str) -> Optional[str]:
        """Blacklist status from DNS-over-HTTPS, or None to fall back."""
        try:
            response = self.session.get(
                self.DOH_URL, params={'name': name, 'type': 'A'}, timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.debug(f"DoH API error for {name}: {e}")
            return None

        if response.status_code != 200:
            logger.debug(f"DoH API status {response.status_code} for {name}")
            return None

        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None

        if data.get('Status') == 3:
            return "Clean"
        if data.get('Status') != 0:
            return None

        addresses = [
            answer.get('data') for answer in data.get('Answer') or []
            if isinstance(answer, dict) and answer.get('type', 1) == 1
        ]
        if not addresses:
            return "Clean"
        if addresses[0] == self.BLOCKED_SENTINEL:
            logger.debug("Public resolver blocked by blacklist operator, falling back to system DNS")
            return None
        return "Listed"

    def _query_system(self, name: str) -> str:
        try:
            answer = self.resolver.resolve(name, 'A')
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return "Clean"
        except dns.exception.DNSException as e:
            logger.warning(f"Blacklist lookup for {name} failed: {e}")
            return "Error"

        addresses = [rdata.address for rdata in answer]
        if not addresses:
            return "Clean"
        if addresses[0] == self.BLOCKED_SENTINEL:
            return "Error (Blocked)"
        return "Listed"


# ============================================================================
# LINGUISTIC TRIGGERS
# ============================================================================

class LinguisticTriggerMatcher:
    """Matches message tokens against the scam-class word tables."""

    def __init__(self, stats: LinguisticStatsTable, indicators: Optional[ScanIndicators] = None):
        self.stats = stats
        self.indicators = indicators or ScanIndicators()

    def match(
        self,
        body_tokens: FrozenSet[str],
        subject_tokens: FrozenSet[str],
        clean_body: str,
        factors: RiskFactors,
        breakdown: ScoreBreakdown
    ):
        ind = self.indicators
        scam = self.stats.scam_stats

        for entry in scam.top_body_words:
            if entry.percent <= ind.BODY_WORD_THRESHOLD or entry.word not in body_tokens:
                continue
            if entry.word in ind.IGNORED_BODY_WORDS:
                continue
            factors.linguistic_triggers.append(LinguisticTrigger(
                text=f"Contains '{entry.word}'",
                explanation=f"Appears in {entry.percent:.0f}% of known phishing emails.",
                source="body",
            ))
            breakdown.linguistic_penalty += min(entry.percent / ind.BODY_WORD_DIVISOR, ind.BODY_WORD_PENALTY_CAP)

        for entry in scam.top_subject_words:
            if entry.percent <= ind.SUBJECT_WORD_THRESHOLD or entry.word not in subject_tokens:
                continue
            if entry.word in ind.IGNORED_SUBJECT_WORDS:
                continue
            factors.linguistic_triggers.append(LinguisticTrigger(
                text=f"Subject: '{entry.word}'",
                explanation=f"Appears in {entry.percent:.0f}% of phishing subject lines.",
                source="subject",
            ))
            breakdown.subject_linguistic_penalty += entry.percent / ind.SUBJECT_WORD_DIVISOR

        factors.shouting_score = shouting_ratio(clean_body) * 100
        if factors.shouting_score > ind.SHOUTING_THRESHOLD:
            breakdown.linguistic_penalty += ind.SHOUTING_PENALTY
            factors.linguistic_triggers.append(LinguisticTrigger(
                text="Excessive capitalization (shouting)",
                explanation=(
                    f"{factors.shouting_score:.0f}% uppercase letters is typical of "
                    "aggressive scam attempts."
                ),
                source="body",
            ))


# ============================================================================
# SCORING
# ============================================================================

def _scale(raw: float, ceiling: float) -> float:
    return max(0.0, min(raw, ceiling)) / ceiling * 100


class ScoreAggregator:
    """Turns point totals into the three sub-scores and the final probability."""

    def __init__(self, indicators: Optional[ScanIndicators] = None):
        self.indicators = indicators or ScanIndicators()

    def score(self, breakdown: ScoreBreakdown) -> ScoreCard:
        ind = self.indicators

        technical_raw = (
            breakdown.base_score
            - breakdown.auth_pass_bonus
            + breakdown.auth_fail_penalty
            + breakdown.mismatch_penalty
            + breakdown.no_mx_penalty
            + breakdown.disposable_penalty
        )
        technical = _scale(technical_raw, ind.TECHNICAL_CEILING)
        body = _scale(breakdown.linguistic_penalty, ind.BODY_CEILING)
        subject = _scale(
            breakdown.keyword_penalty + breakdown.subject_linguistic_penalty,
            ind.SUBJECT_CEILING
        )

        weights = ind.CATEGORY_WEIGHTS
        total = min(
            100.0,
            technical * weights['technical'] + body * weights['body'] + subject * weights['subject']
        )
        breakdown.total_score = total

        return ScoreCard(technical=technical, body=body, subject=subject, total=total)


# ============================================================================
# UPLOAD STORE
# ============================================================================

class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class EmailStore:
    """
    In-memory cache of uploaded raw messages.

    A background timer wipes the whole store every `eviction_interval`
    seconds; entries have no individual expiry.
    """

    def __init__(self, eviction_interval: float = DEFAULT_EVICTION_INTERVAL):
        self.eviction_interval = eviction_interval
        self._messages: Dict[str, bytes] = {}
        self._lock = ReadWriteLock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def put(self, name: str, content: bytes):
        with self._lock.write():
            self._messages[name] = content

    def get(self, name: str) -> Optional[bytes]:
        with self._lock.read():
            return self._messages.get(name)

    def names(self) -> List[str]:
        with self._lock.read():
            return sorted(self._messages)

    def clear(self):
        with self._lock.write():
            self._messages = {}

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._messages)

    def start_eviction(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._evict_loop, name='email-store-eviction', daemon=True)
        self._thread.start()

    def stop_eviction(self):
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def _evict_loop(self):
        while not self._stopped.wait(self.eviction_interval):
            self.clear()
            logger.info("Upload store cleared")


# ============================================================================
# CORE ANALYSIS ENGINE
# ============================================================================

class PhishingScanner:
    """
    Scores raw messages for phishing risk.

    The linguistic statistics table is loaded once and shared read-only by
    every call. Each analysis runs the domain reputation check on a worker
    thread while the body is extracted and matched.
    """

    def __init__(
        self,
        stats: Optional[LinguisticStatsTable] = None,
        stats_path: str = DEFAULT_STATS_PATH,
        test_emails_dir: str = DEFAULT_TEST_EMAILS_DIR,
        indicators: Optional[ScanIndicators] = None,
        reputation_checker: Optional[DomainReputationChecker] = None,
        store: Optional[EmailStore] = None,
        max_mime_depth: int = DEFAULT_MIME_DEPTH,
        eviction_interval: float = DEFAULT_EVICTION_INTERVAL
    ):
        """
        Initialize the scanner.

        Args:
            stats: Preloaded statistics table; loaded from stats_path if None
            stats_path: Location of linguistic_stats.json
            test_emails_dir: Directory of .eml fixtures addressable by name
            indicators: Penalty and list configuration
            reputation_checker: DNS reputation collaborator
            store: Upload store for "memory:" references
            max_mime_depth: Deepest multipart nesting that is still read
            eviction_interval: Seconds between wipes of an owned upload store
        """
        self.indicators = indicators or ScanIndicators()
        self.stats = stats if stats is not None else LinguisticStatsTable.load(resolve_data_path(stats_path))
        self.test_emails_dir = Path(resolve_data_path(test_emails_dir))
        # a store passed in is managed by its owner
        self.owns_store = store is None
        self.store = store if store is not None else EmailStore(eviction_interval)
        if self.owns_store:
            self.store.start_eviction()

        self.normalizer = TextNormalizer(unicode_letters=True)
        self.extractor = MimeBodyExtractor(max_depth=max_mime_depth)
        self.header_analyzer = HeaderAnalyzer(self.indicators)
        self.reputation = reputation_checker or DomainReputationChecker(self.indicators)
        self.matcher = LinguisticTriggerMatcher(self.stats, self.indicators)
        self.aggregator = ScoreAggregator(self.indicators)

    # -- request boundary ---------------------------------------------------

    def analyze_bytes(self, content: Union[bytes, str], filename: str = "") -> AnalysisResult:
        return self.analyze_message(parse_raw_message(content), filename)

    def analyze_file(self, path: str) -> AnalysisResult:
        file_path = Path(path)
        if not file_path.is_file():
            raise MessageNotFoundError(f"Email file not found: {path}")
        return self.analyze_bytes(file_path.read_bytes(), file_path.name)

    def analyze_reference(self, reference: str) -> AnalysisResult:
        """
        Analyze an upload ("memory:<name>") or a test email by file name.

        Raises:
            MessageNotFoundError: unknown name or expired upload
        """
        if reference.startswith(MEMORY_PREFIX):
            name = reference[len(MEMORY_PREFIX):]
            content = self.store.get(name)
            if content is None:
                raise MessageNotFoundError(f"File not found in memory (expired?): {name}")
            return self.analyze_bytes(content, name)

        if not reference or Path(reference).name != reference:
            raise MessageNotFoundError(f"Invalid test email name: {reference!r}")
        path = self.test_emails_dir / reference
        if not path.is_file():
            raise MessageNotFoundError(f"Test email not found: {reference}")
        return self.analyze_bytes(path.read_bytes(), reference)

    def store_upload(self, filename: str, content: bytes) -> str:
        self.store.put(filename, content)
        return MEMORY_PREFIX + filename

    def list_uploads(self) -> List[str]:
        return self.store.names()

    def list_test_emails(self) -> List[str]:
        if not self.test_emails_dir.is_dir():
            return []
        return sorted(p.name for p in self.test_emails_dir.glob('*.eml') if p.is_file())

    def close(self):
        """Stop the eviction timer of an owned upload store."""
        if self.owns_store:
            self.store.stop_eviction()

    # -- analysis -------------------------------------------------------------

    def analyze_message(self, message: RawMessage, filename: str = "") -> AnalysisResult:
        factors = RiskFactors()
        breakdown = ScoreBreakdown()

        self.header_analyzer.analyze(message, factors, breakdown)

        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(self.reputation.check, factors.domain) if factors.domain else None

            subject = decode_header_value(message.get('Subject'))
            body = self.extractor.extract(message.headers, message.body)
            clean_body = strip_html(body)
            detected_lang = detect_language(clean_body)

            body_tokens = self.normalizer.normalize(clean_body, BODY_MIN_TOKEN_LENGTH, html_input=False)
            subject_tokens = self.normalizer.normalize(subject, SUBJECT_MIN_TOKEN_LENGTH, html_input=False)
            self.matcher.match(body_tokens.unique, subject_tokens.unique, clean_body, factors, breakdown)

            reputation = pending.result() if pending is not None else None

        self._apply_reputation(reputation, factors, breakdown)
        card = self.aggregator.score(breakdown)

        return AnalysisResult(
            file_name=filename,
            scam_probability=card.total,
            safe_probability=100 - card.total,
            tech_score=card.technical,
            body_score=card.body,
            subject_score=card.subject,
            email_body=clean_body,
            detected_lang=detected_lang,
            headers={
                'From': decode_header_value(message.get('From')),
                'To': decode_header_value(message.get('To')),
                'Subject': subject,
                'Date': message.get('Date'),
            },
            risk_factors=factors,
            score_breakdown=breakdown,
            body_triggers=[t for t in factors.linguistic_triggers if t.source != 'subject'],
            subject_triggers=[t for t in factors.linguistic_triggers if t.source == 'subject'],
        )

    def _apply_reputation(self, reputation: Optional[DomainReputation],
                          factors: RiskFactors, breakdown: ScoreBreakdown):
        if reputation is None:
            factors.domain_trust_score = "Unknown"
            factors.blacklist_status = "Unknown"
            return

        factors.registered_domain = reputation.registered_domain
        factors.has_mx_records = reputation.has_mx_records
        factors.live_spf_record = reputation.live_spf_record
        factors.live_dmarc_record = reputation.live_dmarc_record
        factors.domain_trust_score = reputation.domain_trust_score
        factors.blacklist_status = reputation.blacklist_status
        factors.is_disposable = reputation.is_disposable

        if not reputation.has_mx_records:
            breakdown.no_mx_penalty += self.indicators.NO_MX_PENALTY
        if reputation.is_disposable:
            breakdown.disposable_penalty += self.indicators.DISPOSABLE_PENALTY


# ============================================================================
# REPORT GENERATION
# ============================================================================

class ReportGenerator:
    """Generate formatted analysis reports."""

    @staticmethod
    def generate_text_report(result: AnalysisResult) -> str:
        """Generate a plain text report."""
        factors = result.risk_factors
        lines = []
        lines.append("=" * 70)
        lines.append("PHISHING SCAN REPORT")
        lines.append("=" * 70)
        lines.append(f"File: {result.file_name}")
        lines.append("")

        verdict = "LIKELY PHISHING" if result.is_likely_phishing else "LIKELY LEGITIMATE"
        lines.append(f"VERDICT: {verdict}")
        lines.append(f"Scam Probability: {result.scam_probability:.1f}%")
        lines.append(f"Safe Probability: {result.safe_probability:.1f}%")
        lines.append(f"  Technical: {result.tech_score:.1f}%  Body: {result.body_score:.1f}%  "
                     f"Subject: {result.subject_score:.1f}%")
        lines.append(f"Language: {result.detected_lang}")
        lines.append("")

        lines.append("-" * 70)
        lines.append("HEADERS")
        lines.append("-" * 70)
        for name, value in result.headers.items():
            lines.append(f"{name}: {value}")
        lines.append(f"SPF: {factors.spf_status}  DKIM: {factors.dkim_status}  DMARC: {factors.dmarc_status}")
        lines.append(f"Return-Path Mismatch: {'Yes' if factors.from_return_path_mismatch else 'No'}")
        lines.append(f"Reply-To Mismatch: {'Yes' if factors.reply_to_mismatch else 'No'}")
        if factors.suspicious_keywords:
            lines.append(f"Suspicious Keywords: {', '.join(factors.suspicious_keywords)}")
        lines.append("")

        lines.append("-" * 70)
        lines.append("DOMAIN")
        lines.append("-" * 70)
        lines.append(f"Domain: {factors.domain or '-'}")
        lines.append(f"MX Records: {'Yes' if factors.has_mx_records else 'No'}")
        lines.append(f"Live SPF: {factors.live_spf_record or '-'}")
        lines.append(f"Live DMARC: {factors.live_dmarc_record or '-'}")
        lines.append(f"Trust: {factors.domain_trust_score}")
        lines.append(f"Blacklist: {factors.blacklist_status}")
        lines.append(f"Disposable: {'Yes' if factors.is_disposable else 'No'}")
        lines.append("")

        if factors.linguistic_triggers:
            lines.append("-" * 70)
            lines.append("LINGUISTIC TRIGGERS")
            lines.append("-" * 70)
            for trigger in factors.linguistic_triggers:
                lines.append(f"- {trigger.text}: {trigger.explanation}")
            lines.append("")

        lines.append("=" * 70)
        lines.append("END OF REPORT")
        lines.append("=" * 70)

        return "\n".join(lines)

    @staticmethod
    def generate_json_report(result: AnalysisResult) -> str:
        """Generate a JSON report for programmatic consumption."""
        factors = result.risk_factors
        breakdown = result.score_breakdown

        def triggers(items: List[LinguisticTrigger]) -> List[Dict[str, str]]:
            return [{'text': t.text, 'explanation': t.explanation} for t in items]

        report = {
            'file_name': result.file_name,
            'scam_probability_percent': result.scam_probability,
            'safe_probability_percent': result.safe_probability,
            'tech_score': result.tech_score,
            'body_score': result.body_score,
            'subject_score': result.subject_score,
            'detected_lang': result.detected_lang,
            'headers': result.headers,
            'risk_factors': {
                'header_spf_status': factors.spf_status,
                'header_dkim_status': factors.dkim_status,
                'header_dmarc_status': factors.dmarc_status,
                'from_return_path_mismatch': factors.from_return_path_mismatch,
                'reply_to_mismatch': factors.reply_to_mismatch,
                'suspicious_keywords': factors.suspicious_keywords,
                'domain': factors.domain,
                'registered_domain': factors.registered_domain,
                'network_has_mx_records': factors.has_mx_records,
                'network_live_spf_record': factors.live_spf_record,
                'network_live_dmarc_record': factors.live_dmarc_record,
                'domain_trust_score': factors.domain_trust_score,
                'blacklist_status': factors.blacklist_status,
                'api_is_disposable': factors.is_disposable,
                'linguistic_triggers': triggers(factors.linguistic_triggers),
                'shouting_score': factors.shouting_score,
            },
            'calculation_details': {
                'base_score': breakdown.base_score,
                'auth_fail_penalty': breakdown.auth_fail_penalty,
                'auth_pass_bonus': breakdown.auth_pass_bonus,
                'mismatch_penalty': breakdown.mismatch_penalty,
                'keyword_penalty': breakdown.keyword_penalty,
                'no_mx_penalty': breakdown.no_mx_penalty,
                'disposable_penalty': breakdown.disposable_penalty,
                'linguistic_penalty': breakdown.linguistic_penalty,
                'subject_linguistic_penalty': breakdown.subject_linguistic_penalty,
                'total_score': breakdown.total_score,
            },
            'body_triggers': triggers(result.body_triggers),
            'subject_triggers': triggers(result.subject_triggers),
        }

        return json.dumps(report, indent=2)


# ============================================================================
# CLI INTERFACE
# ============================================================================

def main():
    """Main CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description='Phishing Scanner - Score emails for phishing risk',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  python phishing_scanner.py email.eml
  python phishing_scanner.py email.eml --json
  python phishing_scanner.py --text "From: attacker@evil.com..."
  python phishing_scanner.py data/test_emails/ --batch
        '''
    )

    parser.add_argument('input', nargs='?', help='Path to .eml file or directory for batch processing')
    parser.add_argument('--text', '-t', type=str, help='Raw email text to analyze')
    parser.add_argument('--json', '-j', action='store_true', help='Output results in JSON format')
    parser.add_argument('--batch', '-b', action='store_true', help='Process all .eml files in a directory')
    parser.add_argument('--stats', '-s', type=str, default=DEFAULT_STATS_PATH,
                        help='Path to linguistic_stats.json')
    parser.add_argument('--timeout', type=float, default=DNS_TIMEOUT,
                        help='Timeout in seconds for each DNS / HTTP lookup')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose output')

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    scanner = PhishingScanner(
        stats_path=args.stats,
        reputation_checker=DomainReputationChecker(timeout=args.timeout),
    )
    reporter = ReportGenerator()

    def emit(result: AnalysisResult):
        if args.json:
            print(reporter.generate_json_report(result))
        else:
            print(reporter.generate_text_report(result))

    if args.text:
        emit(scanner.analyze_bytes(args.text, '<text>'))

    elif args.input:
        path = Path(args.input)

        if args.batch and path.is_dir():
            eml_files = sorted(path.glob('*.eml'))
            if not eml_files:
                print(f"No .eml files found in {path}")
                return

            print(f"Processing {len(eml_files)} email files...\n")
            flagged = 0
            for eml_file in eml_files:
                result = scanner.analyze_file(str(eml_file))
                status = "PHISHING" if result.is_likely_phishing else "LEGITIMATE"
                flagged += result.is_likely_phishing
                print(f"  {eml_file.name}: {status} ({result.scam_probability:.1f}%)")

            print(f"\nPhishing detected: {flagged}/{len(eml_files)}")

        elif path.is_file():
            emit(scanner.analyze_file(str(path)))

        else:
            print(f"Error: {path} is not a valid file or directory")

    else:
        parser.print_help()


if __name__ == '__main__':
    main()
