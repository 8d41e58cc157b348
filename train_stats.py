#!/usr/bin/env python3
"""
Linguistic Statistics Trainer
=============================
Builds the word-frequency tables used by the phishing scanner from a labeled
email corpus.

This script can:
1. Stream a CSV corpus (Nazario-style columns, header sniffing) or a JSON /
   JSON Lines corpus of {"text", "label"} objects
2. Filter tokens against an English reference dictionary (downloaded once)
3. Aggregate per-class document frequencies and averages
4. Write data/linguistic_stats.json for the scanner
"""

import os
import csv
import sys
import json
import logging
from pathlib import Path
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterator, List, Dict, Optional, Tuple, Any

import numpy as np
import requests

from text_analysis import (
    TextNormalizer,
    LinguisticStats,
    LinguisticStatsTable,
    WordFreq,
    analyze_document,
    load_dictionary,
    strip_html,
    BODY_MIN_TOKEN_LENGTH,
    SUBJECT_MIN_TOKEN_LENGTH,
)

logger = logging.getLogger(__name__)

DICTIONARY_URL = 'https://raw.githubusercontent.com/dwyl/english-words/master/words_alpha.txt'
DEFAULT_DICTIONARY_PATH = 'data/words_alpha.txt'
DEFAULT_DATASET_PATH = 'data/Nazario.csv'
DEFAULT_OUTPUT_PATH = 'data/linguistic_stats.json'
DOWNLOAD_TIMEOUT = 30

MIN_DOCUMENT_FREQUENCY = 2
TOP_WORDS_LIMIT = 100

SCAM_LABELS = frozenset({'1', 'phish', 'phishing', 'spam', 'scam'})

# Nazario column positions used when the header cannot be sniffed
FALLBACK_SUBJECT_COLUMN = 3
FALLBACK_BODY_COLUMN = 4

# Per-document metrics accumulated for the class summaries
METRIC_FIELDS = (
    'word_count', 'avg_sentence_length', 'shouting_ratio',
    'lexical_richness', 'sentiment', 'readability', 'trigger_density',
)


# ============================================================================
# CORPUS SOURCES
# ============================================================================

@dataclass
class CorpusRow:
    """One labeled email from a corpus."""
    subject: str
    body: str
    is_scam: bool


def is_scam_label(label: Any) -> bool:
    return str(label).strip().lower() in SCAM_LABELS


class CorpusSource:
    """Base class for corpus readers; subclasses yield CorpusRow objects."""

    kind = 'abstract'

    def __init__(self, path: str):
        self.path = path
        self.skipped = 0

    def iter_rows(self) -> Iterator[CorpusRow]:
        raise NotImplementedError


class DelimitedSource(CorpusSource):
    """CSV corpus with header-name sniffing and positional fallbacks."""

    kind = 'delimited'

    def __init__(self, path: str):
        super().__init__(path)
        self.subject_index = -1
        self.body_index = -1
        self.label_index = -1

    def detect_columns(self, header: List[str]) -> Tuple[int, int, int]:
        """
        Locate the subject, body and label columns.

        Returns:
            (subject_index, body_index, label_index); subject is -1 when absent
        """
        subject_idx = body_idx = label_idx = -1

        for i, name in enumerate(header):
            clean = name.strip().lower()
            if clean in ('label', 'class'):
                label_idx = i
            elif clean in ('body', 'text'):
                body_idx = i
            elif clean == 'subject':
                subject_idx = i

        if label_idx == -1:
            label_idx = len(header) - 1
        if body_idx == -1 and len(header) > FALLBACK_BODY_COLUMN:
            body_idx = FALLBACK_BODY_COLUMN
        if subject_idx == -1 and len(header) > FALLBACK_SUBJECT_COLUMN:
            subject_idx = FALLBACK_SUBJECT_COLUMN

        return subject_idx, body_idx, label_idx

    def iter_rows(self) -> Iterator[CorpusRow]:
        _raise_csv_field_limit()

        with open(self.path, 'r', encoding='utf-8', errors='replace', newline='') as f:
            reader = csv.reader(f)
            try:
                header = next(reader)
            except (StopIteration, csv.Error) as e:
                logger.error(f"Unable to read CSV header from {self.path}: {e}")
                return

            self.subject_index, self.body_index, self.label_index = self.detect_columns(header)
            logger.info(
                f"Columns - Subject: {self.subject_index}, "
                f"Body: {self.body_index}, Label: {self.label_index}"
            )
            if self.body_index == -1:
                logger.error(f"No body column found in {self.path}")
                return

            while True:
                try:
                    record = next(reader)
                except StopIteration:
                    break
                except csv.Error as e:
                    logger.debug(f"Skipping unreadable CSV row: {e}")
                    self.skipped += 1
                    continue

                if len(record) <= max(self.label_index, self.body_index):
                    self.skipped += 1
                    continue

                subject = ''
                if 0 <= self.subject_index < len(record):
                    subject = record[self.subject_index]

                yield CorpusRow(
                    subject=subject,
                    body=record[self.body_index],
                    is_scam=is_scam_label(record[self.label_index]),
                )


class StructuredSource(CorpusSource):
    """
    JSON corpus: either JSON Lines or a single array of objects.

    Each object carries "text" (the body), "label" (0 = safe, 1 = scam) and
    optionally "subject".
    """

    kind = 'structured'

    def iter_rows(self) -> Iterator[CorpusRow]:
        with open(self.path, 'r', encoding='utf-8', errors='replace') as f:
            first = f.read(1)
            while first and first.isspace():
                first = f.read(1)
            f.seek(0)

            if first == '[':
                entries = self._load_array(f)
            else:
                entries = self._iter_lines(f)

            for entry in entries:
                row = self._to_row(entry)
                if row is None:
                    self.skipped += 1
                    continue
                yield row

    def _load_array(self, f) -> List[Any]:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Unable to decode JSON array in {self.path}: {e}")
            return []
        return data if isinstance(data, list) else []

    def _iter_lines(self, f) -> Iterator[Any]:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.debug(f"Skipping line {line_number}: {e}")
                yield None

    @staticmethod
    def _to_row(entry: Any) -> Optional[CorpusRow]:
        if not isinstance(entry, dict):
            return None
        body = entry.get('text', entry.get('body'))
        if not isinstance(body, str):
            return None
        subject = entry.get('subject') or ''
        return CorpusRow(
            subject=subject if isinstance(subject, str) else str(subject),
            body=body,
            is_scam=is_scam_label(entry.get('label', 0)),
        )


def open_source(path: str) -> CorpusSource:
    """Choose the ingestion strategy from the file extension."""
    suffix = Path(path).suffix.lower()
    if suffix in ('.json', '.jsonl', '.ndjson'):
        return StructuredSource(path)
    return DelimitedSource(path)


def _raise_csv_field_limit():
    # Email bodies routinely exceed the csv module's 128 KiB default
    limit = sys.maxsize
    while True:
        try:
            csv.field_size_limit(limit)
            return
        except OverflowError:
            limit //= 10


# ============================================================================
# AGGREGATION
# ============================================================================

@dataclass
class ClassAccumulator:
    """Running totals for one class."""
    total_emails: int = 0
    metric_sums: np.ndarray = field(default_factory=lambda: np.zeros(len(METRIC_FIELDS)))
    body_frequencies: Counter = field(default_factory=Counter)
    subject_frequencies: Counter = field(default_factory=Counter)

    def averages(self) -> Dict[str, float]:
        if self.total_emails == 0:
            return {name: 0.0 for name in METRIC_FIELDS}
        means = self.metric_sums / self.total_emails
        return {name: float(value) for name, value in zip(METRIC_FIELDS, means)}


def top_words(
    frequencies: Counter,
    total_emails: int,
    min_frequency: int = MIN_DOCUMENT_FREQUENCY,
    limit: int = TOP_WORDS_LIMIT
) -> Tuple[WordFreq, ...]:
    """
    Rank words by the share of a class's emails that contain them.

    Only words seen in more than `min_frequency` documents are kept.
    """
    if total_emails == 0:
        return ()

    entries = [
        WordFreq(word=word, count=count, percent=count / total_emails * 100)
        for word, count in frequencies.items()
        if count > min_frequency
    ]
    entries.sort(key=lambda e: (-e.percent, e.word))
    return tuple(entries[:limit])


class CorpusAggregator:
    """
    Accumulates per-class document frequencies and metric averages.

    The reference dictionary only filters bodies. Subjects are tokenized
    with the same stop words and letter class but no dictionary, so brand
    names outside the dictionary survive.
    """

    def __init__(self, normalizer: Optional[TextNormalizer] = None):
        self.normalizer = normalizer or TextNormalizer(unicode_letters=False)
        self.subject_normalizer = TextNormalizer(
            stop_words=self.normalizer.stop_words,
            artifact_words=self.normalizer.artifact_words,
            unicode_letters=self.normalizer.unicode_letters,
        )
        self.safe = ClassAccumulator()
        self.scam = ClassAccumulator()

    @property
    def total_rows(self) -> int:
        return self.safe.total_emails + self.scam.total_emails

    def add(self, row: CorpusRow):
        clean_body = strip_html(row.body)
        body_tokens = self.normalizer.normalize(clean_body, BODY_MIN_TOKEN_LENGTH, html_input=False)
        subject_tokens = self.subject_normalizer.normalize(row.subject, SUBJECT_MIN_TOKEN_LENGTH, html_input=False)
        document = analyze_document(
            row.subject, clean_body, self.normalizer, tokens=body_tokens, html_input=False
        )

        bucket = self.scam if row.is_scam else self.safe
        bucket.total_emails += 1
        bucket.metric_sums += np.array([getattr(document, name) for name in METRIC_FIELDS], dtype=float)
        bucket.body_frequencies.update(body_tokens.unique)
        bucket.subject_frequencies.update(subject_tokens.unique)

    def consume(self, source: CorpusSource, progress_every: int = 1000) -> int:
        """Feed every row of a source; returns the number of rows added."""
        added = 0
        for row in source.iter_rows():
            self.add(row)
            added += 1
            if progress_every and added % progress_every == 0:
                logger.info(f"Processed {added} emails...")
        return added

    def _class_stats(self, bucket: ClassAccumulator) -> LinguisticStats:
        averages = bucket.averages()
        return LinguisticStats(
            total_emails=bucket.total_emails,
            avg_word_count=averages['word_count'],
            avg_sentence_length=averages['avg_sentence_length'],
            avg_shouting_score=averages['shouting_ratio'],
            top_body_words=top_words(bucket.body_frequencies, bucket.total_emails),
            top_subject_words=top_words(bucket.subject_frequencies, bucket.total_emails),
        )

    def build_table(self) -> LinguisticStatsTable:
        return LinguisticStatsTable(
            safe_stats=self._class_stats(self.safe),
            scam_stats=self._class_stats(self.scam),
        )

    def summary(self) -> Dict[str, Dict[str, float]]:
        """Per-class metric averages, including those not persisted."""
        return {
            'safe': dict(self.safe.averages(), total_emails=self.safe.total_emails),
            'scam': dict(self.scam.averages(), total_emails=self.scam.total_emails),
        }


# ============================================================================
# DICTIONARY
# ============================================================================

def ensure_dictionary(path: str = DEFAULT_DICTIONARY_PATH, url: str = DICTIONARY_URL) -> frozenset:
    """
    Load the reference dictionary, downloading it once if it is missing.

    Any failure leaves dictionary filtering disabled.
    """
    if not os.path.exists(path):
        logger.info(f"Dictionary not found. Downloading from {url} ...")
        try:
            response = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Error downloading dictionary: {e}. Filtering disabled.")
            return frozenset()

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb') as f:
            f.write(response.content)
        logger.info("Dictionary downloaded successfully.")

    return load_dictionary(path)


def build_statistics(
    dataset_path: str,
    output_path: Optional[str] = DEFAULT_OUTPUT_PATH,
    dictionary: Optional[frozenset] = None
) -> Tuple[LinguisticStatsTable, CorpusAggregator, CorpusSource]:
    """
    Run the full training pass over one dataset.

    Args:
        dataset_path: CSV, JSON or JSON Lines corpus
        output_path: Where to write the artifact; None skips writing
        dictionary: Reference words for token filtering (None disables it)

    Returns:
        Tuple of (table, aggregator, source) for reporting
    """
    source = open_source(dataset_path)
    logger.info(f"Analyzing {source.kind} file: {dataset_path}")

    aggregator = CorpusAggregator(TextNormalizer(dictionary=dictionary, unicode_letters=False))
    aggregator.consume(source)

    table = aggregator.build_table()
    if output_path:
        table.save(output_path)

    return table, aggregator, source


def print_summary(aggregator: CorpusAggregator, source: CorpusSource, table: LinguisticStatsTable):
    print("\n" + "=" * 50)
    print("TRAINING SUMMARY")
    print("=" * 50)
    print(f"Total Emails: {aggregator.total_rows} "
          f"(Safe: {aggregator.safe.total_emails}, Scam: {aggregator.scam.total_emails})")
    print(f"Skipped rows: {source.skipped}")

    for label, stats in aggregator.summary().items():
        print(f"\n{label.upper()} averages:")
        print(f"  Words per email:    {stats['word_count']:.1f}")
        print(f"  Sentence length:    {stats['avg_sentence_length']:.1f}")
        print(f"  Shouting ratio:     {stats['shouting_ratio']:.2%}")
        print(f"  Lexical richness:   {stats['lexical_richness']:.2f}")
        print(f"  Sentiment:          {stats['sentiment']:.3f}")
        print(f"  Readability (ARI):  {stats['readability']:.1f}")
        print(f"  Trigger density:    {stats['trigger_density']:.2f}")

    top = table.scam_stats.top_body_words[:10]
    if top:
        print("\nTop scam body words:")
        for entry in top:
            print(f"  {entry.word:<20} {entry.percent:5.1f}% ({entry.count})")


def main():
    """Main training workflow."""
    import argparse

    parser = argparse.ArgumentParser(description='Build linguistic statistics for the phishing scanner')
    parser.add_argument('--file', '-f', type=str, default='',
                        help='Path to the input corpus (.csv, .json or .jsonl)')
    parser.add_argument('--output', '-o', type=str, default=DEFAULT_OUTPUT_PATH,
                        help='Output path for the statistics artifact')
    parser.add_argument('--dictionary', '-d', type=str, default=DEFAULT_DICTIONARY_PATH,
                        help='Reference dictionary (downloaded if missing)')
    parser.add_argument('--no-dictionary', action='store_true',
                        help='Disable dictionary filtering')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose output')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    dataset = args.file
    if not dataset:
        if os.path.exists(DEFAULT_DATASET_PATH):
            dataset = DEFAULT_DATASET_PATH
            print(f"No file specified, defaulting to {DEFAULT_DATASET_PATH}")
        else:
            parser.error('Please provide a file path using --file')

    if not os.path.exists(dataset):
        parser.error(f'{dataset} does not exist')

    dictionary = None if args.no_dictionary else ensure_dictionary(args.dictionary)

    print("=" * 50)
    print("PHISHING SCANNER - LINGUISTIC STATISTICS")
    print("=" * 50)

    table, aggregator, source = build_statistics(dataset, args.output, dictionary)
    print_summary(aggregator, source, table)

    print(f"\nDone! Linguistic analysis written to {args.output}")


if __name__ == '__main__':
    main()
