"""
Span sources polled by the ingestion worker.

A source answers one question: which finished spans ended inside
``(start, end]`` (epoch seconds)? The worker asks for consecutive,
non-overlapping ranges, so every span is delivered once.

Supports:
- Jaeger JSON export (``{"data": [trace, ...]}`` or a bare array of traces)
- NDJSON, one trace or one span object per line
- An in-memory list of spans (tests, replay)

Bad rows are logged and skipped; an unreadable file is fatal for that poll.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Union

from tracescore.core.exceptions import SpanIngestionError
from tracescore.data.parsers import parse_jaeger_span, parse_jaeger_trace
from tracescore.data.schema import Span

logger = logging.getLogger(__name__)


def _in_range(span: Span, start: float, end: float) -> bool:
    return start < span.end_timestamp <= end


class SpanSource(ABC):
    """
    Abstract base class for span sources.
    """

    @abstractmethod
    def fetch(self, start: float, end: float) -> List[Span]:
        """
        Return finished spans whose end time lies in ``(start, end]``.

        Spans are ordered by end time.
        """


class StaticSpanSource(SpanSource):
    """Serves a fixed list of spans."""

    def __init__(self, spans: Iterable[Span] = ()):
        self.spans = sorted(spans, key=lambda s: s.end_timestamp)

    def fetch(self, start: float, end: float) -> List[Span]:
        return [s for s in self.spans if _in_range(s, start, end)]


class JSONSpanSource(SpanSource):
    """
    Reads spans from a Jaeger JSON or NDJSON export on disk.

    The file is re-read on every fetch so an exporter may keep appending
    to it.
    """

    def __init__(self, filepath: Union[str, Path], encoding: str = "utf-8"):
        self.filepath = Path(filepath)
        self.encoding = encoding

        if not self.filepath.exists():
            raise SpanIngestionError(f"Trace file not found: {self.filepath}")

    def fetch(self, start: float, end: float) -> List[Span]:
        spans = [s for s in self.read() if _in_range(s, start, end)]
        spans.sort(key=lambda s: s.end_timestamp)
        logger.debug(f"Fetched {len(spans)} spans from {self.filepath} in ({start}, {end}]")
        return spans

    def read(self) -> Iterator[Span]:
        try:
            content = self.filepath.read_text(encoding=self.encoding).lstrip("\ufeff").strip()
        except OSError as e:
            logger.error(f"Error reading trace file {self.filepath}: {e}")
            raise SpanIngestionError(f"Failed to read trace file: {e}") from e

        if not content:
            return

        try:
            document = json.loads(content)
        except json.JSONDecodeError:
            document = None

        if isinstance(document, dict):
            yield from self._from_object(document)
            return
        if isinstance(document, list):
            for idx, trace in enumerate(document):
                if isinstance(trace, dict):
                    yield from self._from_object(trace)
                else:
                    logger.warning(f"Non-object trace at index {idx}: {type(trace)}")
            return

        # NDJSON (one trace or span per line)
        for line_num, line in enumerate(content.split("\n"), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Malformed JSON at line {line_num}: {line[:100]}")
                continue
            if not isinstance(obj, dict):
                logger.warning(f"NDJSON line {line_num} not an object: {type(obj)}")
                continue
            yield from self._from_object(obj)

    @staticmethod
    def _from_object(obj: Dict[str, Any]) -> Iterator[Span]:
        if "data" in obj and isinstance(obj["data"], list):
            for trace in obj["data"]:
                if isinstance(trace, dict):
                    yield from parse_jaeger_trace(trace)
        elif "spans" in obj:
            yield from parse_jaeger_trace(obj)
        else:
            try:
                yield parse_jaeger_span(obj)
            except SpanIngestionError as e:
                logger.warning(f"Skipping span: {e}")
