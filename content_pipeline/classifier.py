"""
Topic classification and embedding for content items.

Two interchangeable classifiers implement TopicClassifier: GeminiClassifier
calls the external model, KeywordClassifier is a deterministic local
heuristic. ClassifierGateway is the only place that decides between them,
based on the FailureKind of a primary failure.
"""

import hashlib
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import List, Optional, Sequence, Tuple

import numpy as np
import requests

from content_pipeline.config import ClassifierConfig
from content_pipeline.constants import (
    DEFAULT_FALLBACK_TOPIC,
    DEFAULT_TOPICS,
    MAX_CLASSIFICATION_TEXT_LENGTH,
    PROMPTS_DIR,
    TOPIC_KEYWORDS,
)
from content_pipeline.errors import (
    ClassifierError,
    ClassifierFatalError,
    ClassifierUnavailableError,
    FailureKind,
)
from content_pipeline.models import ClassificationMethod, ClassificationResult
from llm.llm_util import get_embedding, get_llm_response
from util.constants import GEMINI_API_KEY_ENV_VAR
from util.logging_util import setup_logger
from util.secrets import has_gemini_api_key

logger = setup_logger(__name__)

CLASSIFY_ARTICLE_TEMPLATE = PROMPTS_DIR / "classify_article.jinja2"

RATE_LIMIT_MARKERS = ("429", "quota", "rate limit", "ratelimit", "resource exhausted", "resource_exhausted", "too many requests")
TIMEOUT_MARKERS = ("timeout", "timed out", "deadline")
UNAVAILABLE_MARKERS = ("unavailable", "503", "502", "500", "connection", "internal error")
MISCONFIGURED_MARKERS = ("api key", "api_key", "permission", "401", "403", "not found", "invalid model")

# Only the first words of a text contribute to the hash embedding
HASH_EMBEDDING_MAX_WORDS = 100


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised by the primary classifier to a FailureKind.

    Unknown errors are treated as the service being unavailable, so the
    gateway falls back rather than failing the item.
    """
    if isinstance(exc, ClassifierError):
        return exc.kind
    if isinstance(exc, (TimeoutError, FutureTimeoutError, requests.Timeout)):
        return FailureKind.TIMEOUT
    if isinstance(exc, requests.ConnectionError):
        return FailureKind.UNAVAILABLE
    if isinstance(exc, KeyError) and GEMINI_API_KEY_ENV_VAR in str(exc):
        return FailureKind.MISCONFIGURED

    message = str(exc).lower()
    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMITED
    if any(marker in message for marker in TIMEOUT_MARKERS):
        return FailureKind.TIMEOUT
    if any(marker in message for marker in UNAVAILABLE_MARKERS):
        return FailureKind.UNAVAILABLE
    if any(marker in message for marker in MISCONFIGURED_MARKERS):
        return FailureKind.MISCONFIGURED
    return FailureKind.UNAVAILABLE


def _error_for(message: str, kind: FailureKind, cause: Optional[BaseException] = None) -> ClassifierError:
    error_cls = ClassifierUnavailableError if kind.retryable else ClassifierFatalError
    return error_cls(message, kind, cause)


class TopicClassifier(ABC):
    """Assigns topics and an embedding to canonical text."""

    method: ClassificationMethod

    @abstractmethod
    def classify(self, text: str) -> ClassificationResult:
        """Classify canonical text. Raises ClassifierError on failure."""

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        """Embed text without classifying it."""


class GeminiClassifier(TopicClassifier):
    """Classifies with a Gemini chat model and embeds with a Gemini embedding model."""

    method = ClassificationMethod.PRIMARY

    def __init__(self, config: ClassifierConfig, topics: Sequence[tuple] = DEFAULT_TOPICS):
        self.config = config
        self.topics = [
            {"id": topic_id, "display_name": name, "description": description}
            for topic_id, name, description in topics
        ]
        self.topic_ids = {topic["id"] for topic in self.topics}

    def _parse_topics(self, response: str) -> List[Tuple[str, float]]:
        # Strip a markdown code block if the model wrapped its JSON in one
        response = response.strip()
        if response.startswith("```"):
            lines = response.split("\n")
            response = "\n".join(lines[1:-1])

        try:
            data = json.loads(response)
        except json.JSONDecodeError as e:
            raise ClassifierUnavailableError(
                f"Unparseable classifier response: {response[:200]}", FailureKind.UNAVAILABLE, e
            ) from e

        scored = []
        for entry in data.get("topics", []) if isinstance(data, dict) else []:
            if not isinstance(entry, dict):
                continue
            topic_id = entry.get("id")
            try:
                confidence = float(entry.get("confidence", 0.0))
            except (TypeError, ValueError):
                continue
            if topic_id in self.topic_ids:
                scored.append((topic_id, min(max(confidence, 0.0), 1.0)))

        if not scored:
            raise ClassifierUnavailableError(
                "Classifier returned no known topics", FailureKind.UNAVAILABLE
            )

        scored.sort(key=lambda pair: pair[1], reverse=True)
        confident = [pair for pair in scored if pair[1] >= self.config.min_topic_confidence]
        # Keep the single best topic when nothing clears the threshold
        return (confident or scored[:1])[: self.config.max_topics]

    def embed(self, text: str) -> np.ndarray:
        vector = np.asarray(get_embedding(text, self.config.embedding_model), dtype=np.float32)
        if vector.shape != (self.config.embedding_dimensions,):
            raise ClassifierFatalError(
                f"Embedding has shape {vector.shape}, expected ({self.config.embedding_dimensions},)",
                FailureKind.MISCONFIGURED,
            )
        return vector

    def classify(self, text: str) -> ClassificationResult:
        text = text[:MAX_CLASSIFICATION_TEXT_LENGTH]
        response = get_llm_response(
            str(CLASSIFY_ARTICLE_TEMPLATE),
            {
                "text": text,
                "topics": self.topics,
                "min_confidence": self.config.min_topic_confidence,
                "max_topics": self.config.max_topics,
            },
            model_name=self.config.chat_model,
            timeout=self.config.timeout_seconds,
        )
        scored = self._parse_topics(response)
        return ClassificationResult(
            topics=[topic_id for topic_id, _ in scored],
            embedding=self.embed(text),
            confidence=scored[0][1],
            method=self.method,
        )


class KeywordClassifier(TopicClassifier):
    """Deterministic keyword matching with a word-hash embedding.

    Confidence is scaled into [0, fallback_confidence_cap] so heuristic
    results always rank below a confident primary classification.
    """

    method = ClassificationMethod.FALLBACK

    def __init__(self, config: ClassifierConfig):
        self.config = config
        self._patterns = {
            topic_id: (confidence, [re.compile(r"\b" + re.escape(kw) + r"\b") for kw in keywords])
            for topic_id, (confidence, keywords) in TOPIC_KEYWORDS.items()
        }

    def embed(self, text: str) -> np.ndarray:
        dims = self.config.embedding_dimensions
        vector = np.zeros(dims, dtype=np.float32)
        words = text.lower().split()
        if not words:
            return vector

        weight = 1.0 / np.sqrt(len(words))
        for word in words[:HASH_EMBEDDING_MAX_WORDS]:
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:8], "big") % dims] += weight

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector

    def classify(self, text: str) -> ClassificationResult:
        lowered = text.lower()
        matches = []
        for topic_id, (confidence, patterns) in self._patterns.items():
            if any(pattern.search(lowered) for pattern in patterns):
                matches.append((topic_id, confidence))

        if not matches:
            matches = [(DEFAULT_FALLBACK_TOPIC, 0.6)]

        matches.sort(key=lambda pair: pair[1], reverse=True)
        matches = matches[: self.config.max_topics]
        return ClassificationResult(
            topics=[topic_id for topic_id, _ in matches],
            embedding=self.embed(text),
            confidence=round(matches[0][1] * self.config.fallback_confidence_cap, 4),
            method=self.method,
        )


class ClassifierGateway:
    """Single decision point between the primary and fallback classifiers.

    Primary calls run on a worker pool with a hard timeout, and at most
    `max_in_flight` of them are outstanding at once. Retryable failures
    resolve to the fallback classifier; fatal ones propagate.
    """

    def __init__(
        self,
        primary: Optional[TopicClassifier],
        fallback: TopicClassifier,
        timeout_seconds: float = 20.0,
        max_in_flight: int = 4,
        logger: Optional[logging.Logger] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._in_flight = threading.BoundedSemaphore(max_in_flight)
        self._executor = ThreadPoolExecutor(max_workers=max_in_flight, thread_name_prefix="classifier")

    @property
    def degraded(self) -> bool:
        return self.primary is None

    def _call_primary(self, func, text: str):
        with self._in_flight:
            future = self._executor.submit(func, text)
            try:
                return future.result(timeout=self.timeout_seconds)
            except FutureTimeoutError as e:
                future.cancel()
                raise ClassifierUnavailableError(
                    f"Primary classifier timed out after {self.timeout_seconds}s", FailureKind.TIMEOUT, e
                ) from e
            except ClassifierError:
                raise
            except Exception as e:
                raise _error_for(str(e), classify_failure(e), e) from e

    def classify(self, text: str) -> ClassificationResult:
        """Classify canonical text, falling back on retryable primary failures."""
        if not text or not text.strip():
            raise ClassifierFatalError("Cannot classify empty text", FailureKind.MALFORMED_INPUT)

        if self.primary is None:
            return self.fallback.classify(text)

        try:
            return self._call_primary(self.primary.classify, text)
        except ClassifierError as e:
            if not e.retryable:
                self.logger.error(f"Primary classifier failed ({e.kind.value}): {e}")
                raise
            self.logger.warning(f"Falling back to keyword classifier ({e.kind.value}): {e}")
            return self.fallback.classify(text)

    def embed(self, text: str) -> Tuple[np.ndarray, ClassificationMethod]:
        """Embed text, returning the vector and which classifier produced it."""
        if self.primary is None:
            return self.fallback.embed(text), self.fallback.method

        try:
            return self._call_primary(self.primary.embed, text), self.primary.method
        except ClassifierError as e:
            if not e.retryable:
                raise
            self.logger.warning(f"Falling back to hash embedding ({e.kind.value}): {e}")
            return self.fallback.embed(text), self.fallback.method

    def close(self):
        self._executor.shutdown(wait=False)


def build_gateway(config: ClassifierConfig, logger: Optional[logging.Logger] = None) -> ClassifierGateway:
    """Build the gateway, degrading to fallback-only when no API key is configured."""
    log = logger or logging.getLogger(__name__)
    if has_gemini_api_key():
        primary = GeminiClassifier(config)
    else:
        log.warning(f"{GEMINI_API_KEY_ENV_VAR} is not set; classifying with keyword fallback only")
        primary = None

    return ClassifierGateway(
        primary=primary,
        fallback=KeywordClassifier(config),
        timeout_seconds=config.timeout_seconds,
        max_in_flight=config.max_in_flight,
        logger=log,
    )
