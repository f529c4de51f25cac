"""
Recurring Pattern Detector: frequency-counted, confidence-scored challenges and topics.
"""

import math
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import PATTERN_TYPES, RecurringPattern
from ..utils.config import PatternConfig, config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError, VersionConflictError
from ..utils.text_utils import extract_keywords, normalize_text, overlap_ratio
from ..utils.timestamp_utils import now_utc, parse_timestamp

logger = get_logger(__name__)

PATTERN_NAMESPACE = uuid.UUID('e7c2d9a4-91b3-4f0e-a6d5-38f1b20c7e6a')


class PatternDetectorError(Exception):
    """Custom exception for pattern detector errors."""
    pass


def pattern_signature(description: str) -> str:
    """Stable signature: the sorted significant tokens of the description."""
    tokens = sorted(extract_keywords(description))
    return ' '.join(tokens) if tokens else normalize_text(description)


def pattern_id_for(owner_id: str, pattern_type: str, signature: str) -> str:
    return str(uuid.uuid5(PATTERN_NAMESPACE, f'{owner_id}|{pattern_type}|{signature}'))


def pattern_confidence(frequency: int, initial: float, rate: float) -> float:
    """Saturating confidence: ``initial`` at one occurrence, approaching 1 as frequency grows."""
    if frequency <= 1:
        return min(1.0, max(0.0, initial))
    return min(1.0, max(0.0, 1.0 - (1.0 - initial) * math.exp(-rate * (frequency - 1))))


class PatternDetector:
    """Observes and queries RecurringPattern documents."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 pattern_config: Optional[PatternConfig] = None,
                 max_retries: Optional[int] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.config = pattern_config or config.patterns
        self.max_retries = max_retries or config.opensearch.conflict_retries

        try:
            self.opensearch.create_index_if_not_exists(index_type='pattern')
        except OpenSearchError as e:
            logger.warning(f'Failed to create pattern index: {e}')

        logger.info('Initialized PatternDetector')

    def observe(self,
                owner_id: str,
                pattern_type: str,
                description: str,
                entities: Optional[Iterable[str]] = None,
                keywords: Optional[Iterable[str]] = None,
                suggested_actions: Optional[List[str]] = None,
                occurred_at: Optional[datetime] = None) -> RecurringPattern:
        """Record one occurrence of a pattern.

        A pattern with the same signature, or of the same type whose signature tokens
        overlap enough, is updated in place: frequency +1, entities and keywords unioned,
        confidence recomputed. Otherwise a new pattern is created with frequency 1.

        Concurrent observers are reconciled with conditional writes; a lost race is
        retried against the fresh document so no occurrence is dropped.

        Raises:
            ValueError: On an empty owner or description, or an unknown pattern type
            PatternDetectorError: If the store keeps failing or conflicting
        """
        if not owner_id:
            raise ValueError('owner_id is required')
        if pattern_type not in PATTERN_TYPES:
            raise ValueError(f'Unknown pattern type: {pattern_type}')
        if not description or not description.strip():
            raise ValueError('Pattern description is required')

        signature = pattern_signature(description)
        observed_keywords = extract_keywords(description) | {normalize_text(k) for k in keywords or [] if normalize_text(k)}
        observed_entities = {e for e in entities or [] if e}
        occurred_at = occurred_at or now_utc()

        for attempt in range(self.max_retries):
            try:
                current = self._find_match(owner_id, pattern_type, signature, observed_keywords)
                if current is None:
                    pattern = RecurringPattern(id=pattern_id_for(owner_id, pattern_type, signature),
                                               owner_id=owner_id,
                                               pattern_type=pattern_type,
                                               description=description.strip(),
                                               frequency=1,
                                               last_occurrence=occurred_at,
                                               entities_involved=observed_entities,
                                               keywords=observed_keywords,
                                               suggested_actions=list(suggested_actions or [])[:self.config.max_suggested_actions],
                                               confidence=pattern_confidence(1, self.config.initial_confidence,
                                                                             self.config.saturation_rate),
                                               signature=signature)
                    self.opensearch.index_document(self._to_document(pattern), doc_id=pattern.id,
                                                   index_type='pattern', op_type='create')
                    logger.debug(f'Created {pattern_type} pattern {pattern.id} for user {owner_id}')
                    return pattern

                pattern = self._to_pattern(current['document'])
                pattern.frequency += 1
                pattern.last_occurrence = max(pattern.last_occurrence, occurred_at)
                pattern.entities_involved |= observed_entities
                pattern.keywords |= observed_keywords
                for action in suggested_actions or []:
                    if action not in pattern.suggested_actions:
                        pattern.suggested_actions.append(action)
                pattern.suggested_actions = pattern.suggested_actions[:self.config.max_suggested_actions]
                pattern.confidence = pattern_confidence(pattern.frequency, self.config.initial_confidence,
                                                        self.config.saturation_rate)
                self.opensearch.index_document(self._to_document(pattern),
                                               doc_id=current['id'],
                                               index_type='pattern',
                                               if_seq_no=current['seq_no'],
                                               if_primary_term=current['primary_term'])
                logger.debug(f'Pattern {pattern.id} recurred, frequency now {pattern.frequency}')
                return pattern

            except VersionConflictError:
                logger.debug(f'Concurrent update of pattern "{signature}", retry {attempt + 1}/{self.max_retries}')
            except OpenSearchError as e:
                logger.error(f'Error observing pattern for user {owner_id}: {e}')
                raise PatternDetectorError(f'Failed to observe pattern: {e}')

        raise PatternDetectorError(f'Pattern "{signature}" kept conflicting after {self.max_retries} attempts')

    def query(self,
              owner_id: str,
              keywords: Optional[Iterable[str]] = None,
              entities: Optional[Iterable[str]] = None,
              limit: int = 50) -> List[RecurringPattern]:
        """Patterns sharing any keyword or entity (all patterns if neither is given).

        Returns:
            Patterns ordered by frequency descending, then confidence descending

        Raises:
            PatternDetectorError: If the lookup fails
        """
        wanted_keywords = sorted({normalize_text(k) for k in keywords or [] if normalize_text(k)})
        wanted_entities = sorted({e for e in entities or [] if e})
        if (keywords is not None or entities is not None) and not wanted_keywords and not wanted_entities:
            return []

        try:
            rows = self.opensearch.term_search(owner_id,
                                               any_of={'keywords': wanted_keywords, 'entities_involved': wanted_entities},
                                               size=limit,
                                               index_type='pattern')
        except OpenSearchError as e:
            raise PatternDetectorError(f'Failed to query patterns: {e}')

        patterns = [self._to_pattern(row['document']) for row in rows]
        patterns.sort(key=lambda p: (-p.frequency, -p.confidence, p.id))
        return patterns

    def top_patterns(self, owner_id: str, min_frequency: int = 2, limit: int = 5) -> List[RecurringPattern]:
        """Patterns seen at least ``min_frequency`` times, for proactive suggestions."""
        return [p for p in self.query(owner_id) if p.frequency >= min_frequency][:limit]

    def delete_owner(self, owner_id: str) -> int:
        try:
            return self.opensearch.delete_by_query(owner_id, index_type='pattern')
        except OpenSearchError as e:
            raise PatternDetectorError(f'Failed to delete patterns: {e}')

    def _find_match(self, owner_id: str, pattern_type: str, signature: str,
                    observed_keywords: set) -> Optional[Dict[str, Any]]:
        exact = self.opensearch.get_document_by_id(pattern_id_for(owner_id, pattern_type, signature), index_type='pattern')
        if exact is not None:
            return exact

        signature_tokens = set(signature.split())
        rows = self.opensearch.term_search(owner_id,
                                           filters={'pattern_type': pattern_type},
                                           any_of={'keywords': sorted(observed_keywords)},
                                           index_type='pattern')
        best, best_key = None, None
        for row in rows:
            document = row['document']
            overlap = overlap_ratio(signature_tokens, str(document.get('signature', '')).split())
            if overlap < self.config.keyword_overlap_threshold:
                continue
            key = (overlap, int(document.get('frequency', 1)), row['id'])
            if best_key is None or key > best_key:
                best, best_key = row, key

        if best is None:
            return None
        # Re-read for fresh concurrency-control metadata.
        return self.opensearch.get_document_by_id(best['id'], index_type='pattern')

    @staticmethod
    def _to_document(pattern: RecurringPattern) -> Dict[str, Any]:
        return {
            'id': pattern.id,
            'user_id': pattern.owner_id,
            'pattern_type': pattern.pattern_type,
            'signature': pattern.signature,
            'description': pattern.description,
            'frequency': pattern.frequency,
            'last_occurrence': pattern.last_occurrence.isoformat(),
            'entities_involved': sorted(pattern.entities_involved),
            'keywords': sorted(pattern.keywords),
            'suggested_actions': pattern.suggested_actions,
            'confidence': pattern.confidence
        }

    @staticmethod
    def _to_pattern(doc: Dict[str, Any]) -> RecurringPattern:
        return RecurringPattern(id=doc.get('id', ''),
                                owner_id=doc.get('user_id', ''),
                                pattern_type=doc.get('pattern_type', 'topic'),
                                description=doc.get('description', ''),
                                frequency=max(1, int(doc.get('frequency', 1))),
                                last_occurrence=parse_timestamp(doc.get('last_occurrence')),
                                entities_involved=set(doc.get('entities_involved') or []),
                                keywords=set(doc.get('keywords') or []),
                                suggested_actions=list(doc.get('suggested_actions') or []),
                                confidence=min(1.0, max(0.0, float(doc.get('confidence', 0.0)))),
                                signature=doc.get('signature', ''))
