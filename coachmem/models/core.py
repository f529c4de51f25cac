"""
Core data models for the context-assembly and mention-detection engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

CONTENT_TYPES = ('message', 'summary', 'file_content', 'file_chunk')
MESSAGE_CONTENT_TYPES = ('message', 'summary')
FILE_CONTENT_TYPES = ('file_content', 'file_chunk')

CONNECTION_TYPES = ('collaboration', 'conflict', 'dependency', 'mentorship', 'shared_challenge')

PATTERN_TYPES = ('challenge', 'topic', 'relationship', 'communication')


@dataclass
class ContentScope:
    """Where a content unit belongs inside an owner's data."""
    type: str  # message|summary|file_content|file_chunk
    person_id: Optional[str] = None
    topic_id: Optional[str] = None
    file_id: Optional[str] = None
    chunk_index: Optional[int] = None
    message_id: Optional[str] = None


@dataclass
class ContentUnit:
    """An embedded record: one indexed message, summary, or file chunk."""
    id: str
    owner_id: str
    scope: ContentScope
    text: str
    vector: List[float]
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    unit: ContentUnit
    similarity: float  # cosine clamped to [0, 1]


@dataclass
class ConversationScope:
    """The active conversation: a person thread, a topic thread, or neither."""
    person_id: Optional[str] = None
    topic_id: Optional[str] = None


@dataclass
class Person:
    """A known entity as provided by the entity store."""
    id: str
    name: str
    role: Optional[str] = None


@dataclass
class Connection:
    """Weighted, evidence-backed relationship between two entities of one owner.

    ``entity_a`` is always the smaller identifier of the pair.
    """
    id: str
    owner_id: str
    entity_a: str
    entity_b: str
    connection_type: str
    strength: float
    description: str
    evidence: List[str]
    last_updated: datetime

    def other(self, entity_id: str) -> str:
        return self.entity_b if entity_id == self.entity_a else self.entity_a


@dataclass
class RecurringPattern:
    """Frequency-counted record of a challenge or topic seen across conversations."""
    id: str
    owner_id: str
    pattern_type: str
    description: str
    frequency: int
    last_occurrence: datetime
    entities_involved: Set[str] = field(default_factory=set)
    keywords: Set[str] = field(default_factory=set)
    suggested_actions: List[str] = field(default_factory=list)
    confidence: float = 0.0
    signature: str = ''


@dataclass
class DetectedCandidate:
    """A possible new person found in a message. Never persisted by the engine."""
    name: str
    confidence: float
    context_snippet: str
    validation_score: Optional[float] = None
    role: Optional[str] = None
    relationship_hint: Optional[str] = None
    rule: Optional[str] = None


@dataclass
class DetectionResult:
    detected_people: List[DetectedCandidate]
    fallback_used: bool = False

    @property
    def has_new_people(self) -> bool:
        return bool(self.detected_people)


@dataclass
class ContextItem:
    """One ranked piece of grounding admitted into a bundle."""
    source: str  # message|cross_scope|file|connection|pattern
    text: str
    score: float
    created_at: datetime
    ref_id: str
    similarity: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextBundle:
    """Bounded grounding for one chat turn."""
    owner_id: str
    scope: ConversationScope
    history: List[Dict[str, str]]
    items: List[ContextItem]
    budget_tokens: int
    used_tokens: int
    degraded_sources: List[str] = field(default_factory=list)

    def items_from(self, source: str) -> List[ContextItem]:
        return [item for item in self.items if item.source == source]

    def render(self) -> str:
        """Render the bundle as the text block handed to the response generator."""
        sections = []
        labels = [('message', 'Related earlier discussion'), ('cross_scope', 'From other conversations'),
                  ('file', 'From shared files'), ('connection', 'Known relationships'),
                  ('pattern', 'Recurring patterns')]
        for source, label in labels:
            items = self.items_from(source)
            if items:
                lines = '\n'.join(f'- {item.text}' for item in items)
                sections.append(f'## {label}\n{lines}')
        if self.history:
            lines = '\n'.join(f"{msg.get('role', 'user').capitalize()}: {msg.get('content', '')}" for msg in self.history)
            sections.append(f'## Conversation so far\n{lines}')
        return '\n\n'.join(sections)
