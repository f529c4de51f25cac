"""
Turn Analysis: asks the LLM for relationship signals and recurring patterns in a finished turn.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..models.core import CONNECTION_TYPES, PATTERN_TYPES, Person
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from ..utils.text_utils import normalize_text

logger = get_logger(__name__)


class TurnAnalysisError(Exception):
    """Custom exception for turn analysis errors."""
    pass


@dataclass
class RelationshipSignal:
    entity_a: str
    entity_b: str
    connection_type: str
    evidence: str
    description: Optional[str] = None


@dataclass
class PatternSignal:
    pattern_type: str
    description: str
    keywords: List[str] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)
    suggested_actions: List[str] = field(default_factory=list)


@dataclass
class TurnSignals:
    relationships: List[RelationshipSignal] = field(default_factory=list)
    patterns: List[PatternSignal] = field(default_factory=list)


class TurnAnalyzer:
    """Extracts post-turn write signals from conversation messages using Bedrock LLMs."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)

    def analyze(self, messages: List[Dict[str, str]], people: Sequence[Person]) -> TurnSignals:
        """Find relationship signals between known people and recurring challenges or topics.

        Args:
            messages: Turn messages with 'role' and 'content' keys
            people: Known people of the owner; relationships are only kept between these

        Returns:
            TurnSignals, possibly empty

        Raises:
            TurnAnalysisError: If the LLM call fails or returns unreadable output
        """
        content_list = []
        for msg in messages:
            if msg.get('role') in ['user', 'assistant'] and msg.get('content', '').strip():
                content_list.append(f'{msg["role"].capitalize()}:\n{msg["content"]}')
        if not content_list:
            return TurnSignals()

        known = '\n'.join(f'- {p.name}' + (f' ({p.role})' if p.role else '') for p in people) or '- (none)'
        system_prompt = f"""
You analyze a coaching conversation about workplace relationships.

Known people:
{known}

1. Relationships: pairs of KNOWN people (never the user) whose relationship the conversation shows.
   connection_type is one of: {', '.join(CONNECTION_TYPES)}.
   evidence is the sentence that shows it.
2. Patterns: challenges or topics the user is dealing with that could recur.
   pattern_type is one of: {', '.join(PATTERN_TYPES)}.
   description is a short, general phrase (e.g. "unclear priorities from leadership").

Return a JSON object with this exact format:
```json
{{
  "relationships": [{{"person_a": "name", "person_b": "name", "connection_type": "collaboration", "evidence": "...", "description": "..."}}],
  "patterns": [{{"pattern_type": "challenge", "description": "...", "keywords": ["..."], "people": ["name"], "suggested_actions": ["..."]}}]
}}
```

Only report what is explicitly discussed. Return empty arrays if nothing applies."""

        try:
            response = self.llm.generate_json('Analyze the conversation:\n' + '\n\n'.join(content_list), system_prompt)
            data = parse_json_response(response, expected_type=dict)
        except (BedrockLLMError, ValueError) as e:
            raise TurnAnalysisError(f'Turn analysis failed: {e}')

        by_name = {}
        for person in people:
            full = normalize_text(person.name)
            if not full:
                continue
            by_name[full] = person.id
            by_name.setdefault(full.split(' ')[0], person.id)

        signals = TurnSignals()
        for row in data.get('relationships') or []:
            if not isinstance(row, dict):
                continue
            entity_a = by_name.get(normalize_text(str(row.get('person_a', ''))))
            entity_b = by_name.get(normalize_text(str(row.get('person_b', ''))))
            connection_type = str(row.get('connection_type', '')).strip().lower()
            if not entity_a or not entity_b or entity_a == entity_b or connection_type not in CONNECTION_TYPES:
                logger.debug(f'Skipping relationship signal: {row}')
                continue
            signals.relationships.append(RelationshipSignal(entity_a=entity_a,
                                                            entity_b=entity_b,
                                                            connection_type=connection_type,
                                                            evidence=str(row.get('evidence', '')).strip(),
                                                            description=row.get('description') or None))

        for row in data.get('patterns') or []:
            if not isinstance(row, dict):
                continue
            pattern_type = str(row.get('pattern_type', '')).strip().lower()
            description = str(row.get('description', '')).strip()
            if pattern_type not in PATTERN_TYPES or not description:
                logger.debug(f'Skipping pattern signal: {row}')
                continue
            entities = [by_name[normalize_text(str(name))] for name in row.get('people') or []
                        if normalize_text(str(name)) in by_name]
            signals.patterns.append(PatternSignal(pattern_type=pattern_type,
                                                  description=description,
                                                  keywords=[str(k) for k in row.get('keywords') or []],
                                                  entities=entities,
                                                  suggested_actions=[str(a) for a in row.get('suggested_actions') or []]))

        logger.debug(f'Turn analysis found {len(signals.relationships)} relationships, {len(signals.patterns)} patterns')
        return signals
