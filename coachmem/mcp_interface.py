"""
MCP Interface Layer using fastmcp for the chat orchestrator.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import ConversationScope, Person
from .services.connection_tracker import ConnectionTrackerError
from .services.context_engine import ContextEngine, ContextEngineError
from .services.pattern_detector import PatternDetectorError
from .utils.config import config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Coaching Context')
_engine: Optional[ContextEngine] = None


def get_engine() -> ContextEngine:
    global _engine
    if _engine is None:
        _engine = ContextEngine()
    return _engine


def _people(people: Optional[List[Dict[str, str]]]) -> List[Person]:
    return [Person(id=p['id'], name=p['name'], role=p.get('role')) for p in people or [] if p.get('id') and p.get('name')]


@mcp.tool()
def assemble_context(user_id: str,
                     current_message: str,
                     person_id: Optional[str] = None,
                     topic_id: Optional[str] = None,
                     history: Optional[List[Dict[str, str]]] = None,
                     people: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    """Build the grounding context for a chat turn.

    Args:
        user_id: User ID
        current_message: The user's new message
        person_id: Active person thread, if any
        topic_id: Active topic thread, if any
        history: Prior turns of the thread, oldest first, as {'role', 'content'}
        people: Known people as {'id', 'name', 'role'}

    Returns:
        Dict with 'context' (rendered text), 'items', 'history', 'used_tokens' and 'degraded_sources'
    """
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')

    bundle = get_engine().assemble_context(user_id, ConversationScope(person_id, topic_id), current_message, history,
                                           _people(people))
    logger.debug(f'MCP assemble_context returned {len(bundle.items)} items for user {user_id}')
    return {
        'context': bundle.render(),
        'items': [{
            'source': item.source,
            'text': item.text,
            'score': item.score,
            'ref_id': item.ref_id
        } for item in bundle.items],
        'history': bundle.history,
        'used_tokens': bundle.used_tokens,
        'degraded_sources': bundle.degraded_sources
    }


@mcp.tool()
def detect_mentions(message: str, existing_names: Optional[List[str]] = None) -> Dict[str, Any]:
    """Find people mentioned in a message who are not yet known.

    Args:
        message: The user's message
        existing_names: Names of people already recorded

    Returns:
        Dict with 'detected_people', 'has_new_people' and 'fallback_used'
    """
    result = get_engine().detect_mentions(message, existing_names or [])
    return {
        'detected_people': [{
            'name': c.name,
            'confidence': c.confidence,
            'context': c.context_snippet,
            'validation_score': c.validation_score,
            'role': c.role,
            'relationship_hint': c.relationship_hint
        } for c in result.detected_people],
        'has_new_people': result.has_new_people,
        'fallback_used': result.fallback_used
    }


@mcp.tool()
def record_signal(user_id: str, entity_a: str, entity_b: str, connection_type: str, evidence: str) -> Dict[str, Any]:
    """Record a relationship signal between two known people.

    Returns:
        The stored connection's id, pair, type and strength
    """
    try:
        connection = get_engine().record_signal(user_id, entity_a, entity_b, connection_type, evidence)
    except ConnectionTrackerError as e:
        logger.error(f'Connection error in MCP record_signal: {e}')
        raise Exception(f'Recording signal failed: {e}')
    return {
        'id': connection.id,
        'entity_a': connection.entity_a,
        'entity_b': connection.entity_b,
        'connection_type': connection.connection_type,
        'strength': connection.strength
    }


@mcp.tool()
def observe_pattern(user_id: str,
                    pattern_type: str,
                    description: str,
                    entities: Optional[List[str]] = None,
                    keywords: Optional[List[str]] = None) -> Dict[str, Any]:
    """Record one occurrence of a recurring challenge, topic, relationship or communication pattern."""
    try:
        pattern = get_engine().observe(user_id, pattern_type, description, entities, keywords)
    except PatternDetectorError as e:
        logger.error(f'Pattern error in MCP observe_pattern: {e}')
        raise Exception(f'Observing pattern failed: {e}')
    return {'id': pattern.id, 'frequency': pattern.frequency, 'confidence': pattern.confidence}


@mcp.tool()
def process_turn(user_id: str,
                 messages: List[Dict[str, str]],
                 person_id: Optional[str] = None,
                 topic_id: Optional[str] = None,
                 people: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    """Index a finished turn and record the relationship and pattern signals it contains."""
    return get_engine().process_turn(user_id, ConversationScope(person_id, topic_id), messages, _people(people))


@mcp.tool()
def index_file_content(user_id: str,
                       file_id: str,
                       text: str,
                       person_id: Optional[str] = None,
                       topic_id: Optional[str] = None) -> Dict[str, Any]:
    """Chunk and index text extracted from an uploaded file."""
    try:
        units = get_engine().index_file_content(user_id, file_id, text, ConversationScope(person_id, topic_id))
    except ContextEngineError as e:
        logger.error(f'Engine error in MCP index_file_content: {e}')
        raise Exception(f'File indexing failed: {e}')
    return {'file_id': file_id, 'chunks': len(units)}


@mcp.tool()
def health() -> Dict[str, Any]:
    """Health status of every external component."""
    return get_health_status()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
