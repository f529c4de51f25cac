"""
Health check utilities for the engine's external collaborators.
"""

from typing import Any, Callable, Dict

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _probe(service: str, factory: Callable[[], Any], **details) -> Dict[str, Any]:
    try:
        healthy = factory().health_check()
        return {'healthy': healthy, 'service': service, **details}
    except Exception as e:
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status() -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    return {
        'bedrock_embed': _probe('Amazon Bedrock Embed', lambda: BedrockEmbed(config.bedrock_embed),
                                model=config.bedrock_embed.model_id),
        'bedrock_llm': _probe('Amazon Bedrock LLM', lambda: BedrockLLM(config.bedrock_llm),
                              model=config.bedrock_llm.model_id),
        'opensearch': _probe('Amazon OpenSearch', lambda: OpenSearchClient(config.opensearch),
                             endpoint=config.opensearch.endpoint),
        'neptune': _probe('Amazon Neptune', lambda: NeptuneClient(config.neptune), endpoint=config.neptune.endpoint),
    }


def check_health() -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status()
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy
