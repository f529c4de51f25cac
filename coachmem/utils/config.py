"""
Configuration management for AWS services and engine tuning.
"""

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    read_timeout: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    conflict_retries: int


@dataclass
class SearchConfig:
    """Similarity thresholds and result caps per content source."""
    message_threshold: float
    message_top_k: int
    file_threshold: float
    file_top_k: int
    cross_scope: bool
    cross_scope_top_k: int


@dataclass
class ContextConfig:
    """Configuration for context assembly."""
    budget_tokens: int
    history_turns: int
    dedup_threshold: float
    recency_delta: float
    connection_min_strength: float
    max_connections: int
    max_patterns: int
    pattern_frequency_cap: int
    weights: Dict[str, float] = field(default_factory=dict)


@dataclass
class ConnectionConfig:
    """Configuration for the cross-entity connection tracker."""
    base_strength: float
    max_evidence: int
    signal_weights: Dict[str, float] = field(default_factory=dict)
    conflict_retries: int = 20


@dataclass
class PatternConfig:
    """Configuration for the recurring pattern detector."""
    initial_confidence: float
    saturation_rate: float
    keyword_overlap_threshold: float
    max_suggested_actions: int


@dataclass
class DetectionConfig:
    """Configuration for person-mention detection."""
    acceptance_threshold: float
    validation_enabled: bool
    validation_timeout: float
    validation_min_score: float
    fuzzy_dedup: bool


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    search: SearchConfig
    context: ContextConfig
    connections: ConnectionConfig
    patterns: PatternConfig
    detection: DetectionConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '2')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '0.5')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '30')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector store configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'coachmem'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         conflict_retries=int(os.getenv('OPENSEARCH_CONFLICT_RETRIES', '5')))

    search_config = SearchConfig(message_threshold=float(os.getenv('SEARCH_MESSAGE_THRESHOLD', '0.75')),
                                 message_top_k=int(os.getenv('SEARCH_MESSAGE_TOP_K', '5')),
                                 file_threshold=float(os.getenv('SEARCH_FILE_THRESHOLD', '0.7')),
                                 file_top_k=int(os.getenv('SEARCH_FILE_TOP_K', '3')),
                                 cross_scope=_env_bool('SEARCH_CROSS_SCOPE', 'true'),
                                 cross_scope_top_k=int(os.getenv('SEARCH_CROSS_SCOPE_TOP_K', '3')))

    context_config = ContextConfig(budget_tokens=int(os.getenv('CONTEXT_BUDGET_TOKENS', '3000')),
                                   history_turns=int(os.getenv('CONTEXT_HISTORY_TURNS', '10')),
                                   dedup_threshold=float(os.getenv('CONTEXT_DEDUP_THRESHOLD', '0.85')),
                                   recency_delta=float(os.getenv('CONTEXT_RECENCY_DELTA', '0.02')),
                                   connection_min_strength=float(os.getenv('CONTEXT_CONNECTION_MIN_STRENGTH', '0.3')),
                                   max_connections=int(os.getenv('CONTEXT_MAX_CONNECTIONS', '5')),
                                   max_patterns=int(os.getenv('CONTEXT_MAX_PATTERNS', '5')),
                                   pattern_frequency_cap=int(os.getenv('CONTEXT_PATTERN_FREQUENCY_CAP', '5')),
                                   weights={
                                       'message': float(os.getenv('CONTEXT_WEIGHT_MESSAGE', '1.0')),
                                       'cross_scope': float(os.getenv('CONTEXT_WEIGHT_CROSS_SCOPE', '0.8')),
                                       'file': float(os.getenv('CONTEXT_WEIGHT_FILE', '0.9')),
                                       'connection': float(os.getenv('CONTEXT_WEIGHT_CONNECTION', '0.7')),
                                       'pattern': float(os.getenv('CONTEXT_WEIGHT_PATTERN', '0.6')),
                                   })

    connection_config = ConnectionConfig(base_strength=float(os.getenv('CONNECTION_BASE_STRENGTH', '0.3')),
                                         max_evidence=int(os.getenv('CONNECTION_MAX_EVIDENCE', '10')),
                                         signal_weights={
                                             'collaboration': 0.2,
                                             'conflict': 0.25,
                                             'dependency': 0.2,
                                             'mentorship': 0.2,
                                             'shared_challenge': 0.15,
                                         },
                                         conflict_retries=int(os.getenv('CONNECTION_CONFLICT_RETRIES', '20')))

    pattern_config = PatternConfig(initial_confidence=float(os.getenv('PATTERN_INITIAL_CONFIDENCE', '0.3')),
                                   saturation_rate=float(os.getenv('PATTERN_SATURATION_RATE', '0.35')),
                                   keyword_overlap_threshold=float(os.getenv('PATTERN_KEYWORD_OVERLAP', '0.6')),
                                   max_suggested_actions=int(os.getenv('PATTERN_MAX_SUGGESTED_ACTIONS', '5')))

    detection_config = DetectionConfig(acceptance_threshold=float(os.getenv('DETECTION_ACCEPTANCE_THRESHOLD', '0.6')),
                                       validation_enabled=_env_bool('DETECTION_VALIDATION_ENABLED', 'false'),
                                       validation_timeout=float(os.getenv('DETECTION_VALIDATION_TIMEOUT', '5.0')),
                                       validation_min_score=float(os.getenv('DETECTION_VALIDATION_MIN_SCORE', '0.6')),
                                       fuzzy_dedup=_env_bool('DETECTION_FUZZY_DEDUP', 'true'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     search=search_config,
                     context=context_config,
                     connections=connection_config,
                     patterns=pattern_config,
                     detection=detection_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
