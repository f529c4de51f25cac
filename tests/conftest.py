"""Pytest configuration and fixtures."""

import os

# Configuration is read once at import, so the environment is set before coachmem loads.
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('LOG_LEVEL', 'WARNING')
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')
os.environ['DETECTION_VALIDATION_ENABLED'] = 'false'
os.environ['DETECTION_VALIDATION_TIMEOUT'] = '0.2'

import pytest  # noqa: E402

from coachmem.services.connection_tracker import ConnectionTracker  # noqa: E402
from coachmem.services.context_assembler import ContextAssembler  # noqa: E402
from coachmem.services.context_engine import ContextEngine  # noqa: E402
from coachmem.services.embedding_store import EmbeddingStore  # noqa: E402
from coachmem.services.pattern_detector import PatternDetector  # noqa: E402
from coachmem.services.similarity_search import SimilaritySearch  # noqa: E402
from tests.fakes.fake_bedrock import DIMENSION, FakeEmbedder, FakeLLM  # noqa: E402
from tests.fakes.fake_neptune import FakeNeptune  # noqa: E402
from tests.fakes.fake_opensearch import FakeOpenSearch  # noqa: E402

OWNER = 'user-1'


@pytest.fixture
def fake_opensearch():
    return FakeOpenSearch()


@pytest.fixture
def fake_neptune():
    return FakeNeptune()


@pytest.fixture
def fake_embed():
    return FakeEmbedder()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def store(fake_opensearch, fake_embed):
    return EmbeddingStore(fake_opensearch, fake_embed, dimension=DIMENSION)


@pytest.fixture
def search(store):
    return SimilaritySearch(store)


@pytest.fixture
def tracker(fake_neptune):
    return ConnectionTracker(fake_neptune)


@pytest.fixture
def patterns(fake_opensearch):
    return PatternDetector(fake_opensearch)


@pytest.fixture
def assembler(search, tracker, patterns, fake_embed):
    return ContextAssembler(search, tracker, patterns, fake_embed)


@pytest.fixture
def engine(fake_opensearch, fake_neptune, fake_embed, fake_llm):
    return ContextEngine(fake_opensearch, fake_neptune, fake_embed, fake_llm, validation_enabled=False, dimension=DIMENSION)
