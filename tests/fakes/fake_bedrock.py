"""Fake Bedrock embedding and LLM clients."""

import hashlib
import math
import time
from typing import Callable, Dict, List, Optional, Union

from coachmem.utils.bedrock_embed import EmbeddingFailure
from coachmem.utils.bedrock_llm import BedrockLLMError
from coachmem.utils.text_utils import tokenize

DIMENSION = 64


class FakeEmbedder:
    """Bag-of-words hashing embedder; explicit vectors can be pinned per text."""

    def __init__(self, dimension: int = DIMENSION, vectors: Optional[Dict[str, List[float]]] = None):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.fail_on: List[str] = []
        self.calls: List[str] = []

    def _vector(self, text: str) -> List[float]:
        self.calls.append(text)
        if not text or not text.strip():
            raise EmbeddingFailure('Text cannot be empty')
        if any(marker in text for marker in self.fail_on):
            raise EmbeddingFailure('Bedrock Embed failed after 3 attempts: ThrottlingException')
        if text in self.vectors:
            return list(self.vectors[text])
        vector = [0.0] * self.dimension
        for token in tokenize(text):
            bucket = int(hashlib.md5(token.encode('utf-8')).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    def embed_document(self, text: str) -> List[float]:
        return self._vector(text)

    def embed_query(self, text: str) -> List[float]:
        return self._vector(text)

    def health_check(self) -> bool:
        return True


class FakeLLM:
    """Returns queued responses from ``generate_json``; can be slowed down or made to fail."""

    def __init__(self, responses: Optional[List[Union[str, Callable[[str], str]]]] = None, delay: float = 0.0,
                 error: Optional[str] = None):
        self.responses = list(responses or [])
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, str]] = []

    def generate_json(self, user_message: str, system_prompt: str, max_tokens: Optional[int] = None) -> str:
        self.calls.append({'user_message': user_message, 'system_prompt': system_prompt})
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise BedrockLLMError(self.error)
        if not self.responses:
            return '{}'
        response = self.responses.pop(0)
        return response(user_message) if callable(response) else response

    def health_check(self) -> bool:
        return self.error is None
