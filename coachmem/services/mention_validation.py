"""
Mention Validation: optional LLM judgment of detected name candidates, with a timeout fallback.
"""

import json
import math
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from ..models.core import DetectedCandidate
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import BedrockLLMConfig, DetectionConfig, config
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

# Share of a validation score added to the pattern confidence.
VALIDATION_BOOST = 0.3

VALIDATION_SYSTEM_PROMPT = """You decide which potential names in a coaching conversation refer to people.
Companies, products, projects, places, teams and ordinary words are not people.

Judge from context clues, grammar and how the word is used in the sentence, in any language.
Score each name from 1 to 10:
- 8-10: definitely a person
- 6-7: likely a person
- 4-5: uncertain
- 1-3: unlikely to be a person

Respond with a JSON array only, one object per name:
[{"name": "<name as given>", "is_person": true, "score": 8}]"""


class ValidationError(Exception):
    """Custom exception for mention validation errors."""
    pass


@dataclass
class ValidationVerdict:
    name: str
    is_person: bool
    score: float  # normalized to [0, 1]


@dataclass
class ValidationOutcome:
    """Either verdicts from the validation service, or the reason it could not be used."""
    verdicts: List[ValidationVerdict] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def validation_llm(llm_config: BedrockLLMConfig, detection_config: DetectionConfig) -> BedrockLLM:
    """LLM client whose single attempt cannot outlive the validation timeout by much."""
    bounded = replace(llm_config,
                      retry_attempts=1,
                      read_timeout=max(1, math.ceil(detection_config.validation_timeout)))
    return BedrockLLM(bounded)


def _as_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ('true', 'yes'):
            return True
        if text in ('false', 'no'):
            return False
    return default


class MentionValidator:
    """Asks the LLM whether candidate names are people."""

    def __init__(self,
                 llm: Optional[BedrockLLM] = None,
                 detection_config: Optional[DetectionConfig] = None,
                 key: Optional[Callable[[str], str]] = None):
        """Initialize the validator.

        Args:
            llm: LLM client (a single-attempt client bounded by the timeout if None)
            detection_config: Timeout and minimum score
            key: Name normalizer used to match verdicts to candidates
        """
        self.config = detection_config or config.detection
        self.llm = llm or validation_llm(config.bedrock_llm, self.config)
        self.key = key or (lambda name: name.casefold())

    def validate(self, message: str, candidates: List[DetectedCandidate]) -> List[ValidationVerdict]:
        """Blocking validation call.

        Raises:
            ValidationError: If the LLM call fails or its answer cannot be read
        """
        if not candidates:
            return []

        listing = '\n'.join(f'- {c.name}: "{c.context_snippet}"' for c in candidates)
        user_message = f'Conversation: {json.dumps(message)}\n\nPotential names with context:\n{listing}'
        try:
            response = self.llm.generate_json(user_message, VALIDATION_SYSTEM_PROMPT, max_tokens=300)
            rows = parse_json_response(response, expected_type=list)
        except (BedrockLLMError, ValueError) as e:
            raise ValidationError(f'Mention validation failed: {e}')

        verdicts = []
        for row in rows:
            if not isinstance(row, dict) or not row.get('name'):
                continue
            try:
                raw_score = float(row.get('score', 0))
            except (TypeError, ValueError):
                continue
            verdicts.append(ValidationVerdict(name=str(row['name']),
                                              is_person=_as_bool(row.get('is_person'), raw_score >= 6),
                                              score=min(10.0, max(1.0, raw_score)) / 10.0))
        return verdicts

    def try_validate(self, message: str, candidates: List[DetectedCandidate]) -> ValidationOutcome:
        """Validation bounded by the configured timeout; never raises."""
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(self.validate, message, candidates)
            return ValidationOutcome(verdicts=future.result(timeout=self.config.validation_timeout))
        except FutureTimeoutError:
            return ValidationOutcome(error=f'timed out after {self.config.validation_timeout}s')
        except ValidationError as e:
            return ValidationOutcome(error=str(e))
        finally:
            # Do not wait for a call that overran its timeout.
            pool.shutdown(wait=False, cancel_futures=True)

    def apply(self, candidates: List[DetectedCandidate], outcome: ValidationOutcome) -> List[DetectedCandidate]:
        """Fold verdicts into candidates.

        Candidates judged not to be people, or scored below the minimum, are dropped;
        confirmed ones gain confidence in proportion to their score. Candidates the
        service did not mention are kept as they are.
        """
        by_key: Dict[str, ValidationVerdict] = {self.key(v.name): v for v in outcome.verdicts}
        kept = []
        for candidate in candidates:
            verdict = by_key.get(self.key(candidate.name))
            if verdict is None:
                kept.append(candidate)
                continue
            if not verdict.is_person or verdict.score < self.config.validation_min_score:
                logger.debug(f'Validation rejected candidate {candidate.name} (score {verdict.score:.2f})')
                continue
            candidate.validation_score = verdict.score
            candidate.confidence = round(min(1.0, candidate.confidence + verdict.score * VALIDATION_BOOST), 4)
            kept.append(candidate)
        return kept


def validate_with_fallback(validator: Optional[MentionValidator], message: str,
                           candidates: List[DetectedCandidate]) -> Tuple[List[DetectedCandidate], bool]:
    """Two-stage validation: use the verdicts when available, else keep the pattern result.

    Returns:
        Tuple of (candidates, fallback_used)
    """
    if validator is None or not candidates:
        return candidates, False

    outcome = validator.try_validate(message, candidates)
    if not outcome.ok:
        logger.warning(f'Mention validation unavailable, using pattern-based result: {outcome.error}')
        return candidates, True
    return validator.apply(candidates, outcome), False
