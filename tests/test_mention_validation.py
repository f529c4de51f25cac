"""Tests for LLM validation of detected names and its fallback behaviour."""

from dataclasses import replace

import pytest

from coachmem.models.core import DetectedCandidate
from coachmem.services import mention_validation
from coachmem.services.mention_validation import (MentionValidator, ValidationError, ValidationOutcome,
                                                  ValidationVerdict, validate_with_fallback, validation_llm)
from coachmem.services.person_detection import PersonDetector, name_key
from coachmem.utils.config import config
from tests.fakes.fake_bedrock import FakeLLM

MEETING = 'I had a great meeting with Sarah today about the project'
LONE_NAME = 'The demo went well and Ravi surprised everyone.'


def _validator(llm, timeout=1.0):
    return MentionValidator(llm, replace(config.detection, validation_timeout=timeout), key=name_key)


def _detector(llm, timeout=1.0):
    return PersonDetector(_validator(llm, timeout))


def _candidate(name, confidence=0.7):
    return DetectedCandidate(name=name, confidence=confidence, context_snippet=f'met with {name}')


class TestValidate:
    def test_verdicts_are_parsed_and_normalized(self):
        llm = FakeLLM(['```json\n[{"name": "Sarah", "is_person": true, "score": 8},'
                       ' {"name": "Atlas", "is_person": false, "score": 2}]\n```'])

        verdicts = _validator(llm).validate(MEETING, [_candidate('Sarah'), _candidate('Atlas')])

        assert verdicts == [ValidationVerdict('Sarah', True, 0.8), ValidationVerdict('Atlas', False, 0.2)]
        assert 'Sarah' in llm.calls[0]['user_message']

    def test_scores_are_clamped(self):
        llm = FakeLLM(['[{"name": "Sarah", "score": 15}, {"name": "Tom", "score": 0}, {"name": "Ana", "score": "high"}]'])

        verdicts = _validator(llm).validate(MEETING, [_candidate('Sarah')])

        assert [(v.name, v.score, v.is_person) for v in verdicts] == [('Sarah', 1.0, True), ('Tom', 0.1, False)]

    def test_string_booleans_are_read_by_value(self):
        llm = FakeLLM(['[{"name": "Sarah", "is_person": "false", "score": 8},'
                       ' {"name": "Tom", "is_person": "True", "score": 3},'
                       ' {"name": "Kim", "is_person": "maybe", "score": 7}]'])

        verdicts = _validator(llm).validate(MEETING, [_candidate('Sarah')])

        assert [(v.name, v.is_person) for v in verdicts] == [('Sarah', False), ('Tom', True), ('Kim', True)]

    def test_quoted_false_rejects_the_candidate(self):
        result = _detector(FakeLLM(['[{"name": "Sarah", "is_person": "false", "score": 9}]'])).detect(MEETING)

        assert result.detected_people == []
        assert result.fallback_used is False

    def test_no_candidates_skips_the_call(self):
        llm = FakeLLM()

        assert _validator(llm).validate(MEETING, []) == []
        assert llm.calls == []

    def test_unreadable_answer_raises(self):
        with pytest.raises(ValidationError):
            _validator(FakeLLM(['not json'])).validate(MEETING, [_candidate('Sarah')])

    def test_llm_failure_raises(self):
        with pytest.raises(ValidationError):
            _validator(FakeLLM(error='ThrottlingException')).validate(MEETING, [_candidate('Sarah')])


class TestTryValidate:
    def test_timeout_becomes_error_outcome(self):
        outcome = _validator(FakeLLM(['[]'], delay=1.0), timeout=0.05).try_validate(MEETING, [_candidate('Sarah')])

        assert not outcome.ok
        assert 'timed out' in outcome.error

    def test_default_client_makes_one_attempt_within_the_timeout(self, monkeypatch):
        built = []
        monkeypatch.setattr(mention_validation, 'BedrockLLM', lambda llm_config: built.append(llm_config) or FakeLLM())

        validation_llm(config.bedrock_llm, replace(config.detection, validation_timeout=2.5))
        MentionValidator(detection_config=replace(config.detection, validation_timeout=0.2))

        assert [(c.retry_attempts, c.read_timeout) for c in built] == [(1, 3), (1, 1)]
        assert built[0].model_id == config.bedrock_llm.model_id

    def test_failure_becomes_error_outcome(self):
        outcome = _validator(FakeLLM(error='AccessDenied')).try_validate(MEETING, [_candidate('Sarah')])

        assert not outcome.ok
        assert 'AccessDenied' in outcome.error


class TestApply:
    def test_confirmed_candidate_is_boosted(self):
        validator = _validator(FakeLLM())
        outcome = ValidationOutcome(verdicts=[ValidationVerdict('sarah', True, 0.9)])

        [sarah] = validator.apply([_candidate('Sarah', 0.5)], outcome)

        assert sarah.validation_score == 0.9
        assert sarah.confidence == pytest.approx(0.77)

    def test_rejected_and_low_scores_are_dropped(self):
        validator = _validator(FakeLLM())
        outcome = ValidationOutcome(verdicts=[ValidationVerdict('Atlas', False, 0.9), ValidationVerdict('Kim', True, 0.5)])

        assert validator.apply([_candidate('Atlas'), _candidate('Kim')], outcome) == []

    def test_unmentioned_candidates_are_kept(self):
        validator = _validator(FakeLLM())

        kept = validator.apply([_candidate('Sarah')], ValidationOutcome(verdicts=[]))

        assert [(c.name, c.confidence, c.validation_score) for c in kept] == [('Sarah', 0.7, None)]


# ============================================================================
# Fallback through the detection pipeline
# ============================================================================


class TestFallback:
    def test_without_validator_no_fallback_is_reported(self):
        candidates = [_candidate('Sarah')]

        assert validate_with_fallback(None, MEETING, candidates) == (candidates, False)

    def test_validation_lifts_a_weak_candidate(self):
        result = _detector(FakeLLM(['[{"name": "Ravi", "is_person": true, "score": 9}]'])).detect(LONE_NAME)

        [ravi] = result.detected_people
        assert result.fallback_used is False
        assert ravi.validation_score == 0.9
        assert ravi.confidence == pytest.approx(0.67)

    def test_validation_can_reject(self):
        result = _detector(FakeLLM(['[{"name": "Sarah", "is_person": false, "score": 2}]'])).detect(MEETING)

        assert result.detected_people == []
        assert result.fallback_used is False

    def test_timeout_falls_back_to_pattern_result(self):
        result = _detector(FakeLLM(['[{"name": "Sarah", "is_person": false, "score": 1}]'], delay=1.0),
                           timeout=0.05).detect(MEETING)

        assert result.fallback_used is True
        assert [c.name for c in result.detected_people] == ['Sarah']
        assert result.detected_people[0].confidence == pytest.approx(0.8)

    @pytest.mark.parametrize('llm', [FakeLLM(error='ThrottlingException'), FakeLLM(['{"people": "Sarah"}'])])
    def test_service_errors_fall_back(self, llm):
        result = _detector(llm).detect(MEETING)

        assert result.fallback_used is True
        assert [c.name for c in result.detected_people] == ['Sarah']

    def test_no_candidates_means_no_validation_call(self):
        llm = FakeLLM()

        result = _detector(llm).detect('She said they would handle it with him later.')

        assert result.detected_people == []
        assert result.fallback_used is False
        assert llm.calls == []
