"""
Person-Mention Detection: finds names of people not yet known to the owner in a free-text message.

Pipeline per call: extract -> score -> filter -> validate (optional) -> deduplicate.
Extraction is driven by a table of contextual rules; the pipeline never writes anywhere.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.core import DetectedCandidate, DetectionResult
from ..utils.config import DetectionConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import STOPWORDS, fold_diacritics
from .mention_validation import MentionValidator, validate_with_fallback

logger = get_logger(__name__)

_TOKEN = r"[^\W\d_][\w'’-]{1,29}"
NAME = rf"(?P<name>{_TOKEN}(?:[ \t]+{_TOKEN})?)"
SINGLE_NAME = rf"(?P<name>{_TOKEN})"

ROLE_TERMS = ('manager', 'boss', 'supervisor', 'director', 'lead', 'engineer', 'developer', 'designer', 'architect',
              'analyst', 'recruiter', 'consultant', 'coordinator', 'executive', 'founder', 'ceo', 'cto', 'cfo', 'coo',
              'vp', 'head', 'intern', 'mentor', 'colleague', 'teammate', 'peer', 'report', 'stakeholder', 'client',
              'scientist', 'researcher', 'pm', 'owner', 'specialist', 'officer', 'partner')
_ROLE = r'(?:[\w-]+\s+){0,2}(?:' + '|'.join(ROLE_TERMS) + r')s?\b'

COLLABORATION_TERMS = ('meet', 'meeting', 'met', 'discuss', 'talk', 'spoke', 'call', 'email', 'collaborat', 'work',
                       'team', 'colleague', 'report', 'manage', 'sync', 'review', 'feedback', 'mentor', 'pair')

CALENDAR_TERMS = frozenset({
    'monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday', 'january', 'february', 'march',
    'april', 'may', 'june', 'july', 'august', 'september', 'october', 'november', 'december', 'today', 'tomorrow',
    'yesterday', 'tonight', 'morning', 'afternoon', 'evening', 'week', 'weekend', 'month', 'year', 'quarter', 'q1',
    'q2', 'q3', 'q4', 'christmas', 'easter', 'thanksgiving'
})

ORGANIZATION_TERMS = frozenset({
    'google', 'microsoft', 'apple', 'amazon', 'facebook', 'meta', 'twitter', 'slack', 'zoom', 'teams', 'office',
    'excel', 'word', 'powerpoint', 'outlook', 'gmail', 'jira', 'confluence', 'notion', 'salesforce', 'github',
    'gitlab', 'linkedin', 'aws', 'azure', 'figma', 'asana', 'trello', 'openai', 'netflix', 'uber', 'ibm', 'oracle',
    'sap', 'whatsapp', 'youtube', 'instagram'
})
ORGANIZATION_SUFFIXES = frozenset({'inc', 'corp', 'corporation', 'llc', 'ltd', 'gmbh', 'co', 'plc', 'group', 'labs',
                                   'technologies', 'systems', 'solutions', 'company'})

PRONOUNS = frozenset({
    'i', 'me', 'my', 'mine', 'myself', 'we', 'us', 'our', 'ours', 'ourselves', 'you', 'your', 'yours', 'yourself',
    'yourselves', 'he', 'him', 'his', 'himself', 'she', 'her', 'hers', 'herself', 'they', 'them', 'their', 'theirs',
    'themselves', 'themself', 'it', 'its', 'itself', 'someone', 'somebody', 'everyone', 'everybody', 'anyone',
    'anybody', 'nobody', 'everything', 'something', 'nothing'
})

COMMON_WORDS = frozenset({
    'project', 'team', 'company', 'meeting', 'email', 'call', 'work', 'task', 'goal', 'plan', 'issue', 'problem',
    'time', 'help', 'support', 'update', 'review', 'system', 'process', 'data', 'report', 'document', 'file',
    'folder', 'manager', 'boss', 'client', 'customer', 'product', 'design', 'engineering', 'marketing', 'sales',
    'finance', 'legal', 'hr', 'leadership', 'management', 'everybody', 'people', 'folks', 'guys', 'mom', 'dad',
    'hi', 'hello', 'hey', 'thanks', 'sorry', 'please', 'yes', 'no', 'ok', 'okay', 'great', 'good', 'bad', 'also',
    'then', 'but', 'and', 'or', 'so', 'because', 'after', 'before', 'during', 'about', 'from', 'there', 'here',
    'which', 'what', 'who', 'whom', 'how', 'why', 'when', 'where', 'all', 'both', 'each', 'other', 'another',
    'new', 'old', 'last', 'next', 'first', 'later', 'sprint', 'roadmap', 'deadline', 'budget', 'launch',
    # Words that are also names
    'will', 'may', 'rose', 'grace', 'hope', 'faith', 'joy', 'love', 'peace', 'sage', 'summer', 'winter', 'autumn',
    'spring', 'bill', 'mark', 'pat', 'art', 'frank', 'sunny', 'iris', 'ivy', 'dawn'
}) | STOPWORDS

BLOCKED_TERMS = COMMON_WORDS | CALENDAR_TERMS | ORGANIZATION_TERMS | PRONOUNS

# A word directly before a bare capitalized word that marks a place, organization or tool.
ORGANIZATION_CUE_RE = re.compile(r'\b(?:at|for|in|into|on|via|using|use|uses|join|joined|joining|acquired)\s*$',
                                 re.IGNORECASE)
ROLE_NEARBY_RE = re.compile(r'\b' + _ROLE, re.IGNORECASE)
SENTENCE_RE = re.compile(r'[^.!?\n]+[.!?]*')

# Room around a span searched for secondary signals.
SIGNAL_WINDOW = 40
MAX_SNIPPET = 160

ROLE_BONUS = 0.1
COLLABORATION_BONUS = 0.05
MID_SENTENCE_BONUS = 0.05


@dataclass(frozen=True)
class ExtractionRule:
    """One row of the extraction table."""
    name: str
    pattern: 're.Pattern'
    weight: float
    context_requirement: Optional[str] = None  # key of CONTEXT_REQUIREMENTS
    relationship_hint: Optional[str] = None


def _rule(name: str, regex: str, weight: float, context_requirement: Optional[str] = None,
          relationship_hint: Optional[str] = None) -> ExtractionRule:
    return ExtractionRule(name, re.compile(regex, re.IGNORECASE | re.UNICODE), weight, context_requirement,
                          relationship_hint)


EXTRACTION_RULES: Tuple[ExtractionRule, ...] = (
    _rule('collaboration_cue',
          r'\b(?:work(?:s|ed|ing)?|collaborat(?:e|es|ed|ing)|partner(?:s|ed|ing)?|team(?:ed)? up|pair(?:ed|ing)?)\s+with\s+'
          + NAME, 0.7, relationship_hint='peer'),
    _rule('manager_cue',
          r'\b(?:my|our)\s+(?:manager|boss|supervisor|skip[- ]level)\s*,?\s+' + NAME, 0.8, relationship_hint='manager'),
    _rule('reports_to_cue', r'\b(?:reports?|reporting)\s+to\s+' + NAME, 0.8, relationship_hint='manager'),
    _rule('managed_by_cue', r'\b(?:led|managed|supervised)\s+by\s+' + NAME, 0.8, relationship_hint='manager'),
    _rule('direct_report_cue',
          r'\b(?:I\s+manage|I\s+mentor|managing|mentoring|my\s+(?:team\s+member|direct\s+report|report|mentee))\s*,?\s+'
          + NAME, 0.8, relationship_hint='direct_report'),
    _rule('reports_to_me_cue',
          r'(?<![\w\'’-])' + NAME + r'\s+(?:reports?|is\s+reporting)\s+(?:directly\s+)?to\s+(?:me|us)\b', 0.8,
          relationship_hint='direct_report'),
    _rule('role_parenthetical', NAME + r'\s*\((?P<role>[^)]{2,40})\)', 0.85),
    _rule('role_apposition', NAME + r',?\s+(?:is|was|who\s+is|works\s+as)\s+(?:our|my|the|a|an)\s+(?P<role>' + _ROLE + r')',
          0.9),
    _rule('role_prefix', r'\b(?:my|our)\s+(?:new\s+)?(?P<role>' + _ROLE + r')\s*,?\s+' + NAME, 0.75,
          context_requirement='not_followed_by_role'),
    _rule('name_and_me', SINGLE_NAME + r'\s+and\s+(?:I|me|myself)\b', 0.6, relationship_hint='peer'),
    _rule('meeting_cue',
          r'\b(?:meeting|met|meet|sync(?:ed)?|1:1|one-on-one|catch[- ]up|caught\s+up|call)\s+with\s+' + NAME, 0.7,
          relationship_hint='stakeholder'),
    _rule('conversation_cue',
          r'\b(?:talk(?:ed|ing)?|spoke|speaking|chat(?:ted)?|discussed)\s+(?:to|with)\s+' + NAME, 0.7,
          relationship_hint='stakeholder'),
    _rule('discussed_topic_with', r'\bdiscussed\s+(?:the\s+)?[\w ]{1,40}?\s+with\s+' + NAME, 0.7,
          relationship_hint='stakeholder'),
    _rule('contact_cue', r'\b(?:called|emailed|messaged|pinged|texted|heard\s+from|email\s+(?:from|to))\s+' + NAME, 0.7,
          relationship_hint='stakeholder'),
    _rule('hyphenated_subject',
          r"\b(?P<name>[^\W\d_]+-[^\W\d_]+)\s+(?=(?:is|was|will|would|can|could|should|might|leads?|works?|manages?)\b)",
          0.8, context_requirement='capitalized'),
    _rule('possessive', SINGLE_NAME + r"['’]s\s+(?:idea|proposal|team|feedback|project|work|presentation|plan|code|"
          r'review|suggestion|decision|approach|style)\b', 0.65),
    # Zero-width so that every word start is tried, not only every other word.
    _rule('proper_noun', r'(?<![\w\'’-])(?=' + NAME + ')', 0.35, context_requirement='mid_sentence'),
)


def _sentence_bounds(text: str, position: int) -> Tuple[int, int]:
    for match in SENTENCE_RE.finditer(text):
        if match.start() <= position < match.end():
            return match.start(), match.end()
    return 0, len(text)


def _sentence_start(text: str, position: int) -> int:
    return _sentence_bounds(text, position)[0]


def _mid_sentence(text: str, match: 're.Match') -> bool:
    return bool(text[_sentence_start(text, match.start('name')):match.start('name')].strip())


def _capitalized(text: str, match: 're.Match') -> bool:
    return all(part[:1].isupper() for part in match.group('name').split('-') if part)


def _not_followed_by_role(text: str, match: 're.Match') -> bool:
    # "my manager Sarah" is covered by manager_cue; avoid double-reading the role word as a name.
    return match.group('name').split()[0].casefold() not in ROLE_TERMS


CONTEXT_REQUIREMENTS: Dict[str, Callable[[str, 're.Match'], bool]] = {
    'mid_sentence': _mid_sentence,
    'capitalized': _capitalized,
    'not_followed_by_role': _not_followed_by_role,
}


def capitalize_name(name: str) -> str:
    """Display form of a name: each space- or hyphen-separated part starts uppercase."""
    parts = re.split(r'([\s-])', name.strip())
    return ''.join(part if part in (' ', '-') or not part else part[:1].upper() + part[1:] for part in parts)


def strip_possessive(name: str) -> str:
    return re.sub(r"['’]s?$", '', name)


def name_key(name: str, fuzzy: bool = True) -> str:
    """Comparison key: case-insensitive, and with ``fuzzy`` also diacritic- and punctuation-insensitive."""
    key = name.casefold().strip()
    if fuzzy:
        key = fold_diacritics(key)
        key = re.sub(r"[\s'’.\-]+", ' ', key).strip()
    return key


def _is_all_caps(token: str) -> bool:
    return token == token.upper() and token != token.lower()


def _plausible_token(token: str) -> bool:
    if len(token) < 2 or any(ch.isdigit() for ch in token) or _is_all_caps(token):
        return False
    if not token[:1].isupper():
        return False
    return name_key(token, fuzzy=True) not in BLOCKED_TERMS and token.casefold() not in BLOCKED_TERMS


class PersonDetector:
    """Detects candidate new people in a message."""

    def __init__(self,
                 validator: Optional[MentionValidator] = None,
                 detection_config: Optional[DetectionConfig] = None,
                 rules: Sequence[ExtractionRule] = EXTRACTION_RULES):
        """Initialize the detector.

        Args:
            validator: Optional validation stage; without one, detection is pattern-only
            detection_config: Threshold and dedup settings
            rules: Extraction rule table
        """
        self.validator = validator
        self.config = detection_config or config.detection
        self.rules = tuple(rules)

    def detect(self, message: str, existing_names: Optional[Iterable[str]] = None) -> DetectionResult:
        """Run the full pipeline over one message.

        Args:
            message: Free text from the user
            existing_names: Names of people the owner already has

        Returns:
            DetectionResult with candidates at or above the acceptance threshold, most
            confident first, and whether validation fell back to the pattern result
        """
        if not isinstance(message, str) or not message.strip():
            return DetectionResult(detected_people=[], fallback_used=False)

        candidates = self.extract(message)
        candidates = self.filter(candidates, existing_names or [])
        candidates, fallback_used = validate_with_fallback(self.validator, message, candidates)
        candidates = self.deduplicate(candidates)

        accepted = [c for c in candidates if c.confidence >= self.config.acceptance_threshold]
        accepted.sort(key=lambda c: (-c.confidence, c.name))
        logger.debug(f'Detected {len(accepted)} new people ({len(candidates)} candidates, fallback={fallback_used})')
        return DetectionResult(detected_people=accepted, fallback_used=fallback_used)

    def extract(self, message: str) -> List[DetectedCandidate]:
        """Apply every rule and score each span it yields."""
        candidates = []
        for rule in self.rules:
            requirement = CONTEXT_REQUIREMENTS.get(rule.context_requirement) if rule.context_requirement else None
            for match in rule.pattern.finditer(message):
                if requirement is not None and not requirement(message, match):
                    continue
                name = self._clean_span(match.group('name'))
                if not name:
                    continue
                role = match.groupdict().get('role')
                candidates.append(DetectedCandidate(name=name,
                                                    confidence=self.score(rule, message, match, role),
                                                    context_snippet=self._snippet(message, match),
                                                    role=role.strip() if role else None,
                                                    relationship_hint=rule.relationship_hint,
                                                    rule=rule.name))
        return candidates

    def score(self, rule: ExtractionRule, message: str, match: 're.Match', role: Optional[str] = None) -> float:
        """Rule weight plus secondary signals around the span, clamped to [0, 1]."""
        start, end = match.start('name'), match.end('name')
        before = message[max(0, start - SIGNAL_WINDOW):start]
        after = message[end:end + SIGNAL_WINDOW]
        sentence_start, sentence_end = _sentence_bounds(message, start)
        sentence = message[sentence_start:sentence_end].casefold()

        confidence = rule.weight
        if role or ROLE_NEARBY_RE.search(before) or ROLE_NEARBY_RE.search(after):
            confidence += ROLE_BONUS
        if any(term in sentence for term in COLLABORATION_TERMS):
            confidence += COLLABORATION_BONUS
        if message[sentence_start:start].strip():
            confidence += MID_SENTENCE_BONUS
        return round(min(1.0, max(0.0, confidence)), 4)

    def filter(self, candidates: List[DetectedCandidate], existing_names: Iterable[str]) -> List[DetectedCandidate]:
        """Drop blocked words, organizations, pronouns and names the owner already has."""
        fuzzy = self.config.fuzzy_dedup
        existing = set()
        for existing_name in existing_names:
            if not existing_name or not existing_name.strip():
                continue
            existing.add(name_key(existing_name, fuzzy))
            parts = existing_name.split()
            if len(parts) > 1:
                existing.add(name_key(parts[0], fuzzy))

        kept = []
        for candidate in candidates:
            key = name_key(candidate.name, fuzzy)
            if key in existing or key in BLOCKED_TERMS:
                continue
            if candidate.rule == 'proper_noun' and self._organization_context(candidate):
                continue
            kept.append(candidate)
        return kept

    def deduplicate(self, candidates: List[DetectedCandidate]) -> List[DetectedCandidate]:
        """Merge candidates naming the same person, keeping the most confident one."""
        merged: Dict[str, DetectedCandidate] = {}
        order: List[str] = []
        for candidate in candidates:
            key = name_key(candidate.name, self.config.fuzzy_dedup)
            current = merged.get(key)
            if current is None:
                merged[key] = DetectedCandidate(**vars(candidate))
                order.append(key)
                continue

            best, other = (candidate, current) if candidate.confidence > current.confidence else (current, candidate)
            snippets = []
            for snippet in best.context_snippet.split(' | ') + other.context_snippet.split(' | '):
                if snippet and snippet not in snippets:
                    snippets.append(snippet)
            scores = [s for s in (best.validation_score, other.validation_score) if s is not None]
            merged[key] = DetectedCandidate(name=best.name,
                                            confidence=best.confidence,
                                            context_snippet=' | '.join(snippets),
                                            validation_score=max(scores) if scores else None,
                                            role=best.role or other.role,
                                            relationship_hint=best.relationship_hint or other.relationship_hint,
                                            rule=best.rule)
        return [merged[key] for key in order]

    @staticmethod
    def _clean_span(span: str) -> Optional[str]:
        """Strip possessives, trim trailing non-name words and reject implausible spans."""
        tokens = [strip_possessive(token) for token in span.split()]
        # A capitalized non-name opening the span ("Then Priya is...") is dropped rather than sinking it.
        if len(tokens) > 1 and tokens[0][:1].isupper() and not _plausible_token(tokens[0]):
            tokens.pop(0)
        if not tokens or not _plausible_token(tokens[0]):
            return None
        name_tokens = [tokens[0]]
        if len(tokens) > 1 and _plausible_token(tokens[1]):
            name_tokens.append(tokens[1])
        name = capitalize_name(' '.join(name_tokens))
        if not 2 <= len(name) <= 30:
            return None
        if name.split()[-1].casefold() in ORGANIZATION_SUFFIXES:
            return None
        return name

    @staticmethod
    def _organization_context(candidate: DetectedCandidate) -> bool:
        snippet = candidate.context_snippet
        index = snippet.find(candidate.name)
        return index > 0 and bool(ORGANIZATION_CUE_RE.search(snippet[:index]))

    @staticmethod
    def _snippet(message: str, match: 're.Match') -> str:
        sentence_start, sentence_end = _sentence_bounds(message, match.start('name'))
        sentence_end = max(sentence_end, match.end('name'))
        return message[sentence_start:sentence_end].strip()[:MAX_SNIPPET]
