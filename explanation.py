import logging
import math
import re
import time
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ai_client import EXPLANATION_TYPES
from errors import NotFoundError, ValidationFailure
from helpers import utcnow
from storage import EXPLANATIONS_KEY, LocalStorage, insert_capped

logger = logging.getLogger('explanations')

MAX_SAVED_EXPLANATIONS = 20
MIN_CODE_CHARS = 10
MAX_CODE_CHARS = 100000
WORDS_PER_MINUTE = 200

TYPE_DESCRIPTIONS = {
    'overview': 'Get a high-level overview of what the code does and its main features',
    'breakdown': 'Get a detailed breakdown of how each part of the code works',
    'concepts': 'Learn about the programming concepts and techniques used',
    'practices': 'Understand the best practices and coding standards followed',
}

_TAG_RE = re.compile(r'<[^>]+>')


class SavedExplanation(BaseModel):
    id: int
    type: str
    content: str
    code: Optional[str] = None
    saved_at: str = Field(default_factory=lambda: utcnow().isoformat())


def validate_code(code) -> None:
    if not code or not isinstance(code, str):
        raise ValidationFailure('No code provided for explanation')
    if len(code) < MIN_CODE_CHARS:
        raise ValidationFailure('Code too short for meaningful explanation')
    if len(code) > MAX_CODE_CHARS:
        raise ValidationFailure('Code too large for explanation (max 100KB)')


def explanation_stats(markup: str, explanation_type: str = None) -> Dict:
    text = _TAG_RE.sub(' ', markup or '')
    words = len(text.split())
    return {
        'words': words,
        'characters': len(text.strip()),
        'paragraphs': len(re.findall(r'<p>', markup or '')),
        'headers': len(re.findall(r'<h[345]>', markup or '')),
        'lists': len(re.findall(r'<[uo]l>', markup or '')),
        'type': explanation_type,
        'reading_time': math.ceil(words / WORDS_PER_MINUTE),
    }


class ExplanationService:
    def __init__(self, ai_client, storage: LocalStorage):
        self.ai = ai_client
        self.storage = storage
        self._last_id = 0

    def explain(self, code: str, explanation_type: str = 'overview') -> Dict:
        validate_code(code)
        if explanation_type not in EXPLANATION_TYPES:
            raise ValidationFailure(f'Unknown explanation type: {explanation_type}')
        markup = self.ai.generate_code_explanation(code, explanation_type)
        return {
            'type': explanation_type,
            'description': TYPE_DESCRIPTIONS[explanation_type],
            'html': markup,
            'stats': explanation_stats(markup, explanation_type),
        }

    def list_saved(self) -> List[SavedExplanation]:
        raw = self.storage.get(EXPLANATIONS_KEY, [])
        saved = []
        for item in raw if isinstance(raw, list) else []:
            try:
                saved.append(SavedExplanation.model_validate(item))
            except ValueError:
                logger.exception('Skipping unreadable saved explanation')
        return saved

    def _write(self, items: List[SavedExplanation]) -> None:
        self.storage.set(EXPLANATIONS_KEY, [e.model_dump(mode='json') for e in items])

    def save(self, explanation_type: str, content: str, code: Optional[str] = None) -> SavedExplanation:
        if not (content or '').strip():
            raise ValidationFailure('Nothing to save')
        self._last_id = max(int(time.time() * 1000), self._last_id + 1)
        entry = SavedExplanation(id=self._last_id, type=explanation_type, content=content, code=code)
        self._write(insert_capped(self.list_saved(), entry, MAX_SAVED_EXPLANATIONS))
        logger.info('Saved %s explanation %s', explanation_type, entry.id)
        return entry

    def delete_saved(self, explanation_id: int) -> None:
        items = self.list_saved()
        kept = [e for e in items if e.id != explanation_id]
        if len(kept) == len(items):
            raise NotFoundError(f'Explanation {explanation_id} not found')
        self._write(kept)

    def clear_saved(self) -> None:
        self.storage.remove(EXPLANATIONS_KEY)
