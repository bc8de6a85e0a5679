import logging
import threading
import time
import uuid
import datetime
from typing import Callable, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from errors import BuilderError, NotFoundError, ValidationFailure
from helpers import slug_for_filename, utcnow
from storage import CONVERSATIONS_KEY, LocalStorage

logger = logging.getLogger('chat-manager')

DEFAULT_TITLE = 'New Website Project'
MAX_CONVERSATIONS = 100
MAX_PROMPT_CHARS = 20000
TITLE_WORDS = 6
TITLE_ELLIPSIS_AFTER = 30

ERROR_MESSAGE_PREFIX = 'Sorry, I encountered an error while generating your website. '
ERROR_MESSAGE_HINTS = {
    'credential_missing': 'There seems to be an issue with the API key. Please try again or contact support.',
    'credential_invalid': 'There seems to be an issue with the API key. Please try again or contact support.',
    'quota_exceeded': 'API quota exceeded. Please try again in a few minutes.',
    'network_failure': 'Network connection issue. Please check your internet and try again.',
}
ERROR_MESSAGE_DEFAULT = 'Please refresh the page and try again.'


class Message(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sender: Literal['user', 'assistant']
    content: str
    is_code: bool = Field(default=False, validation_alias=AliasChoices('is_code', 'isCode'))
    timestamp: datetime.datetime = Field(default_factory=utcnow)

    @field_validator('id', mode='before')
    @classmethod
    def _id_as_str(cls, value):
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator('sender', mode='before')
    @classmethod
    def _normalize_sender(cls, value):
        # older exports call the assistant 'ai'
        return 'assistant' if value == 'ai' else value


class Conversation(BaseModel):
    id: int
    title: str = DEFAULT_TITLE
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime.datetime = Field(default_factory=utcnow)


def generate_title(message: str) -> str:
    """First six words of the message, with '...' when the message is longer than 30 chars."""
    title = ' '.join(message.split(' ')[:TITLE_WORDS])
    if len(message) > TITLE_ELLIPSIS_AFTER:
        title += '...'
    return title or DEFAULT_TITLE


class ConversationStore:
    """Ordered (newest first) list of conversations with exactly one current.

    Every mutation rewrites the whole list to storage and notifies listeners with
    an event name, which is what the UI layer re-renders from.
    """

    def __init__(self, storage: LocalStorage, max_conversations: int = MAX_CONVERSATIONS):
        self.storage = storage
        self.max_conversations = max_conversations
        self.conversations: List[Conversation] = self._load()
        self.current_id: Optional[int] = None
        self._listeners: List[Callable[[str, 'ConversationStore'], None]] = []
        self._last_id = max((c.id for c in self.conversations), default=0)

        if self.conversations:
            self.current_id = self.conversations[0].id
        else:
            self.create_conversation()

    def _load(self) -> List[Conversation]:
        raw = self.storage.get(CONVERSATIONS_KEY, [])
        conversations = []
        for item in raw if isinstance(raw, list) else []:
            try:
                conversations.append(Conversation.model_validate(item))
            except ValueError:
                logger.exception('Skipping unreadable conversation record')
        return conversations

    def reload(self) -> None:
        """Re-read the list from storage after it was replaced underneath (restore, clear)."""
        self.conversations = self._load()
        self._last_id = max([self._last_id] + [c.id for c in self.conversations])
        if self.conversations:
            self.current_id = self.conversations[0].id
            self._notify('reloaded')
        else:
            self.current_id = None
            self.create_conversation()

    def save(self) -> None:
        self.storage.set(CONVERSATIONS_KEY, [c.model_dump(mode='json') for c in self.conversations])

    def subscribe(self, listener: Callable[[str, 'ConversationStore'], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, event: str) -> None:
        for listener in self._listeners:
            listener(event, self)

    def _next_id(self) -> int:
        # creation timestamp in ms, bumped when two conversations land in the same ms
        self._last_id = max(int(time.time() * 1000), self._last_id + 1)
        return self._last_id

    def get(self, conversation_id: int) -> Optional[Conversation]:
        for c in self.conversations:
            if c.id == conversation_id:
                return c
        return None

    def require(self, conversation_id: int) -> Conversation:
        conversation = self.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f'Conversation {conversation_id} not found')
        return conversation

    def current(self) -> Optional[Conversation]:
        return self.get(self.current_id) if self.current_id is not None else None

    def create_conversation(self, title: str = DEFAULT_TITLE) -> Conversation:
        conversation = Conversation(id=self._next_id(), title=title)
        self.conversations.insert(0, conversation)
        del self.conversations[self.max_conversations:]
        self.current_id = conversation.id
        self.save()
        logger.info('Created conversation %s', conversation.id)
        self._notify('created')
        return conversation

    def switch_conversation(self, conversation_id: int) -> bool:
        if self.get(conversation_id) is None:
            return False
        self.current_id = conversation_id
        self._notify('switched')
        return True

    def delete_conversation(self, conversation_id: int) -> bool:
        before = len(self.conversations)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if len(self.conversations) == before:
            return False

        if self.current_id == conversation_id:
            if self.conversations:
                self.current_id = self.conversations[0].id
            else:
                self.current_id = None
                self.create_conversation()
        self.save()
        logger.info('Deleted conversation %s', conversation_id)
        self._notify('deleted')
        return True

    def clear_all(self) -> Conversation:
        self.conversations = []
        self.current_id = None
        self.save()
        return self.create_conversation()

    def rename_conversation(self, conversation_id: int, title: str) -> Conversation:
        title = (title or '').strip()
        if not title:
            raise ValidationFailure('Title must not be empty')
        conversation = self.require(conversation_id)
        conversation.title = title
        self.save()
        self._notify('renamed')
        return conversation

    def append_message(self, conversation_id: int, sender: str, content: str, is_code: bool = False) -> Message:
        conversation = self.require(conversation_id)
        message = Message(sender=sender, content=content, is_code=is_code)
        conversation.messages.append(message)
        if sender == 'user' and conversation.title == DEFAULT_TITLE \
                and sum(1 for m in conversation.messages if m.sender == 'user') == 1:
            conversation.title = generate_title(content)
        self.save()
        self._notify('message')
        return message

    def export_conversation(self, conversation_id: int) -> Dict:
        conversation = self.require(conversation_id)
        return {
            'filename': f'conversation-{slug_for_filename(conversation.title)}.json',
            'data': {
                'title': conversation.title,
                'messages': [m.model_dump(mode='json') for m in conversation.messages],
                'createdAt': conversation.created_at.isoformat(),
                'exportedAt': utcnow().isoformat(),
            },
        }

    def import_conversation(self, data: Dict) -> Conversation:
        if not isinstance(data, dict):
            raise ValidationFailure('Error importing conversation')
        created_at = data.get('createdAt') or data.get('created_at')
        try:
            conversation = Conversation(
                id=self._next_id(),
                title=data.get('title') or 'Imported Conversation',
                messages=[Message.model_validate(m) for m in data.get('messages') or []],
                created_at=created_at or utcnow(),
            )
        except ValueError as e:
            raise ValidationFailure(f'Error importing conversation: {e}') from e
        self.conversations.insert(0, conversation)
        del self.conversations[self.max_conversations:]
        self.save()
        self._notify('imported')
        return conversation

    def export_history(self) -> Dict:
        return {
            'conversations': [c.model_dump(mode='json') for c in self.conversations],
            'exportedAt': utcnow().isoformat(),
            'totalConversations': len(self.conversations),
            'generator': 'AI Website Builder',
        }


class ChatSession:
    """Send loop for the chat UI.

    `is_generating` is advisory: a second send while it is set is dropped, not queued.
    """

    def __init__(self, store: ConversationStore, ai_client):
        self.store = store
        self.ai = ai_client
        self.is_generating = False
        self.current_code: Optional[str] = None
        self._flag_lock = threading.Lock()

    def _claim(self) -> bool:
        with self._flag_lock:
            if self.is_generating:
                return False
            self.is_generating = True
            return True

    def send_message(self, text: str, conversation_id: Optional[int] = None) -> Optional[Dict]:
        """Generate a site for `text` in `conversation_id` (default: the current one).

        Returns None, touching nothing, while another generation is running.
        """
        text = (text or '').strip()
        if not text:
            raise ValidationFailure('Message must not be empty')
        if len(text) > MAX_PROMPT_CHARS:
            raise ValidationFailure(f'Message is too long (max {MAX_PROMPT_CHARS} characters)')
        if not self._claim():
            logger.info('Generation already in progress; ignoring send')
            return None

        try:
            if conversation_id is not None and conversation_id != self.store.current_id:
                if not self.store.switch_conversation(conversation_id):
                    raise NotFoundError(f'Conversation {conversation_id} not found')
            conversation = self.store.current() or self.store.create_conversation()
            user_message = self.store.append_message(conversation.id, 'user', text)
            try:
                code = self.ai.generate_website_code(text)
            except BuilderError as e:
                logger.error('Error generating response: %s', e.message)
                reply = ERROR_MESSAGE_PREFIX + ERROR_MESSAGE_HINTS.get(e.kind, ERROR_MESSAGE_DEFAULT)
                assistant = self.store.append_message(conversation.id, 'assistant', reply)
                return {'ok': False, 'conversation_id': conversation.id, 'user_message': user_message,
                        'reply': assistant, 'error': e}

            self.current_code = code
            assistant = self.store.append_message(conversation.id, 'assistant', code, is_code=True)
            return {'ok': True, 'conversation_id': conversation.id, 'user_message': user_message,
                    'reply': assistant, 'error': None}
        finally:
            self.is_generating = False
