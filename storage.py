import json
import logging
import os
import re
import tempfile
import threading
from typing import Any, Dict, List, Optional

from errors import CredentialMissingError, ValidationFailure
from helpers import utcnow

logger = logging.getLogger('storage')

CONVERSATIONS_KEY = 'ai_website_conversations'
DEPLOYMENTS_KEY = 'ai_website_deployments'
EXPLANATIONS_KEY = 'ai_website_explanations'
TOKENS_KEY = 'deployment_tokens'

BACKUP_VERSION = '1.0.0'
BACKUP_SECTIONS = {
    'conversations': CONVERSATIONS_KEY,
    'deployments': DEPLOYMENTS_KEY,
    'explanations': EXPLANATIONS_KEY,
}

_KEY_RE = re.compile(r'^[A-Za-z0-9_.-]+$')


def insert_capped(items: List[Any], item: Any, cap: int) -> List[Any]:
    """Insert newest-first and drop anything beyond `cap` from the tail."""
    items.insert(0, item)
    if len(items) > cap:
        del items[cap:]
    return items


class LocalStorage:
    """Key -> JSON document store backed by one file per key.

    Every write replaces the whole document atomically, so a failed write leaves the
    previous state on disk.
    """

    def __init__(self, root: str):
        self.root = root
        self._lock = threading.Lock()

    def _path(self, key: str) -> str:
        if not _KEY_RE.match(key):
            raise ValueError(f'invalid storage key: {key!r}')
        return os.path.join(self.root, f'{key}.json')

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not os.path.exists(path):
            return default
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError):
            logger.exception('Failed to load %s; treating as empty', key)
            return default

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        with self._lock:
            os.makedirs(self.root, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f'.{key}.', suffix='.tmp', dir=self.root)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(value, f, ensure_ascii=False, indent=2)
                os.replace(tmp, path)
            except Exception:
                logger.exception('Failed to persist %s', key)
                if os.path.exists(tmp):
                    os.remove(tmp)
                raise

    def remove(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            if os.path.exists(path):
                os.remove(path)


class CredentialStore:
    """Provider tokens seeded from the environment, overridden by tokens saved here.

    Only saved tokens are written to local storage. Raw tokens never leave this
    class: callers ask for a ready-made auth header.
    """

    def __init__(self, storage: LocalStorage, seed: Optional[Dict[str, str]] = None):
        self._storage = storage
        self._seeded = {k: v for k, v in (seed or {}).items() if v}
        self._saved: Dict[str, str] = {}
        saved = storage.get(TOKENS_KEY, {})
        if isinstance(saved, dict):
            self._saved = {k: v for k, v in saved.items() if isinstance(v, str) and v}
            if self._saved:
                logger.info('Loaded saved tokens for: %s', ', '.join(sorted(self._saved)))

    def _token(self, provider: str) -> Optional[str]:
        return self._saved.get(provider) or self._seeded.get(provider)

    def has_token(self, provider: str) -> bool:
        return bool(self._token(provider))

    def status(self) -> Dict[str, bool]:
        return {provider: True for provider in sorted(set(self._seeded) | set(self._saved))}

    def is_seeded(self, provider: str) -> bool:
        return provider in self._seeded

    def set_token(self, provider: str, token: str) -> None:
        token = (token or '').strip()
        if not token:
            raise ValidationFailure(f'Empty token for {provider}')
        self._saved[provider] = token
        self._persist()

    def save_tokens(self, tokens: Dict[str, Optional[str]]) -> List[str]:
        """Save every non-blank token in `tokens`; blank fields are ignored."""
        saved = []
        for provider, token in tokens.items():
            token = (token or '').strip()
            if token:
                self._saved[provider] = token
                saved.append(provider)
        if saved:
            self._persist()
        return saved

    def remove_token(self, provider: str) -> bool:
        """Drop the saved token for `provider`.

        An environment token for the same provider comes back into effect; it can
        only be removed by unsetting the variable.
        """
        if self._saved.pop(provider, None) is None:
            if provider in self._seeded:
                raise ValidationFailure(
                    f'The {provider} token comes from the environment and cannot be removed here', provider=provider)
            return False
        self._persist()
        return True

    def auth_header(self, provider: str, scheme: str = 'Bearer') -> Dict[str, str]:
        token = self._token(provider)
        if not token:
            raise CredentialMissingError(f'No token stored for {provider}', provider=provider)
        return {'Authorization': f'{scheme} {token}'}

    def _persist(self) -> None:
        self._storage.set(TOKENS_KEY, dict(self._saved))


def create_backup(storage: LocalStorage) -> Dict[str, Any]:
    """Snapshot of every user document except credentials."""
    backup: Dict[str, Any] = {name: storage.get(key, []) for name, key in BACKUP_SECTIONS.items()}
    backup['backupDate'] = utcnow().isoformat()
    backup['version'] = BACKUP_VERSION
    return backup


def restore_backup(storage: LocalStorage, data: Any) -> List[str]:
    """Write back each section present in a backup; returns the restored section names."""
    if not isinstance(data, dict) or not data.get('version') or not data.get('backupDate'):
        raise ValidationFailure('Invalid backup file format')
    sections = {name: data[name] for name in BACKUP_SECTIONS if data.get(name) is not None}
    for name, value in sections.items():
        if not isinstance(value, list):
            raise ValidationFailure(f'Invalid backup file format: {name} must be a list')
    for name, value in sections.items():
        storage.set(BACKUP_SECTIONS[name], value)
    logger.info('Restored backup from %s (%s)', data['backupDate'], ', '.join(sections) or 'nothing')
    return list(sections)


def clear_data(storage: LocalStorage) -> None:
    for key in BACKUP_SECTIONS.values():
        storage.remove(key)
    logger.info('Cleared all stored conversations, deployments and explanations')
