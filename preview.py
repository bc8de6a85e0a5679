import html
import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional

from errors import NotFoundError, ValidationFailure

logger = logging.getLogger('preview')

VIEWPORTS = {
    'desktop': {'name': 'Desktop', 'width': 1200, 'height': 800},
    'tablet': {'name': 'Tablet', 'width': 768, 'height': 1024},
    'mobile': {'name': 'Mobile', 'width': 375, 'height': 667},
}
DEFAULT_VIEWPORT = 'desktop'

FRAME_REVOKE_AFTER = 1.0
NEW_CONTEXT_REVOKE_AFTER = 5.0


def get_viewport(size: Optional[str]) -> dict:
    key = size if size in VIEWPORTS else DEFAULT_VIEWPORT
    return dict(VIEWPORTS[key], size=key)


class _Handle:
    __slots__ = ('content', 'revoke_after', 'loaded_at')

    def __init__(self, content: str, revoke_after: float):
        self.content = content
        self.revoke_after = revoke_after
        self.loaded_at: Optional[float] = None


class PreviewRegistry:
    """Short-lived handles to generated HTML, served back by id.

    A handle is revoked `revoke_after` seconds after its first load.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_handles: int = 200):
        self._clock = clock
        self._handles: Dict[str, _Handle] = {}
        self._lock = threading.Lock()
        self.max_handles = max_handles

    def create(self, content: str, revoke_after: float = FRAME_REVOKE_AFTER) -> str:
        handle_id = secrets.token_urlsafe(12)
        with self._lock:
            self._purge()
            self._handles[handle_id] = _Handle(content, revoke_after)
            while len(self._handles) > self.max_handles:
                # dicts keep insertion order; drop the oldest handle
                self._handles.pop(next(iter(self._handles)))
        return handle_id

    def load(self, handle_id: str) -> str:
        with self._lock:
            self._purge()
            handle = self._handles.get(handle_id)
            if handle is None:
                raise NotFoundError('Preview not found or already revoked')
            if handle.loaded_at is None:
                handle.loaded_at = self._clock()
            return handle.content

    def revoke(self, handle_id: str) -> bool:
        with self._lock:
            return self._handles.pop(handle_id, None) is not None

    def __contains__(self, handle_id: str) -> bool:
        with self._lock:
            self._purge()
            return handle_id in self._handles

    def _purge(self) -> None:
        now = self._clock()
        expired = [k for k, h in self._handles.items()
                   if h.loaded_at is not None and now - h.loaded_at >= h.revoke_after]
        for k in expired:
            del self._handles[k]
        if expired:
            logger.debug('Revoked %d preview handles', len(expired))


class PreviewRenderer:
    def __init__(self, registry: PreviewRegistry, base_path: str = '/preview'):
        self.registry = registry
        self.base_path = base_path.rstrip('/')
        self.current_code: Optional[str] = None
        self.current_size = DEFAULT_VIEWPORT

    def _url(self, handle_id: str) -> str:
        return f'{self.base_path}/{handle_id}'

    def _require_code(self) -> str:
        if not self.current_code:
            raise ValidationFailure('No code available to preview')
        return self.current_code

    def open_preview(self, code: str, size: Optional[str] = None) -> dict:
        if not code:
            raise ValidationFailure('No code available to preview')
        self.current_code = code
        if size:
            self.current_size = get_viewport(size)['size']
        return self._frame()

    def _frame(self) -> dict:
        handle_id = self.registry.create(self._require_code(), FRAME_REVOKE_AFTER)
        return {
            'id': handle_id,
            'url': self._url(handle_id),
            'frame_url': f'{self._url(handle_id)}/frame?size={self.current_size}',
            'viewport': get_viewport(self.current_size),
        }

    def change_size(self, size: str) -> dict:
        viewport = get_viewport(size)
        self.current_size = viewport['size']
        logger.info('Preview: %s (%sx%s)', viewport['name'], viewport['width'], viewport['height'])
        return viewport

    def refresh(self) -> dict:
        return self._frame()

    def open_in_new_context(self) -> dict:
        handle_id = self.registry.create(self._require_code(), NEW_CONTEXT_REVOKE_AFTER)
        return {'id': handle_id, 'url': self._url(handle_id)}

    def render_frame(self, handle_id: str, size: Optional[str] = None) -> str:
        """Wrapper page holding the preview in a sandboxed iframe at the preset size."""
        if handle_id not in self.registry:
            raise NotFoundError('Preview not found or already revoked')
        viewport = get_viewport(size or self.current_size)
        src = html.escape(self._url(handle_id), quote=True)
        title = html.escape(f"Preview - {viewport['name']}")
        return (
            '<!DOCTYPE html>\n'
            '<html lang="en">\n'
            '<head>\n'
            '  <meta charset="utf-8">\n'
            f'  <title>{title}</title>\n'
            '  <style>body{margin:0;display:flex;justify-content:center;background:#1e1e2e}'
            'iframe{border:0;background:#fff;margin:16px;box-shadow:0 4px 24px rgba(0,0,0,.4)}</style>\n'
            '</head>\n'
            '<body>\n'
            f'  <iframe src="{src}" sandbox="allow-scripts allow-forms allow-modals" '
            f'width="{viewport["width"]}" height="{viewport["height"]}" title="{title}"></iframe>\n'
            '</body>\n'
            '</html>\n'
        )
